from __future__ import annotations

import logging
from typing import Optional, Protocol

from src.backend.domain.models.patient_timeline import TimelineEventType
from src.backend.services.audit.service import AuditService, audit_service


logger = logging.getLogger("timeline")


class TimelineTelemetry(Protocol):
    """Receives non-fatal diagnostics produced while building a timeline.

    Implementations must not raise; a failing telemetry backend must never
    fail the timeline itself.
    """

    def source_degraded(self, source: TimelineEventType, patient_id: str, reason: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def fallback_used(self, source: TimelineEventType, patient_id: str, record_count: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def records_dropped(self, source: TimelineEventType, patient_id: str, count: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class AuditTimelineTelemetry:
    """Default telemetry: structured audit events plus a warning log line.

    Patient ids are passed as the audit ``resource_id``; no record contents
    are emitted.
    """

    def __init__(self, audit: Optional[AuditService] = None) -> None:
        self._audit = audit or audit_service

    def _emit(self, action: str, source: TimelineEventType, patient_id: str, **extra: object) -> None:
        try:
            self._audit.log_event(
                action=action,
                resource_type="timeline_source",
                resource_id=patient_id,
                extra={"source": source.value, **extra},
            )
        except Exception:
            logger.exception("Failed to emit timeline telemetry for %s", source.value)

    def source_degraded(self, source: TimelineEventType, patient_id: str, reason: str) -> None:
        logger.warning("Timeline source %s degraded: %s", source.value, reason)
        self._emit("degraded", source, patient_id, reason=reason)

    def fallback_used(self, source: TimelineEventType, patient_id: str, record_count: int) -> None:
        logger.info("Timeline source %s served %d records via fallback", source.value, record_count)
        self._emit("fallback", source, patient_id, record_count=record_count)

    def records_dropped(self, source: TimelineEventType, patient_id: str, count: int) -> None:
        logger.warning("Dropped %d malformed %s records", count, source.value)
        self._emit("records_dropped", source, patient_id, count=count)
