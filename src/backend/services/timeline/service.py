from __future__ import annotations

import asyncio
import logging
from typing import Any, Collection, List, Optional, Sequence

from src.backend.config import settings
from src.backend.domain.models.patient_timeline import TimelineEvent, TimelineEventType, TimelineResult
from src.backend.infra.http.clinic_api import ClinicApiClient, EndpointResolver
from src.backend.services.timeline.errors import NormalizationDefect, SourceUnavailable
from src.backend.services.timeline.normalizer import normalize_record
from src.backend.services.timeline.query import sort_by_timestamp
from src.backend.services.timeline.sources import (
    FallbackResolver,
    SourceAdapter,
    SourceResult,
    default_adapters,
)
from src.backend.services.timeline.telemetry import AuditTimelineTelemetry, TimelineTelemetry


logger = logging.getLogger("timeline")


class TimelineService:
    """Build a patient's medical-history timeline from all upstream sources.

    Every source branch (primary fetch, then the bulk fallback where one
    exists) runs concurrently and is awaited with all-settled semantics, so a
    slow or failing source only costs its own events. ``build_timeline``
    always returns a :class:`TimelineResult`; callers decide whether
    ``total_failure`` warrants an error state.
    """

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        *,
        fallback: Optional[FallbackResolver] = None,
        telemetry: Optional[TimelineTelemetry] = None,
        source_timeout_seconds: Optional[float] = None,
        completion_statuses: Optional[Collection[str]] = None,
        client: Optional[ClinicApiClient] = None,
    ) -> None:
        self._adapters = list(adapters)
        self._client = client
        self._fallback = fallback or FallbackResolver()
        self._telemetry: TimelineTelemetry = telemetry or AuditTimelineTelemetry()
        self._source_timeout = (
            source_timeout_seconds
            if source_timeout_seconds is not None
            else settings.timeline_source_timeout_seconds
        )
        self._completion_statuses = (
            list(completion_statuses)
            if completion_statuses is not None
            else settings.diagnostic_completion_statuses
        )

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self._telemetry, hook)(*args)
        except Exception:
            logger.exception("Timeline telemetry hook %s failed", hook)

    async def _read_source(self, adapter: SourceAdapter, patient_id: str, token: Optional[str]) -> SourceResult:
        primary = await adapter.fetch(patient_id, token)
        return await self._fallback.resolve(adapter, patient_id, token, primary)

    async def _read_source_bounded(
        self,
        adapter: SourceAdapter,
        patient_id: str,
        token: Optional[str],
        timeout: float,
    ) -> SourceResult:
        try:
            return await asyncio.wait_for(self._read_source(adapter, patient_id, token), timeout)
        except asyncio.TimeoutError:
            return SourceResult.failure(
                adapter.source,
                SourceUnavailable(f"{adapter.source.value} did not respond within {timeout:g}s"),
            )

    async def build_timeline(
        self,
        patient_id: str,
        token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> TimelineResult:
        limit = timeout if timeout is not None else self._source_timeout
        outcomes = await asyncio.gather(
            *(self._read_source_bounded(adapter, patient_id, token, limit) for adapter in self._adapters),
            return_exceptions=True,
        )

        result = TimelineResult()
        events: List[TimelineEvent] = []
        seen_ids: set[str] = set()
        succeeded = 0

        for adapter, outcome in zip(self._adapters, outcomes):
            source = adapter.source
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    reason = "cancelled"
                else:
                    logger.error(
                        "Unexpected error reading %s",
                        source.value,
                        exc_info=(type(outcome), outcome, outcome.__traceback__),
                    )
                    reason = f"unexpected error: {outcome!r}"
                outcome = SourceResult.failure(source, SourceUnavailable(reason))

            if not outcome.ok:
                result.degraded_sources.append(source)
                self._notify("source_degraded", source, patient_id, str(outcome.error))
                continue

            succeeded += 1
            if outcome.used_fallback:
                result.fallback_sources.append(source)
                self._notify("fallback_used", source, patient_id, len(outcome.records))

            dropped = outcome.invalid_records
            for record in outcome.records:
                try:
                    normalized = normalize_record(record, completion_statuses=self._completion_statuses)
                except NormalizationDefect as exc:
                    logger.debug("Skipping record: %s", exc)
                    dropped += 1
                    continue
                for event in normalized:
                    if event.id in seen_ids:
                        # Upstream returned the same record twice.
                        dropped += 1
                        continue
                    seen_ids.add(event.id)
                    events.append(event)

            if dropped:
                result.dropped_records[source] = dropped
                self._notify("records_dropped", source, patient_id, dropped)

        result.events = sort_by_timestamp(events, descending=True)
        result.total_failure = bool(self._adapters) and succeeded == 0
        logger.info(
            "Built timeline for patient %s: %d events, degraded=%s",
            patient_id,
            len(result.events),
            [s.value for s in result.degraded_sources],
        )
        return result

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def create_timeline_service(
    *,
    client: Optional[ClinicApiClient] = None,
    endpoints: Optional[EndpointResolver] = None,
    telemetry: Optional[TimelineTelemetry] = None,
) -> TimelineService:
    client = client or ClinicApiClient()
    endpoints = endpoints or EndpointResolver.from_settings()
    return TimelineService(default_adapters(client, endpoints), telemetry=telemetry, client=client)


_service_instance: Optional[TimelineService] = None


def get_timeline_service() -> TimelineService:
    """Return the process-wide timeline service, creating it on first use.

    Used as a FastAPI dependency so tests can override it with a service
    wired to fake upstream transports.
    """

    global _service_instance
    if _service_instance is None:
        _service_instance = create_timeline_service()
    return _service_instance


async def shutdown_timeline_service() -> None:
    """Close the process-wide service's upstream client, if one was created."""

    global _service_instance
    if _service_instance is not None:
        await _service_instance.aclose()
        _service_instance = None
