from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Type

from pydantic import ValidationError

from src.backend.config import settings
from src.backend.domain.models.patient_timeline import TimelineEventType
from src.backend.domain.models.raw_records import (
    RawAppointment,
    RawClinicalNote,
    RawDiagnosticAppointment,
    RawInvoice,
    RawPayment,
    RawRecord,
    RawSourceModel,
)
from src.backend.infra.http.clinic_api import ClinicApiClient, EndpointResolver
from src.backend.services.timeline.errors import FallbackUnavailable, SourceUnavailable, TimelineSourceError


logger = logging.getLogger("timeline.sources")


@dataclass
class SourceResult:
    """Tagged outcome of reading one source: either records or an error."""

    source: TimelineEventType
    records: List[RawRecord] = field(default_factory=list)
    error: Optional[TimelineSourceError] = None
    # Records present in the payload but rejected by schema validation.
    invalid_records: int = 0
    used_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, source: TimelineEventType, error: TimelineSourceError) -> "SourceResult":
        return cls(source=source, error=error)


def _extract_list(payload: Mapping[str, Any], *path: str) -> List[Any]:
    node: Any = payload
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            raise SourceUnavailable(f"Response is missing '{'.'.join(path)}'")
        node = node[key]
    if not isinstance(node, list):
        raise SourceUnavailable(f"Response field '{'.'.join(path)}' is not a list")
    return node


class SourceAdapter(ABC):
    """Reads one upstream source for a patient and validates its records.

    :meth:`fetch` never raises for upstream problems; failures come back as a
    failed :class:`SourceResult` so one broken source cannot abort the others.
    """

    source: TimelineEventType
    record_model: Type[RawSourceModel]
    # Field on the raw record holding the owning patient's id, if any.
    patient_field: Optional[str] = None

    def __init__(self, client: ClinicApiClient, endpoints: EndpointResolver) -> None:
        self._client = client
        self._endpoints = endpoints

    @abstractmethod
    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        raise NotImplementedError

    async def fetch(self, patient_id: str, token: Optional[str] = None) -> SourceResult:
        try:
            items = await self._fetch_payload(patient_id, token)
        except TimelineSourceError as exc:
            logger.warning("Source %s unavailable for patient %s: %s", self.source.value, patient_id, exc)
            return SourceResult.failure(self.source, exc)
        return self.validate(items, patient_id)

    def validate(self, items: List[Any], patient_id: str) -> SourceResult:
        """Validate raw JSON items into records owned by ``patient_id``."""

        result = SourceResult(source=self.source)
        for item in items:
            try:
                record = self.record_model.model_validate(item)
            except ValidationError as exc:
                logger.debug("Dropping invalid %s record: %s", self.source.value, exc)
                result.invalid_records += 1
                continue
            # Records with a missing owner are not attributable to this patient.
            if self.patient_field is not None and getattr(record, self.patient_field) != patient_id:
                continue
            result.records.append(record)
        return result


class BulkFallbackMixin:
    """Sources whose patient-scoped query is unreliable and can be read in bulk."""

    source: TimelineEventType
    _client: ClinicApiClient
    _endpoints: EndpointResolver
    resource: str
    envelope: str

    async def fetch_bulk(self, token: Optional[str], limit: int) -> List[Any]:
        payload = await self._client.get_json(
            self._endpoints.url(self.resource),
            token=token,
            params={"page": 1, "limit": limit},
        )
        return _extract_list(payload, "data", self.envelope)


class AppointmentsAdapter(SourceAdapter):
    source = TimelineEventType.APPOINTMENT
    record_model = RawAppointment
    patient_field = "user_id"

    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        payload = await self._client.get_json(
            self._endpoints.url("appointments"),
            token=token,
            params={"userId": patient_id, "page": 1, "limit": settings.timeline_fallback_limit},
        )
        return _extract_list(payload, "data", "appointments")


class PaymentsAdapter(BulkFallbackMixin, SourceAdapter):
    source = TimelineEventType.PAYMENT
    record_model = RawPayment
    patient_field = "patient_id"
    resource = "payments"
    envelope = "payments"

    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        payload = await self._client.get_json(
            self._endpoints.url(self.resource),
            token=token,
            params={"patientId": patient_id},
        )
        return _extract_list(payload, "data", self.envelope)


class InvoicesAdapter(BulkFallbackMixin, SourceAdapter):
    source = TimelineEventType.INVOICE
    record_model = RawInvoice
    patient_field = "patient_id"
    resource = "invoices"
    envelope = "invoices"

    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        payload = await self._client.get_json(
            self._endpoints.url(self.resource),
            token=token,
            params={"patientId": patient_id},
        )
        return _extract_list(payload, "data", self.envelope)


class DiagnosticAppointmentsAdapter(SourceAdapter):
    """Diagnostic appointments are only listed in bulk; ownership is checked per record."""

    source = TimelineEventType.DIAGNOSTIC
    record_model = RawDiagnosticAppointment
    patient_field = "user_id"

    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        payload = await self._client.get_json(self._endpoints.url("diagnostic_appointments"), token=token)
        return _extract_list(payload, "data", "appointments")

    def validate(self, items: List[Any], patient_id: str) -> SourceResult:
        # Records without a userId cannot be attributed to anyone in a bulk listing.
        owned = [item for item in items if isinstance(item, dict) and item.get("userId") == patient_id]
        return super().validate(owned, patient_id)


class ClinicalNotesAdapter(SourceAdapter):
    source = TimelineEventType.CLINICAL_NOTE
    record_model = RawClinicalNote

    async def _fetch_payload(self, patient_id: str, token: Optional[str]) -> List[Any]:
        payload = await self._client.get_json(
            self._endpoints.url("clinical_notes", patient_id=patient_id),
            token=token,
            params={"page": 1, "limit": settings.timeline_notes_page_size},
        )
        return _extract_list(payload, "data", "clinicalNotes")


def default_adapters(client: ClinicApiClient, endpoints: EndpointResolver) -> List[SourceAdapter]:
    return [
        AppointmentsAdapter(client, endpoints),
        PaymentsAdapter(client, endpoints),
        InvoicesAdapter(client, endpoints),
        DiagnosticAppointmentsAdapter(client, endpoints),
        ClinicalNotesAdapter(client, endpoints),
    ]


class FallbackResolver:
    """Retries a failed source once through its unscoped bulk listing.

    Only adapters providing ``fetch_bulk`` (payments and invoices) are
    eligible. The bulk listing is bounded to ``limit`` records and filtered to
    records whose ``patientId`` equals the requested patient.
    """

    def __init__(self, limit: Optional[int] = None) -> None:
        self._limit = limit if limit is not None else settings.timeline_fallback_limit

    @staticmethod
    def supports(adapter: SourceAdapter) -> bool:
        return isinstance(adapter, BulkFallbackMixin)

    async def resolve(
        self,
        adapter: SourceAdapter,
        patient_id: str,
        token: Optional[str],
        primary: SourceResult,
    ) -> SourceResult:
        if primary.ok or not self.supports(adapter):
            return primary

        logger.info("Falling back to bulk listing for %s (patient %s)", adapter.source.value, patient_id)
        try:
            items = await adapter.fetch_bulk(token, self._limit)  # type: ignore[attr-defined]
        except TimelineSourceError as exc:
            logger.warning("Fallback for %s also failed: %s", adapter.source.value, exc)
            return SourceResult.failure(
                adapter.source,
                FallbackUnavailable(str(exc), status_code=exc.status_code),
            )

        owned = [item for item in items if isinstance(item, dict) and item.get("patientId") == patient_id]
        result = adapter.validate(owned, patient_id)
        result.used_fallback = True
        return result
