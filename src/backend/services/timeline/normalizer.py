from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Callable, Collection, Dict, List, Mapping, Optional, Tuple

from src.backend.config import settings
from src.backend.domain.models.patient_timeline import (
    TimelineAction,
    TimelineEvent,
    TimelineEventStatus,
    TimelineEventType,
)
from src.backend.domain.models.raw_records import (
    RawAppointment,
    RawClinicalNote,
    RawDiagnosticAppointment,
    RawInvoice,
    RawPayment,
    RawRecord,
)
from src.backend.services.timeline.errors import NormalizationDefect


UNKNOWN_DOCTOR = "Unknown Doctor"

# Exact-match status vocabularies per source. Anything not listed maps to the
# source's default status.
APPOINTMENT_STATUS: Mapping[str, TimelineEventStatus] = {
    "check_in": TimelineEventStatus.COMPLETED,
}
PAYMENT_STATUS: Mapping[str, TimelineEventStatus] = {
    "Completed": TimelineEventStatus.COMPLETED,
}
INVOICE_STATUS: Mapping[str, TimelineEventStatus] = {
    "Paid": TimelineEventStatus.COMPLETED,
}
DIAGNOSTIC_PLAN_STATUS: Mapping[str, TimelineEventStatus] = {
    "cancelled": TimelineEventStatus.CANCELLED,
}


def map_status(
    table: Mapping[str, TimelineEventStatus],
    value: Optional[str],
    default: TimelineEventStatus = TimelineEventStatus.PENDING,
) -> TimelineEventStatus:
    if value is None:
        return default
    return table.get(value, default)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime string from the upstream API.

    Aware values are converted to UTC and returned naive; unparseable values
    return ``None``.
    """

    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text[:10]), datetime.min.time())
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _date_and_time(
    business_date: Optional[str],
    timestamp: Optional[str],
    *,
    source: TimelineEventType,
    record_id: str,
) -> Tuple[date, str]:
    # The business date decides the calendar day; the dedicated timestamp (when
    # present) decides the time of day, since business dates are often midnight.
    day = parse_timestamp(business_date)
    if day is None:
        raise NormalizationDefect(f"{source.value} record {record_id} has no usable date ({business_date!r})")
    moment = parse_timestamp(timestamp)
    if moment is not None:
        return day.date(), moment.strftime("%H:%M")
    if timestamp:
        # Some sources send a bare "HH:MM[:SS]" time of day.
        try:
            return day.date(), time.fromisoformat(timestamp.strip()).strftime("%H:%M")
        except ValueError:
            pass
    return day.date(), day.strftime("%H:%M")


def _event_id(source: TimelineEventType, record_id: str, suffix: Optional[str] = None) -> str:
    event_id = f"{source.value}-{record_id}"
    return f"{event_id}-{suffix}" if suffix else event_id


def normalize_appointment(record: RawAppointment) -> List[TimelineEvent]:
    day, at = _date_and_time(
        record.appointment_date,
        record.appointment_time,
        source=TimelineEventType.APPOINTMENT,
        record_id=record.id,
    )
    return [
        TimelineEvent(
            id=_event_id(TimelineEventType.APPOINTMENT, record.id),
            type=TimelineEventType.APPOINTMENT,
            date=day,
            time=at,
            title="Appointment",
            description=record.procedures or "Consultation appointment",
            status=map_status(APPOINTMENT_STATUS, record.visit_status),
            created_by=(record.audiologist.name if record.audiologist else None) or UNKNOWN_DOCTOR,
            reference_id=f"APT-{record.id}",
            actions=[TimelineAction.VIEW],
        )
    ]


def normalize_payment(record: RawPayment) -> List[TimelineEvent]:
    day, at = _date_and_time(
        record.payment_date,
        record.created_at,
        source=TimelineEventType.PAYMENT,
        record_id=record.id,
    )
    return [
        TimelineEvent(
            id=_event_id(TimelineEventType.PAYMENT, record.id),
            type=TimelineEventType.PAYMENT,
            date=day,
            time=at,
            title="Payment",
            description=record.description or "Payment received",
            status=map_status(PAYMENT_STATUS, record.status),
            amount=record.amount,
            method=record.method,
            reference_id=record.receipt_number,
            actions=[TimelineAction.VIEW, TimelineAction.DOWNLOAD],
        )
    ]


def normalize_invoice(record: RawInvoice) -> List[TimelineEvent]:
    day, at = _date_and_time(
        record.invoice_date,
        record.created_at,
        source=TimelineEventType.INVOICE,
        record_id=record.id,
    )
    first_screening = record.screenings[0].diagnostic_name if record.screenings else None
    return [
        TimelineEvent(
            id=_event_id(TimelineEventType.INVOICE, record.id),
            type=TimelineEventType.INVOICE,
            date=day,
            time=at,
            title="Invoice",
            description=first_screening or "Service Invoice",
            status=map_status(INVOICE_STATUS, record.payment_status),
            amount=record.total_amount,
            reference_id=record.invoice_number,
            actions=[TimelineAction.VIEW, TimelineAction.PRINT],
        )
    ]


def normalize_diagnostic(
    record: RawDiagnosticAppointment,
    completion_statuses: Optional[Collection[str]] = None,
) -> List[TimelineEvent]:
    """Expand one diagnostic appointment into its plan and, if done, completion events.

    The plan event is always emitted. A second "completed" event is emitted
    only when the record's status is one of ``completion_statuses``.
    """

    if completion_statuses is None:
        completion_statuses = settings.diagnostic_completion_statuses

    day, at = _date_and_time(
        record.appointment_date,
        record.created_at,
        source=TimelineEventType.DIAGNOSTIC,
        record_id=record.id,
    )
    created_by = (record.audiologist.name if record.audiologist else None) or UNKNOWN_DOCTOR
    is_completed = record.status is not None and record.status in completion_statuses

    plan_status = (
        TimelineEventStatus.COMPLETED
        if is_completed
        else map_status(DIAGNOSTIC_PLAN_STATUS, record.status, default=TimelineEventStatus.PLANNED)
    )
    events = [
        TimelineEvent(
            id=_event_id(TimelineEventType.DIAGNOSTIC, record.id, "plan"),
            type=TimelineEventType.DIAGNOSTIC,
            date=day,
            time=at,
            title="Diagnostic Plan",
            description=record.procedures or "Diagnostic assessment planned",
            status=plan_status,
            created_by=created_by,
            reference_id=f"PLAN-{record.id}",
        )
    ]
    if is_completed:
        events.append(
            TimelineEvent(
                id=_event_id(TimelineEventType.DIAGNOSTIC, record.id, "completed"),
                type=TimelineEventType.DIAGNOSTIC,
                date=day,
                time=at,
                title="Diagnostic Completed",
                description=record.procedures or "Diagnostic assessment completed",
                status=TimelineEventStatus.COMPLETED,
                created_by=created_by,
                reference_id=f"DIAG-{record.id}",
                actions=[TimelineAction.VIEW],
            )
        )
    return events


def normalize_clinical_note(record: RawClinicalNote) -> List[TimelineEvent]:
    # Notes only carry a creation timestamp, which is both date and time.
    day, at = _date_and_time(
        record.created_at,
        record.created_at,
        source=TimelineEventType.CLINICAL_NOTE,
        record_id=record.id,
    )
    return [
        TimelineEvent(
            id=_event_id(TimelineEventType.CLINICAL_NOTE, record.id),
            type=TimelineEventType.CLINICAL_NOTE,
            date=day,
            time=at,
            title="Clinical Note",
            description=record.title or "Clinical note",
            status=TimelineEventStatus.COMPLETED,
            created_by=record.created_by,
            reference_id=f"NOTE-{record.id}",
        )
    ]


_NORMALIZERS: Dict[str, Callable[..., List[TimelineEvent]]] = {
    "appointment": normalize_appointment,
    "payment": normalize_payment,
    "invoice": normalize_invoice,
    "clinical_note": normalize_clinical_note,
}


def normalize_record(
    record: RawRecord,
    *,
    completion_statuses: Optional[Collection[str]] = None,
) -> List[TimelineEvent]:
    """Dispatch a validated raw record to the normalizer for its source.

    Raises :class:`NormalizationDefect` when the record cannot be placed on
    the timeline.
    """

    if isinstance(record, RawDiagnosticAppointment):
        return normalize_diagnostic(record, completion_statuses)
    return _NORMALIZERS[record.kind](record)
