from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RawSourceModel(BaseModel):
    """Base for records as returned by the upstream clinic API.

    Upstream payloads are camelCase JSON with plenty of optional fields; unknown
    keys are ignored so new upstream columns never break validation.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @field_validator("id", mode="before", check_fields=False)
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # Some upstream tables use integer primary keys.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class RawStaffRef(RawSourceModel):
    id: Optional[str] = None
    name: Optional[str] = None


class RawScreening(RawSourceModel):
    diagnostic_name: Optional[str] = None


class RawAppointment(RawSourceModel):
    kind: Literal["appointment"] = "appointment"

    id: str
    user_id: Optional[str] = None
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    procedures: Optional[str] = None
    visit_status: Optional[str] = None
    audiologist: Optional[RawStaffRef] = None


class RawPayment(RawSourceModel):
    kind: Literal["payment"] = "payment"

    id: str
    patient_id: Optional[str] = None
    payment_date: Optional[str] = None
    created_at: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[float] = None
    method: Optional[str] = None
    receipt_number: Optional[str] = None


class RawInvoice(RawSourceModel):
    kind: Literal["invoice"] = "invoice"

    id: str
    patient_id: Optional[str] = None
    invoice_date: Optional[str] = None
    created_at: Optional[str] = None
    invoice_number: Optional[str] = None
    payment_status: Optional[str] = None
    total_amount: Optional[float] = None
    screenings: List[RawScreening] = Field(default_factory=list)


class RawDiagnosticAppointment(RawSourceModel):
    kind: Literal["diagnostic"] = "diagnostic"

    id: str
    user_id: Optional[str] = None
    appointment_date: Optional[str] = None
    created_at: Optional[str] = None
    procedures: Optional[str] = None
    status: Optional[str] = None
    audiologist: Optional[RawStaffRef] = None


class RawClinicalNote(RawSourceModel):
    kind: Literal["clinical_note"] = "clinical_note"

    id: str
    title: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None


RawRecord = Annotated[
    Union[RawAppointment, RawPayment, RawInvoice, RawDiagnosticAppointment, RawClinicalNote],
    Field(discriminator="kind"),
]
