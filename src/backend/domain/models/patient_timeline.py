from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TimelineEventType(str, Enum):
    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    INVOICE = "invoice"
    DIAGNOSTIC = "diagnostic"
    CLINICAL_NOTE = "clinical_note"


class TimelineEventStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"
    PLANNED = "planned"


class TimelineAction(str, Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    PRINT = "print"


class TimelineEvent(BaseModel):
    """A single source-agnostic entry in a patient's medical history.

    Events are rebuilt from the upstream sources on every request and are
    never persisted. ``time`` is a 24h ``HH:MM`` string used only to order
    events that share the same ``date``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    type: TimelineEventType
    date: dt.date
    time: str = "00:00"
    title: str
    description: str
    status: TimelineEventStatus
    amount: Optional[float] = None
    method: Optional[str] = None
    created_by: Optional[str] = None
    reference_id: Optional[str] = None
    actions: List[TimelineAction] = Field(default_factory=list)

    @property
    def timestamp(self) -> dt.datetime:
        """Composite ``(date, time)`` used for chronological comparison."""

        try:
            return dt.datetime.combine(self.date, dt.time.fromisoformat(self.time))
        except ValueError:
            return dt.datetime.combine(self.date, dt.time.min)


class TimelineResult(BaseModel):
    """Outcome of one aggregation run across all sources."""

    events: List[TimelineEvent] = Field(default_factory=list)
    # Sources that contributed nothing because every fetch for them failed.
    degraded_sources: List[TimelineEventType] = Field(default_factory=list)
    # Sources whose events came from the unscoped bulk listing.
    fallback_sources: List[TimelineEventType] = Field(default_factory=list)
    dropped_records: Dict[TimelineEventType, int] = Field(default_factory=dict)
    total_failure: bool = False
