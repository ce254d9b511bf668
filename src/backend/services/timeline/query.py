from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from src.backend.domain.models.patient_timeline import TimelineEvent


ALL_TYPES = "All Types"
ALL_STATUS = "All Status"


class SortField(str, Enum):
    DATE = "date"
    TYPE = "type"
    STATUS = "status"
    AMOUNT = "amount"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class TimelineQuery(BaseModel):
    """Filter, search and sort criteria for a timeline view.

    ``type_filter`` and ``status_filter`` accept a canonical value
    (case-insensitive) or the "All Types" / "All Status" wildcards.
    """

    type_filter: str = ALL_TYPES
    status_filter: str = ALL_STATUS
    search_term: str = ""
    sort_field: SortField = SortField.DATE
    sort_direction: SortDirection = SortDirection.DESC

    def toggle(self, field: SortField) -> "TimelineQuery":
        """Return the criteria after a user clicks the ``field`` column header.

        Clicking the active field flips the direction; clicking another field
        sorts by it ascending.
        """

        if field == self.sort_field:
            direction = SortDirection.ASC if self.sort_direction == SortDirection.DESC else SortDirection.DESC
            return self.model_copy(update={"sort_direction": direction})
        return self.model_copy(update={"sort_field": field, "sort_direction": SortDirection.ASC})


def _is_wildcard(value: Optional[str], wildcard: str) -> bool:
    return not value or value == wildcard


def _matches(event: TimelineEvent, query: TimelineQuery, needle: str) -> bool:
    if not _is_wildcard(query.type_filter, ALL_TYPES) and event.type.value != query.type_filter.lower():
        return False
    if not _is_wildcard(query.status_filter, ALL_STATUS) and event.status.value != query.status_filter.lower():
        return False
    if needle:
        haystacks = (event.title, event.description, event.reference_id or "")
        return any(needle in text.lower() for text in haystacks)
    return True


_SORT_KEYS: Dict[SortField, Callable[[TimelineEvent], Any]] = {
    SortField.DATE: lambda e: e.timestamp,
    SortField.TYPE: lambda e: e.type.value,
    SortField.STATUS: lambda e: e.status.value,
    SortField.AMOUNT: lambda e: e.amount or 0,
}


def sort_by_timestamp(events: Iterable[TimelineEvent], *, descending: bool = True) -> List[TimelineEvent]:
    # sorted(reverse=True) keeps equal keys in input order, so both directions are stable.
    return sorted(events, key=_SORT_KEYS[SortField.DATE], reverse=descending)


def filter_and_sort(events: Sequence[TimelineEvent], query: Optional[TimelineQuery] = None) -> List[TimelineEvent]:
    """Apply ``query`` to ``events`` and return a new list.

    Filters are conjunctive. Sorting is stable in both directions: events with
    equal keys keep their relative input order. The input is never mutated.
    """

    query = query or TimelineQuery()
    needle = query.search_term.lower()
    filtered = [event for event in events if _matches(event, query, needle)]
    key = _SORT_KEYS.get(query.sort_field, _SORT_KEYS[SortField.DATE])
    return sorted(filtered, key=key, reverse=query.sort_direction == SortDirection.DESC)


def group_by_date(events: Iterable[TimelineEvent]) -> Dict[date, List[TimelineEvent]]:
    """Bucket events by calendar date.

    Buckets appear in the order their date is first seen and keep the
    events' input order, so grouping an already sorted list preserves it.
    """

    groups: Dict[date, List[TimelineEvent]] = {}
    for event in events:
        groups.setdefault(event.date, []).append(event)
    return groups
