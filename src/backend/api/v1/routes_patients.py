from __future__ import annotations

import datetime as dt
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.backend.domain.models.patient_timeline import TimelineEvent, TimelineEventType, TimelineResult
from src.backend.security import get_api_key, get_upstream_token
from src.backend.services.audit.service import audit_service
from src.backend.services.timeline.query import (
    ALL_STATUS,
    ALL_TYPES,
    SortDirection,
    SortField,
    TimelineQuery,
    filter_and_sort,
    group_by_date,
)
from src.backend.services.timeline.service import TimelineService, get_timeline_service


router = APIRouter(
    prefix="/patients",
    tags=["patients"],
    dependencies=[Depends(get_api_key)],
)

# Seconds a client should wait before retrying after every source failed.
RETRY_AFTER_SECONDS = 30


class TimelineResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    events: List[TimelineEvent]
    total: int
    degraded_sources: List[TimelineEventType]
    fallback_sources: List[TimelineEventType]


class TimelineDateGroup(BaseModel):
    date: dt.date
    events: List[TimelineEvent]


class GroupedTimelineResponse(TimelineResponse):
    groups: List[TimelineDateGroup]


def timeline_query(
    type_filter: str = Query(ALL_TYPES, alias="type"),
    status_filter: str = Query(ALL_STATUS, alias="status"),
    search: str = Query(""),
    sort: str = Query(SortField.DATE.value),
    direction: str = Query(SortDirection.DESC.value),
) -> TimelineQuery:
    """Build criteria from query parameters; unknown sort values fall back to the defaults."""

    try:
        sort_field = SortField(sort.lower())
    except ValueError:
        sort_field = SortField.DATE
    try:
        sort_direction = SortDirection(direction.lower())
    except ValueError:
        sort_direction = SortDirection.DESC
    return TimelineQuery(
        type_filter=type_filter,
        status_filter=status_filter,
        search_term=search,
        sort_field=sort_field,
        sort_direction=sort_direction,
    )


async def _load_timeline(
    service: TimelineService,
    patient_id: str,
    token: Optional[str],
) -> TimelineResult:
    result = await service.build_timeline(patient_id, token)
    if result.total_failure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load medical history timeline",
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    return result


def _audit_view(patient_id: str, result: TimelineResult, shown: int) -> None:
    audit_service.log_event(
        action="view",
        resource_type="patient_timeline",
        resource_id=patient_id,
        extra={
            "events": len(result.events),
            "shown": shown,
            "degraded_sources": [s.value for s in result.degraded_sources],
        },
    )


@router.get("/{patient_id}/timeline", response_model=TimelineResponse)
async def get_patient_timeline(
    patient_id: str,
    query: TimelineQuery = Depends(timeline_query),
    token: Optional[str] = Depends(get_upstream_token),
    service: TimelineService = Depends(get_timeline_service),
) -> TimelineResponse:
    result = await _load_timeline(service, patient_id, token)
    events = filter_and_sort(result.events, query)
    _audit_view(patient_id, result, len(events))
    return TimelineResponse(
        events=events,
        total=len(events),
        degraded_sources=result.degraded_sources,
        fallback_sources=result.fallback_sources,
    )


@router.get("/{patient_id}/timeline/grouped", response_model=GroupedTimelineResponse)
async def get_patient_timeline_grouped(
    patient_id: str,
    query: TimelineQuery = Depends(timeline_query),
    token: Optional[str] = Depends(get_upstream_token),
    service: TimelineService = Depends(get_timeline_service),
) -> GroupedTimelineResponse:
    result = await _load_timeline(service, patient_id, token)
    events = filter_and_sort(result.events, query)
    _audit_view(patient_id, result, len(events))
    groups = [TimelineDateGroup(date=day, events=bucket) for day, bucket in group_by_date(events).items()]
    return GroupedTimelineResponse(
        events=events,
        total=len(events),
        degraded_sources=result.degraded_sources,
        fallback_sources=result.fallback_sources,
        groups=groups,
    )
