from typing import List

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from fastapi import status

from src.backend.main import app
from src.backend.services.timeline.service import get_timeline_service
from timeline_fakes import PATIENT_ID, build_service, failing, healthy_routes


@pytest.fixture
def upstream_calls():
    calls: List[httpx.Request] = []
    app.dependency_overrides[get_timeline_service] = lambda: build_service(healthy_routes(), calls)
    yield calls
    app.dependency_overrides.clear()


async def test_timeline_endpoint_returns_sorted_camel_case_events(upstream_calls):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get(
            f"/api/v1/patients/{PATIENT_ID}/timeline",
            headers={"Authorization": "Bearer upstream-token"},
        )

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["total"] == 6
    assert body["degradedSources"] == []
    first = body["events"][0]
    assert first["id"] == "payment-pay1"
    assert first["date"] == "2025-06-16"
    assert first["time"] == "09:30"
    assert first["referenceId"] == "RCPT-pay1"
    assert first["actions"] == ["view", "download"]
    assert all(call.headers["Authorization"] == "Bearer upstream-token" for call in upstream_calls)


async def test_timeline_endpoint_applies_filters_and_sort(upstream_calls):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get(
            f"/api/v1/patients/{PATIENT_ID}/timeline",
            params={"type": "diagnostic", "status": "All Status", "sort": "date", "direction": "asc"},
        )

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert [e["id"] for e in body["events"]] == ["diagnostic-d1-plan", "diagnostic-d1-completed"]


async def test_unknown_sort_field_falls_back_to_date(upstream_calls):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get(
            f"/api/v1/patients/{PATIENT_ID}/timeline",
            params={"sort": "colour", "search": "hearing"},
        )

    assert response.status_code == status.HTTP_200_OK
    assert [e["id"] for e in response.json()["events"]] == ["appointment-a1", "invoice-inv1"]


async def test_grouped_endpoint_buckets_by_date(upstream_calls):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get(f"/api/v1/patients/{PATIENT_ID}/timeline/grouped")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    dates = [group["date"] for group in body["groups"]]
    assert dates == ["2025-06-16", "2025-06-15", "2025-06-14", "2025-06-13", "2025-06-12"]
    assert sum(len(group["events"]) for group in body["groups"]) == body["total"]


async def test_total_failure_returns_503_with_retry_hint():
    routes = {path: failing() for path in healthy_routes()}
    app.dependency_overrides[get_timeline_service] = lambda: build_service(routes)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get(f"/api/v1/patients/{PATIENT_ID}/timeline")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["detail"] == "Failed to load medical history timeline"
    assert "retry-after" in response.headers


async def test_partial_failure_still_returns_events():
    routes = healthy_routes()
    routes["/invoices"] = failing()
    app.dependency_overrides[get_timeline_service] = lambda: build_service(routes)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get(f"/api/v1/patients/{PATIENT_ID}/timeline")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["degradedSources"] == ["invoice"]
    assert body["total"] == 5
