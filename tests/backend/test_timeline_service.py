import asyncio
from collections import Counter

from src.backend.domain.models.patient_timeline import TimelineEventType
from src.backend.infra.http.clinic_api import ClinicApiClient, EndpointResolver
from src.backend.services.timeline import service as timeline_service
from src.backend.services.timeline.service import (
    TimelineService,
    create_timeline_service,
    shutdown_timeline_service,
)
from timeline_fakes import (
    BASE_URL,
    PATIENT_ID,
    StubAdapter,
    appointment,
    build_service,
    clinical_note,
    diagnostic,
    failing,
    healthy_routes,
    invoice,
    listing,
    notes_listing,
    payment,
    scoped_or_bulk,
    upstream_transport,
)


async def test_all_sources_are_merged_and_sorted_newest_first(telemetry):
    service = build_service(healthy_routes(), telemetry=telemetry)

    result = await service.build_timeline(PATIENT_ID, "tok")

    assert not result.total_failure
    assert result.degraded_sources == []
    counts = Counter(e.type for e in result.events)
    assert counts == {
        TimelineEventType.APPOINTMENT: 1,
        TimelineEventType.PAYMENT: 1,
        TimelineEventType.INVOICE: 1,
        TimelineEventType.DIAGNOSTIC: 2,
        TimelineEventType.CLINICAL_NOTE: 1,
    }
    stamps = [e.timestamp for e in result.events]
    assert stamps == sorted(stamps, reverse=True)
    assert result.events[0].id == "payment-pay1"


async def test_partial_failure_scenario_with_fallbacks(telemetry):
    routes = {
        "/appointments": listing("appointments", [appointment("a1")]),
        "/payments": scoped_or_bulk(
            failing(500),
            listing("payments", [payment("p1"), payment("p2"), payment("p3", patientId="other")]),
        ),
        "/invoices": failing(500),
        "/diagnostic-appointments": listing("appointments", [diagnostic("d1", status="completed")]),
        f"/clinical-notes/users/{PATIENT_ID}/notes": notes_listing([]),
    }
    service = build_service(routes, telemetry=telemetry, completion_statuses=["completed"])

    result = await service.build_timeline(PATIENT_ID)

    assert len(result.events) == 5
    assert Counter(e.type for e in result.events) == {
        TimelineEventType.APPOINTMENT: 1,
        TimelineEventType.PAYMENT: 2,
        TimelineEventType.DIAGNOSTIC: 2,
    }
    assert result.degraded_sources == [TimelineEventType.INVOICE]
    assert result.fallback_sources == [TimelineEventType.PAYMENT]
    assert not result.total_failure
    assert [source for source, _ in telemetry.degraded] == [TimelineEventType.INVOICE]
    assert telemetry.fallbacks == [(TimelineEventType.PAYMENT, 2)]


async def test_every_source_failing_is_total_failure(telemetry):
    routes = {
        "/appointments": failing(),
        "/payments": failing(),
        "/invoices": failing(),
        "/diagnostic-appointments": failing(),
        f"/clinical-notes/users/{PATIENT_ID}/notes": failing(),
    }
    service = build_service(routes, telemetry=telemetry)

    result = await service.build_timeline(PATIENT_ID)

    assert result.total_failure
    assert result.events == []
    assert len(result.degraded_sources) == 5


async def test_empty_but_reachable_sources_are_not_a_failure():
    routes = {
        "/appointments": listing("appointments", []),
        "/payments": listing("payments", []),
        "/invoices": listing("invoices", []),
        "/diagnostic-appointments": listing("appointments", []),
        f"/clinical-notes/users/{PATIENT_ID}/notes": notes_listing([]),
    }

    result = await build_service(routes).build_timeline(PATIENT_ID)

    assert result.events == []
    assert not result.total_failure


async def test_repeated_builds_produce_stable_unique_ids():
    service = build_service(healthy_routes())

    first = await service.build_timeline(PATIENT_ID)
    second = await service.build_timeline(PATIENT_ID)

    ids = [e.id for e in first.events]
    assert len(ids) == len(set(ids))
    assert ids == [e.id for e in second.events]


async def test_duplicate_and_undated_records_are_dropped_and_reported(telemetry):
    routes = healthy_routes()
    routes["/appointments"] = listing(
        "appointments",
        [appointment("a1"), appointment("a1"), appointment("a2", appointmentDate=None)],
    )
    service = build_service(routes, telemetry=telemetry)

    result = await service.build_timeline(PATIENT_ID)

    appointments = [e for e in result.events if e.type == TimelineEventType.APPOINTMENT]
    assert [e.id for e in appointments] == ["appointment-a1"]
    assert result.dropped_records == {TimelineEventType.APPOINTMENT: 2}
    assert telemetry.dropped == [(TimelineEventType.APPOINTMENT, 2)]


async def test_sources_are_fetched_concurrently(template_adapters, telemetry):
    started = 0
    all_started = asyncio.Event()

    async def barrier():
        # Only passes once every adapter is in flight at the same time.
        nonlocal started
        started += 1
        if started == len(template_adapters):
            all_started.set()
        await all_started.wait()

    adapters = [StubAdapter(t, gate=barrier) for t in template_adapters]
    service = TimelineService(adapters, telemetry=telemetry, source_timeout_seconds=2)

    result = await service.build_timeline(PATIENT_ID)

    assert result.degraded_sources == []
    assert telemetry.degraded == []


async def test_slow_source_times_out_without_blocking_others(template_adapters, telemetry):
    appointments, payments, invoices, diagnostics, notes = template_adapters
    adapters = [
        StubAdapter(appointments, [appointment("a1")]),
        StubAdapter(payments, delay=5),
        StubAdapter(invoices, [invoice("i1")]),
        StubAdapter(diagnostics, [diagnostic("d1", status="scheduled")]),
        StubAdapter(notes, [clinical_note("n1")]),
    ]
    service = TimelineService(adapters, telemetry=telemetry, source_timeout_seconds=0.05)

    result = await service.build_timeline(PATIENT_ID)

    assert result.degraded_sources == [TimelineEventType.PAYMENT]
    assert {e.id for e in result.events} == {
        "appointment-a1",
        "invoice-i1",
        "diagnostic-d1-plan",
        "clinical_note-n1",
    }


async def test_caller_supplied_timeout_overrides_default(template_adapters):
    adapters = [StubAdapter(t, delay=0.5) for t in template_adapters]
    service = TimelineService(adapters, source_timeout_seconds=30)

    result = await service.build_timeline(PATIENT_ID, timeout=0.01)

    assert result.total_failure
    assert result.events == []


async def test_unexpected_adapter_error_degrades_only_that_source(template_adapters, telemetry):
    class BrokenAdapter(StubAdapter):
        async def fetch(self, patient_id, token=None):
            raise RuntimeError("bug in adapter")

    appointments, payments, invoices, diagnostics, notes = template_adapters
    adapters = [
        BrokenAdapter(appointments),
        StubAdapter(payments, [payment("p1")]),
        StubAdapter(invoices, fail=True),
        StubAdapter(diagnostics),
        StubAdapter(notes),
    ]
    service = TimelineService(adapters, telemetry=telemetry)

    result = await service.build_timeline(PATIENT_ID)

    assert [e.id for e in result.events] == ["payment-p1"]
    assert set(result.degraded_sources) == {TimelineEventType.APPOINTMENT, TimelineEventType.INVOICE}
    assert not result.total_failure


async def test_failing_telemetry_does_not_break_the_build():
    class ExplodingTelemetry:
        def source_degraded(self, source, patient_id, reason):
            raise RuntimeError("audit sink down")

        def fallback_used(self, source, patient_id, record_count):
            raise RuntimeError("audit sink down")

        def records_dropped(self, source, patient_id, count):
            raise RuntimeError("audit sink down")

    routes = healthy_routes()
    routes["/appointments"] = failing()
    routes["/payments"] = scoped_or_bulk(failing(400), listing("payments", [payment("p1")]))
    routes["/invoices"] = listing("invoices", [invoice("i1"), invoice("i1")])
    service = build_service(routes, telemetry=ExplodingTelemetry())

    result = await service.build_timeline(PATIENT_ID)

    assert result.degraded_sources == [TimelineEventType.APPOINTMENT]
    assert result.fallback_sources == [TimelineEventType.PAYMENT]
    assert result.dropped_records == {TimelineEventType.INVOICE: 1}
    assert "payment-p1" in {e.id for e in result.events}


async def test_shutdown_closes_the_shared_upstream_client(monkeypatch):
    client = ClinicApiClient(transport=upstream_transport(healthy_routes()))
    service = create_timeline_service(client=client, endpoints=EndpointResolver(base_url=BASE_URL))
    monkeypatch.setattr(timeline_service, "_service_instance", service)

    await shutdown_timeline_service()

    assert client._client.is_closed
    assert timeline_service._service_instance is None
