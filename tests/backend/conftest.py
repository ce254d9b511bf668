from __future__ import annotations

from typing import List

import pytest

from src.backend.infra.http.clinic_api import ClinicApiClient, EndpointResolver
from src.backend.services.timeline.sources import SourceAdapter, default_adapters
from timeline_fakes import BASE_URL, RecordingTelemetry, upstream_transport


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def template_adapters() -> List[SourceAdapter]:
    client = ClinicApiClient(transport=upstream_transport({}))
    return default_adapters(client, EndpointResolver(base_url=BASE_URL))
