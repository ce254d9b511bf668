from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from src.backend.config import settings
from src.backend.services.timeline.errors import SourceUnavailable


logger = logging.getLogger("clinic_api")


@dataclass
class EndpointResolver:
    """Maps each upstream resource to a path under the clinic API base URL.

    Paths are templates formatted with ``patient_id`` where the resource is
    patient-scoped. Keeping them here (rather than hardcoded in the adapters)
    lets deployments point individual sources at different gateways and lets
    tests swap in a fake base URL.
    """

    base_url: str
    appointments: str = "/appointments"
    payments: str = "/payments"
    invoices: str = "/invoices"
    diagnostic_appointments: str = "/diagnostic-appointments"
    clinical_notes: str = "/clinical-notes/users/{patient_id}/notes"

    @classmethod
    def from_settings(cls) -> "EndpointResolver":
        return cls(base_url=settings.clinic_api_base_url)

    def url(self, resource: str, **params: str) -> str:
        template: str = getattr(self, resource)
        return self.base_url.rstrip("/") + template.format(**params)


class ClinicApiClient:
    """Small async client for bearer-authenticated JSON GETs against the clinic API.

    Every failure (transport error, non-2xx status, undecodable body) surfaces
    as :class:`SourceUnavailable` so callers only have one exception type to
    handle at the source boundary.
    """

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds if timeout_seconds is not None else settings.clinic_api_timeout_seconds,
            transport=transport,
        )

    async def get_json(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("GET %s failed: %s", url, exc)
            raise SourceUnavailable(f"Request to {url} failed: {exc}") from exc

        if response.status_code // 100 != 2:
            logger.warning("GET %s returned status %s", url, response.status_code)
            raise SourceUnavailable(
                f"GET {url} returned status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise SourceUnavailable(f"GET {url} returned a non-JSON response") from exc

        if not isinstance(data, dict):
            raise SourceUnavailable(f"GET {url} returned unexpected JSON of type {type(data).__name__}")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()
