from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Base URL of the upstream clinic REST API (appointments, billing, notes).
    clinic_api_base_url: str = os.getenv("CLINIC_API_BASE_URL", "http://localhost:8080/api/v1")
    # Per-request timeout for the shared upstream HTTP client.
    clinic_api_timeout_seconds: float = float(os.getenv("CLINIC_API_TIMEOUT_SECONDS", "10"))

    # Upper bound for one source branch (primary fetch plus fallback) while
    # building a timeline. A branch that exceeds it contributes no events.
    timeline_source_timeout_seconds: float = float(os.getenv("TIMELINE_SOURCE_TIMEOUT_SECONDS", "15"))
    # Page size used for unscoped bulk listings (fallback and client-filtered sources).
    timeline_fallback_limit: int = int(os.getenv("TIMELINE_FALLBACK_LIMIT", "1000"))
    timeline_notes_page_size: int = int(os.getenv("TIMELINE_NOTES_PAGE_SIZE", "50"))

    # Diagnostic appointment statuses that count as "completed". Comma-separated.
    diagnostic_completion_statuses: List[str] = field(
        default_factory=lambda: _split_csv(os.getenv("DIAGNOSTIC_COMPLETION_STATUSES", "completed"))
    )

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, protected endpoints require a valid API key.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # CORS configuration: comma-separated origins (e.g. "https://app.example.com,https://admin.example.com").
    # Default is "*" (allow all) which is acceptable for local development but
    # should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
