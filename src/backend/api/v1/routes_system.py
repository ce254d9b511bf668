from fastapi import APIRouter

from src.backend.config import settings

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/timeline/config")
async def timeline_config_v1() -> dict:
    """Non-secret timeline settings, useful when diagnosing degraded sources."""

    return {
        "clinic_api_base_url": settings.clinic_api_base_url,
        "source_timeout_seconds": settings.timeline_source_timeout_seconds,
        "fallback_limit": settings.timeline_fallback_limit,
        "notes_page_size": settings.timeline_notes_page_size,
        "diagnostic_completion_statuses": settings.diagnostic_completion_statuses,
    }
