from __future__ import annotations

from typing import Optional


class TimelineSourceError(Exception):
    """Base class for failures raised while reading one upstream source."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SourceUnavailable(TimelineSourceError):
    """The primary, patient-scoped fetch for a source failed."""


class FallbackUnavailable(TimelineSourceError):
    """The unscoped bulk fetch attempted after a primary failure also failed."""


class NormalizationDefect(ValueError):
    """A raw record lacks data required to build a timeline event.

    Raised by the normalizers; the aggregator drops the offending record and
    counts it instead of failing the whole timeline.
    """
