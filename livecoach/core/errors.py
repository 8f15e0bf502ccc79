"""
LiveCoach — Error taxonomy

Adapters translate library exceptions into these at the boundary, so the
pipeline and orchestrator only ever reason about four kinds of failure.
"""

from __future__ import annotations

from typing import Optional


class CoachError(Exception):
    """Base class for every error raised by livecoach."""


class TransientServiceError(CoachError):
    """Rate limit or server-side failure. Safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class PermanentServiceError(CoachError):
    """Bad request, auth failure, missing key. Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModuleUnavailableError(CoachError):
    """A training module (primary or remedial) could not be loaded."""

    def __init__(self, module_id: str, reason: str = "not found") -> None:
        super().__init__(f"Module '{module_id}' unavailable: {reason}")
        self.module_id = module_id


class PersistenceError(CoachError):
    """The session or feedback store rejected a read or write."""


class IllegalTransitionError(CoachError, ValueError):
    """A coach status change not permitted by the transition table."""


def classify_status(
    status_code: Optional[int],
    message: str,
    retry_after: Optional[float] = None,
) -> CoachError:
    """Map an HTTP-style status code onto the taxonomy."""
    if status_code == 429 or (status_code is not None and status_code >= 500):
        return TransientServiceError(message, status_code=status_code, retry_after=retry_after)
    return PermanentServiceError(message, status_code=status_code)


def parse_retry_after(value: object) -> Optional[float]:
    """Read a Retry-After header value given in seconds. Dates are ignored."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
