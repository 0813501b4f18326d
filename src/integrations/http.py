"""Mapping from httpx failures to typed collaborator errors.

    429                       → rate-limited   (retry)
    400 / 413 / 415 / 422     → invalid-input  (terminal)
    timeout, connect, 5xx     → unavailable    (retry)
"""

from __future__ import annotations

import httpx

from src.errors import ServiceError
from src.models.enums import ServiceErrorKind

_INVALID_INPUT_STATUSES = frozenset({400, 413, 415, 422})


def classify_status(status_code: int) -> ServiceErrorKind:
    if status_code == 429:
        return ServiceErrorKind.RATE_LIMITED
    if status_code in _INVALID_INPUT_STATUSES:
        return ServiceErrorKind.INVALID_INPUT
    return ServiceErrorKind.UNAVAILABLE


def service_error_from(service: str, exc: httpx.HTTPError) -> ServiceError:
    """Translate any httpx error into a ServiceError."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return ServiceError(service, classify_status(status), f"http_{status}")
    if isinstance(exc, httpx.TimeoutException):
        return ServiceError(service, ServiceErrorKind.UNAVAILABLE, "timeout")
    return ServiceError(service, ServiceErrorKind.UNAVAILABLE, type(exc).__name__)
