"""Exception handlers — uniform JSON error bodies for the HTTP surface.

Every error response has the same shape:

    {"error": "<machine code>", "message": "<user-safe text>", "hint": "<optional next step>"}

Domain errors carry their own user-safe message. InternalError and any
unexpected exception render an opaque message; the real cause is logged.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.errors import (
    AnalysisFailed,
    PolicyLensError,
    RateLimited,
    SessionNotFound,
    SessionNotReady,
    ValidationError,
    VaultMiss,
)

logger = logging.getLogger(__name__)

_OPAQUE_MESSAGE = "An unexpected error occurred. Please try again."

# Validation codes that map to a more specific status than 400
_VALIDATION_STATUS: dict[str, int] = {
    "file_too_large": 413,
    "unsupported_media_type": 415,
}

_STATUS: dict[type[PolicyLensError], int] = {
    SessionNotFound: 404,
    SessionNotReady: 409,
    AnalysisFailed: 422,
    VaultMiss: 410,
    RateLimited: 429,
}


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    hint: str | None = None,
    detail: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {"error": error, "message": message}
    if hint:
        body["hint"] = hint
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def status_for(exc: PolicyLensError) -> int:
    if isinstance(exc, ValidationError):
        return _VALIDATION_STATUS.get(exc.code, 400)
    for error_type, status in _STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


async def policy_lens_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, PolicyLensError)
    status = status_for(exc)
    if status >= 500:
        logger.error(
            "Request failed: %s %s error=%s",
            request.method,
            request.url.path,
            type(exc).__name__,
            exc_info=exc,
        )
        return build_error_response("internal_error", _OPAQUE_MESSAGE, 500)

    headers = None
    detail = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    if isinstance(exc, AnalysisFailed) and exc.stage:
        detail = {"stage": exc.stage}
    return build_error_response(exc.code, exc.message, status, hint=exc.hint, detail=detail, headers=headers)


async def request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in exc.errors()]
    return build_error_response(
        "invalid_request_format",
        "Invalid request format. Please check your input.",
        422,
        detail={"fields": [f for f in fields if f]},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error processing request: %s %s", request.method, request.url.path)
    return build_error_response("internal_error", _OPAQUE_MESSAGE, 500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PolicyLensError, policy_lens_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
