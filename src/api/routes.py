"""HTTP routes — a thin layer over the orchestrator, publisher and privacy service.

Policies:
    POST   /api/policies/analyze                 submit a document or text
    GET    /api/policies/progress/{id}           poll (or SSE with Accept: text/event-stream)
    GET    /api/policies/progress/{id}/stream    SSE
    GET    /api/policies/results/{id}            results (key handed out on first read)

Privacy:
    POST   /api/privacy/consent                  record consent
    GET    /api/privacy/consent/{id}             current consent (or default)
    GET    /api/privacy/consent/{id}/history     every version
    POST   /api/privacy/report                   transparency report
    POST   /api/privacy/personalize              re-personalize text
    POST   /api/privacy/export                   data export
    DELETE /api/privacy/{id}                     delete session data
"""
# ruff: noqa: B008  — Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from src.api.dependencies import Services, get_services
from src.api.submission import client_ip, parse_submission
from src.config import settings
from src.errors import SessionNotFound
from src.schemas.api import AnalyzeResponse, ConsentRequest, KeyedRequest, PersonalizeRequest, ReportRequest
from src.security.consent import hash_source_ip
from src.sessions.lifecycle import estimate_remaining_seconds
from src.streaming.publisher import sse_format

logger = logging.getLogger(__name__)

policies_router = APIRouter(prefix="/api/policies", tags=["policies"])
privacy_router = APIRouter(prefix="/api/privacy", tags=["privacy"])


# ── Policies ─────────────────────────────────────────────────────────


@policies_router.post("/analyze", status_code=202)
async def analyze_policy(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Validate, create the session, then start processing in the background."""
    if services.rate_limiter is not None:
        client_hash = hash_source_ip(client_ip(request), settings.privacy.ip_hash_secret)
        await services.rate_limiter.enforce_submission(client_hash)

    submission, metadata = await parse_submission(request)
    record = await services.orchestrator.open_session(metadata)
    services.orchestrator.start(record.session_id, submission, metadata)

    eta = estimate_remaining_seconds(0)
    logger.info("Submission accepted: session=%s kind=%s", record.session_id, submission.kind)
    return AnalyzeResponse(
        session_id=record.session_id,
        status=record.status,
        estimated_time_seconds=eta,
        estimated_time="2-3 minutes",
    ).to_wire()


def _event_stream(services: Services, session_id: str, request: Request) -> StreamingResponse:
    async def frames() -> AsyncIterator[str]:
        async for event, data in services.publisher.stream(session_id, request.is_disconnected):
            yield sse_format(event, data)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@policies_router.get("/progress/{session_id}", response_model=None)
async def get_progress(
    session_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> dict[str, Any] | StreamingResponse:
    if "text/event-stream" in request.headers.get("accept", ""):
        return _event_stream(services, session_id, request)
    snapshot = await services.publisher.poll(session_id)
    return snapshot.to_wire()


@policies_router.get("/progress/{session_id}/stream")
async def stream_progress(
    session_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    return _event_stream(services, session_id, request)


@policies_router.get("/results/{session_id}")
async def get_results(session_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    results, key = await services.publisher.results(session_id)
    body = results.to_wire()
    if key is not None:
        body["encryptionKey"] = key
    return body


# ── Privacy ──────────────────────────────────────────────────────────


@privacy_router.post("/consent")
async def record_consent(
    body: ConsentRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    if await services.store.get_progress(body.session_id) is None:
        raise SessionNotFound(body.session_id)
    snapshot = await services.consent.record_consent(
        body.session_id,
        body.consent,
        source_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return snapshot.to_wire()


@privacy_router.get("/consent/{session_id}")
async def get_consent(session_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    snapshot = await services.consent.get_consent(session_id)
    return snapshot.to_wire()


@privacy_router.get("/consent/{session_id}/history")
async def get_consent_history(session_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    history = await services.consent.history(session_id)
    return {"sessionId": session_id, "history": [s.to_wire() for s in history]}


@privacy_router.post("/report")
async def transparency_report(body: ReportRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    report = await services.privacy.transparency_report(body.session_id, body.encryption_key, body.include_values)
    return report.to_wire()


@privacy_router.post("/personalize")
async def personalize(body: PersonalizeRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    result = await services.privacy.personalize(body.session_id, body.encryption_key, body.text)
    return result.to_wire()


@privacy_router.post("/export")
async def export_data(body: KeyedRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    export = await services.privacy.export_data(body.session_id, body.encryption_key)
    return export.to_wire()


@privacy_router.delete("/{session_id}")
async def delete_session_data(
    session_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    report = await services.privacy.delete_session_data(
        session_id,
        source_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return report.to_wire()
