"""Progress publisher — poll and stream views over the session store.

Poll: one read, one snapshot. Stream: a per-connection async generator
that re-reads the store every `poll_interval` seconds and yields

    connected → progress (on change)… → exactly one of results | error

Every exit (terminal state, missing session, read failure, lifetime cap,
client disconnect or cancellation) leaves the generator through the same
finally block. Streams never touch the orchestrator task. A reconnect
simply starts a new loop against current state.

Usage:
    publisher = ProgressPublisher(store, handoff)
    snapshot = await publisher.poll(session_id)
    async for event, data in publisher.stream(session_id):
        yield sse_format(event, data)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from src.config import settings
from src.errors import AnalysisFailed, SessionNotFound, SessionNotReady
from src.models.enums import SessionStatus
from src.pipeline.handoff import KeyHandoff
from src.schemas.session import AnalysisResults, ProgressSnapshot
from src.sessions.store import SessionStore

logger = logging.getLogger(__name__)

StreamEvent = tuple[str, dict[str, Any]]


def sse_format(event: str, data: dict[str, Any]) -> str:
    """Render one Server-Sent Event frame. `type` is repeated in the payload for plain `onmessage` clients."""
    payload = json.dumps({"type": event, **data}, default=str)
    return f"event: {event}\ndata: {payload}\n\n"


def _fingerprint(snapshot: ProgressSnapshot) -> tuple[Any, ...]:
    return (snapshot.status, snapshot.stage, snapshot.progress_percent, snapshot.error is not None)


class ProgressPublisher:
    def __init__(
        self,
        store: SessionStore,
        handoff: KeyHandoff | None = None,
        poll_interval: float | None = None,
        max_lifetime: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._handoff = handoff
        self._poll_interval = poll_interval if poll_interval is not None else settings.processing.stream_poll_interval
        self._max_lifetime = max_lifetime if max_lifetime is not None else settings.processing.stream_max_lifetime
        self._sleep = sleep

    # ── Poll mode ────────────────────────────────────────────────────

    async def poll(self, session_id: str) -> ProgressSnapshot:
        """Current snapshot. Raises SessionNotFound for unknown, expired or deleted sessions."""
        snapshot = await self._store.get_progress(session_id)
        if snapshot is None:
            raise SessionNotFound(session_id)
        return snapshot

    async def results(self, session_id: str) -> tuple[AnalysisResults, str | None]:
        """Stored results plus the vault key, which is only handed out on the first read.

        Raises:
            SessionNotFound: unknown, expired or deleted.
            SessionNotReady: still created / processing.
            AnalysisFailed: the session ended in `failed`.
        """
        snapshot = await self.poll(session_id)
        if snapshot.status is SessionStatus.FAILED:
            error = snapshot.error
            raise AnalysisFailed(
                session_id,
                error.code if error else "processing_failed",
                error.message if error else "Unable to process your policy.",
                error.hint if error else None,
                error.stage.value if error and error.stage else None,
            )
        results = await self._store.get_results(session_id)
        if results is None:
            raise SessionNotReady(session_id)
        return results, self._claim_key(session_id)

    # ── Stream mode ──────────────────────────────────────────────────

    async def stream(
        self,
        session_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield (event, data) pairs until a terminal event or disconnect."""
        started = time.monotonic()
        last: tuple[Any, ...] | None = None
        reason = "disconnected"
        logger.info("Stream opened: session=%s", session_id)
        try:
            yield "connected", {"sessionId": session_id}

            while True:
                if is_disconnected is not None and await is_disconnected():
                    return

                try:
                    snapshot = await self._store.get_progress(session_id)
                    results = None
                    if snapshot is not None and snapshot.status is SessionStatus.COMPLETED:
                        results = await self._store.get_results(session_id)
                except Exception:
                    logger.exception("Stream read failed: session=%s", session_id)
                    reason = "read-error"
                    yield "error", {
                        "sessionId": session_id,
                        "error": "internal_error",
                        "message": "Progress is temporarily unavailable. Please try again.",
                    }
                    return

                if snapshot is None:
                    reason = "not-found"
                    yield "error", {
                        "sessionId": session_id,
                        "error": SessionNotFound.code,
                        "message": "Session not found or has expired",
                    }
                    return

                fingerprint = _fingerprint(snapshot)
                if fingerprint != last:
                    last = fingerprint
                    yield "progress", {"sessionId": session_id, "progress": snapshot.to_wire()}

                if results is not None:
                    reason = "completed"
                    payload: dict[str, Any] = {"sessionId": session_id, "results": results.to_wire()}
                    key = self._claim_key(session_id)
                    if key is not None:
                        payload["encryptionKey"] = key
                    yield "results", payload
                    return

                if snapshot.status is SessionStatus.FAILED:
                    reason = "failed"
                    error = snapshot.error
                    yield "error", {
                        "sessionId": session_id,
                        "error": error.code if error else "processing_failed",
                        "message": error.message if error else "Unable to process your policy.",
                        "hint": error.hint if error else None,
                        "stage": error.stage.value if error and error.stage else None,
                    }
                    return

                if time.monotonic() - started >= self._max_lifetime:
                    reason = "lifetime"
                    yield "error", {
                        "sessionId": session_id,
                        "error": "stream_timeout",
                        "message": "Progress stream closed. Reconnect or poll for the latest state.",
                    }
                    return

                await self._sleep(self._poll_interval)
        finally:
            logger.info(
                "Stream closed: session=%s reason=%s duration=%.1fs",
                session_id,
                reason,
                time.monotonic() - started,
            )

    def _claim_key(self, session_id: str) -> str | None:
        return self._handoff.claim(session_id) if self._handoff is not None else None
