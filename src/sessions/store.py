"""Session store — single source of truth for session state and progress.

Two interchangeable implementations, chosen once at startup:
- MemorySessionStore   — process-local dict
- DatabaseSessionStore — analysis_sessions table (row lock per write)

Write methods return True when the write was applied and False when the
session is gone (deleted or never existed); the orchestrator uses this to
stop quietly. Writes to an expired session are applied but never visible
through get_progress / get_results.

Usage:
    store = MemorySessionStore()
    await store.create_session(session_id, "AU", expires_at)
    await store.update_progress(session_id, PipelineStage.INGEST, 10)
    snapshot = await store.get_progress(session_id)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clock import Clock, utcnow
from src.errors import SessionExists
from src.models.analysis_session import AnalysisSession
from src.models.enums import PipelineStage, SessionStatus
from src.schemas.session import AnalysisResults, ErrorDetail, ProgressSnapshot, SessionRecord
from src.sessions.lifecycle import (
    check_progress,
    check_transition,
    estimate_remaining_seconds,
    is_readable,
    to_snapshot,
)

logger = logging.getLogger(__name__)

# A mutation receives the current record and returns the replacement
Mutation = Callable[[SessionRecord], SessionRecord]


class SessionStore(ABC):
    """Lifecycle rules live here; backends only load and save records."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    # ── Writes (orchestrator only) ───────────────────────────────────

    async def create_session(self, session_id: str, jurisdiction: str, expires_at: datetime) -> SessionRecord:
        """Insert a new session in `created`. Raises SessionExists on a reused id."""
        now = self._clock()
        if expires_at <= now:
            msg = "expires_at must be after created_at"
            raise ValueError(msg)
        record = SessionRecord(
            session_id=session_id,
            status=SessionStatus.CREATED,
            jurisdiction=jurisdiction,
            eta_seconds=estimate_remaining_seconds(0),
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        await self._insert(record)
        logger.info("Session created: session=%s jurisdiction=%s expires=%s", session_id, jurisdiction, expires_at)
        return record

    async def update_progress(
        self,
        session_id: str,
        stage: PipelineStage,
        percent: int,
        eta_seconds: int | None = None,
    ) -> bool:
        """Record entry into a stage. The first call moves created → processing."""

        def mutate(record: SessionRecord) -> SessionRecord:
            check_transition(record.status, SessionStatus.PROCESSING)
            check_progress(record, stage, percent)
            return record.model_copy(update={
                "status": SessionStatus.PROCESSING,
                "stage": stage,
                "progress_percent": percent,
                "eta_seconds": eta_seconds if eta_seconds is not None else estimate_remaining_seconds(percent),
                "updated_at": self._clock(),
            })

        return await self._apply(session_id, mutate)

    async def record_anonymization(self, session_id: str, pii_detected: bool, detection_confidence: float) -> bool:
        """Keep the anonymization summary (never the content) on the session."""

        def mutate(record: SessionRecord) -> SessionRecord:
            return record.model_copy(update={
                "pii_detected": pii_detected,
                "detection_confidence": detection_confidence,
                "updated_at": self._clock(),
            })

        return await self._apply(session_id, mutate)

    async def complete_with_results(self, session_id: str, results: AnalysisResults) -> bool:
        """processing → completed, with results and 100% in the same write."""

        def mutate(record: SessionRecord) -> SessionRecord:
            check_transition(record.status, SessionStatus.COMPLETED)
            return record.model_copy(update={
                "status": SessionStatus.COMPLETED,
                "stage": PipelineStage.FINALIZE,
                "progress_percent": 100,
                "eta_seconds": 0,
                "results": results,
                "updated_at": self._clock(),
            })

        applied = await self._apply(session_id, mutate)
        if applied:
            logger.info("Session completed: session=%s recommendations=%d", session_id, len(results.recommendations))
        return applied

    async def fail_with(self, session_id: str, error: ErrorDetail) -> bool:
        """created/processing → failed, with error detail in the same write."""

        def mutate(record: SessionRecord) -> SessionRecord:
            check_transition(record.status, SessionStatus.FAILED)
            return record.model_copy(update={
                "status": SessionStatus.FAILED,
                "eta_seconds": 0,
                "error_detail": error,
                "updated_at": self._clock(),
            })

        applied = await self._apply(session_id, mutate)
        if applied:
            logger.info("Session failed: session=%s stage=%s code=%s", session_id, error.stage, error.code)
        return applied

    async def delete(self, session_id: str) -> bool:
        """Tombstone the session and drop its results. Idempotent.

        Returns True if a live session was deleted by this call.
        """
        now = self._clock()

        def mutate(record: SessionRecord) -> SessionRecord:
            return record.model_copy(update={"deleted_at": now, "results": None, "updated_at": now})

        applied = await self._apply(session_id, mutate)
        if applied:
            logger.info("Session deleted: session=%s", session_id)
        return applied

    # ── Reads ────────────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> SessionRecord | None:
        """Raw stored record (including deleted/expired). For internal use."""
        return await self._load(session_id)

    async def get_progress(self, session_id: str) -> ProgressSnapshot | None:
        """Current snapshot, or None for unknown, expired or deleted sessions."""
        now = self._clock()
        record = await self._load(session_id)
        if not is_readable(record, now):
            return None
        assert record is not None
        return to_snapshot(record, now)

    async def get_results(self, session_id: str) -> AnalysisResults | None:
        """Results of a completed, readable session; None otherwise."""
        record = await self._load(session_id)
        if not is_readable(record, self._clock()):
            return None
        assert record is not None
        return record.results if record.status is SessionStatus.COMPLETED else None

    async def delete_expired(self) -> int:
        """Hard-delete records past expiry. Storage reclamation only."""
        count = await self._delete_expired(self._clock())
        if count:
            logger.info("Reclaimed %d expired sessions", count)
        return count

    # ── Backend hooks ────────────────────────────────────────────────

    @abstractmethod
    async def _insert(self, record: SessionRecord) -> None:
        """Raise SessionExists if the id is taken."""

    @abstractmethod
    async def _load(self, session_id: str) -> SessionRecord | None: ...

    @abstractmethod
    async def _apply(self, session_id: str, mutate: Mutation) -> bool:
        """Atomically load → mutate → save a live (not deleted) record.

        Returns False without calling `mutate` when the record is missing or deleted.
        """

    @abstractmethod
    async def _delete_expired(self, now: datetime) -> int: ...


# ── In-memory backend ────────────────────────────────────────────────


class MemorySessionStore(SessionStore):
    """Process-local store. No await between load and save, so each write is atomic."""

    def __init__(self, clock: Clock = utcnow) -> None:
        super().__init__(clock)
        self._records: dict[str, SessionRecord] = {}

    async def _insert(self, record: SessionRecord) -> None:
        if record.session_id in self._records:
            raise SessionExists(record.session_id)
        self._records[record.session_id] = record

    async def _load(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    async def _apply(self, session_id: str, mutate: Mutation) -> bool:
        record = self._records.get(session_id)
        if record is None or record.deleted_at is not None:
            return False
        self._records[session_id] = mutate(record)
        return True

    async def _delete_expired(self, now: datetime) -> int:
        expired = [sid for sid, r in self._records.items() if r.expires_at <= now]
        for sid in expired:
            del self._records[sid]
        return len(expired)


# ── Database backend ─────────────────────────────────────────────────


class DatabaseSessionStore(SessionStore):
    """Store backed by analysis_sessions. Each write runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock = utcnow) -> None:
        super().__init__(clock)
        self._session_factory = session_factory

    async def _insert(self, record: SessionRecord) -> None:
        async with self._session_factory() as db:
            existing = await db.execute(
                select(AnalysisSession.id).where(AnalysisSession.session_id == record.session_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise SessionExists(record.session_id)
            row = AnalysisSession(session_id=record.session_id)
            _copy_to_row(record, row)
            db.add(row)
            await db.commit()

    async def _load(self, session_id: str) -> SessionRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(AnalysisSession).where(AnalysisSession.session_id == session_id))
            row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def _apply(self, session_id: str, mutate: Mutation) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisSession)
                .where(AnalysisSession.session_id == session_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None or row.deleted_at is not None:
                return False
            _copy_to_row(mutate(_to_record(row)), row)
            await db.commit()
        return True

    async def _delete_expired(self, now: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(delete(AnalysisSession).where(AnalysisSession.expires_at <= now))
            await db.commit()
        return result.rowcount  # type: ignore[attr-defined]


def _to_record(row: AnalysisSession) -> SessionRecord:
    return SessionRecord(
        session_id=row.session_id,
        status=SessionStatus(row.status),
        jurisdiction=row.jurisdiction,
        stage=PipelineStage(row.stage) if row.stage else None,
        progress_percent=row.progress_percent,
        eta_seconds=row.eta_seconds,
        pii_detected=row.pii_detected,
        detection_confidence=row.detection_confidence,
        results=AnalysisResults.model_validate(row.results) if row.results else None,
        error_detail=ErrorDetail.model_validate(row.error_detail) if row.error_detail else None,
        created_at=row.opened_at,
        updated_at=row.last_update_at,
        expires_at=row.expires_at,
        deleted_at=row.deleted_at,
    )


def _copy_to_row(record: SessionRecord, row: AnalysisSession) -> None:
    row.status = record.status.value
    row.jurisdiction = record.jurisdiction
    row.stage = record.stage.value if record.stage else None
    row.progress_percent = record.progress_percent
    row.eta_seconds = record.eta_seconds
    row.pii_detected = record.pii_detected
    row.detection_confidence = record.detection_confidence
    row.results = record.results.model_dump(mode="json") if record.results else None
    row.error_detail = record.error_detail.model_dump(mode="json") if record.error_detail else None
    row.opened_at = record.created_at
    row.last_update_at = record.updated_at
    row.expires_at = record.expires_at
    row.deleted_at = record.deleted_at
