"""Session lifecycle rules: allowed transitions, stage checkpoints, expiry.

    created ──► processing ──► completed
       │             │
       └─────────────┴──────► failed

`expired` is derived at read time from expires_at and never stored.
Progress during `processing` is monotonic in (stage index, percent).
"""

from __future__ import annotations

from datetime import datetime

from src.errors import InvalidTransition
from src.models.enums import PipelineStage, SessionStatus
from src.schemas.session import ProgressSnapshot, SessionRecord

STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)

# Percent written when a stage is entered
STAGE_PROGRESS: dict[PipelineStage, int] = {
    PipelineStage.INGEST: 10,
    PipelineStage.ANONYMIZE: 20,
    PipelineStage.EXTRACT_STRUCTURE: 40,
    PipelineStage.ANALYZE: 70,
    PipelineStage.SCORE: 90,
    PipelineStage.FINALIZE: 100,
}

TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

_ALLOWED: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.PROCESSING, SessionStatus.FAILED}),
    SessionStatus.PROCESSING: frozenset({SessionStatus.PROCESSING, SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}

# (upper bound on percent, seconds remaining)
_ETA_TABLE: tuple[tuple[int, int], ...] = (
    (10, 150),
    (25, 120),
    (45, 90),
    (60, 60),
    (75, 30),
    (90, 10),
)


def estimate_remaining_seconds(percent: int) -> int:
    for ceiling, seconds in _ETA_TABLE:
        if percent <= ceiling:
            return seconds
    return 0


def check_transition(current: SessionStatus, target: SessionStatus) -> None:
    if target not in _ALLOWED.get(current, frozenset()):
        msg = f"Illegal session transition {current.value} -> {target.value}"
        raise InvalidTransition(msg)


def check_progress(record: SessionRecord, stage: PipelineStage, percent: int) -> None:
    """Reject any regression in stage or percent."""
    if not 0 <= percent <= 100:
        msg = f"Progress out of range: {percent}"
        raise InvalidTransition(msg)
    if record.stage is not None and STAGE_ORDER.index(stage) < STAGE_ORDER.index(record.stage):
        msg = f"Stage regression {record.stage.value} -> {stage.value}"
        raise InvalidTransition(msg)
    if percent < record.progress_percent:
        msg = f"Progress regression {record.progress_percent} -> {percent}"
        raise InvalidTransition(msg)


def effective_status(record: SessionRecord, now: datetime) -> SessionStatus:
    """Stored status, or EXPIRED once the retention window has passed."""
    if now >= record.expires_at:
        return SessionStatus.EXPIRED
    return record.status


def is_readable(record: SessionRecord | None, now: datetime) -> bool:
    """Deleted and expired sessions read as not found."""
    if record is None or record.deleted_at is not None:
        return False
    return effective_status(record, now) is not SessionStatus.EXPIRED


def to_snapshot(record: SessionRecord, now: datetime) -> ProgressSnapshot:
    status = effective_status(record, now)
    return ProgressSnapshot(
        session_id=record.session_id,
        status=status,
        stage=record.stage,
        progress_percent=record.progress_percent,
        estimated_time_remaining_seconds=0 if status in TERMINAL_STATUSES else record.eta_seconds,
        is_complete=status is SessionStatus.COMPLETED,
        error=record.error_detail,
        updated_at=record.updated_at,
    )
