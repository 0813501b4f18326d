"""Consent ledger — records, reads and exports per-session consent.

Every change appends an immutable version; nothing is overwritten. The
current consent is the most recent version by recorded_at, or the default
(everything off, shortest retention) when none exists. A deletion request
is itself appended as a default-choices version with reason
"data-deletion". Source IPs are stored only as a keyed hash.

Usage:
    ledger = MemoryConsentLedger()
    await ledger.record_consent(session_id, ConsentChoices(include_name=True), "203.0.113.5", "Mozilla/5.0")
    current = await ledger.get_consent(session_id)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clock import Clock, utcnow
from src.config import settings
from src.events.bus import EventBus
from src.models.consent import ConsentRecord
from src.models.enums import RetentionWindow
from src.schemas.events import EventType, SystemEvent
from src.schemas.privacy import ConsentChoices, ConsentSnapshot

logger = logging.getLogger(__name__)

DELETION_REASON = "data-deletion"

RETENTION_DURATIONS: dict[RetentionWindow, timedelta] = {
    RetentionWindow.SESSION_ONLY: timedelta(minutes=30),
    RetentionWindow.ONE_HOUR: timedelta(hours=1),
    RetentionWindow.TWENTY_FOUR_HOURS: timedelta(hours=24),
}


def retention_ttl(window: RetentionWindow) -> timedelta:
    return RETENTION_DURATIONS[window]


def hash_source_ip(source_ip: str | None, secret: str) -> str | None:
    """HMAC-SHA256 of the client IP under `secret`, truncated to 16 hex chars."""
    if not source_ip:
        return None
    return hmac.new(secret.encode(), source_ip.encode(), hashlib.sha256).hexdigest()[:16]


class ConsentLedger(ABC):
    """Append-only ledger. Backends only implement storage."""

    def __init__(
        self,
        ip_hash_secret: str | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        self._events = events or EventBus()
        self._ip_hash_secret = ip_hash_secret if ip_hash_secret is not None else settings.privacy.ip_hash_secret
        self._clock = clock

    def get_default_consent(self, session_id: str = "") -> ConsentSnapshot:
        """Most conservative consent: nothing optional included, shortest retention."""
        return ConsentSnapshot(
            session_id=session_id,
            choices=ConsentChoices(),
            recorded_at=self._clock(),
            is_default=True,
        )

    async def record_consent(
        self,
        session_id: str,
        choices: ConsentChoices,
        source_ip: str | None = None,
        user_agent: str | None = None,
        reason: str | None = None,
    ) -> ConsentSnapshot:
        """Append a new consent version."""
        snapshot = ConsentSnapshot(
            session_id=session_id,
            choices=choices,
            recorded_at=self._clock(),
            reason=reason,
            source_ip_hash=hash_source_ip(source_ip, self._ip_hash_secret),
            user_agent=user_agent[:500] if user_agent else None,
        )
        await self._append(snapshot)

        await self._events.emit(SystemEvent(
            event_type=EventType.CONSENT_RECORDED,
            session_id=session_id,
            actor="client",
            data={
                "choices": choices.model_dump(mode="json"),
                "reason": reason,
            },
            source_module="security.consent",
        ))
        logger.info(
            "Consent recorded: session=%s retention=%s reason=%s",
            session_id,
            choices.data_retention.value,
            reason,
        )
        return snapshot

    async def record_deletion(
        self,
        session_id: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentSnapshot:
        """Reset consent to default, marking the version as a deletion."""
        return await self.record_consent(
            session_id,
            ConsentChoices(),
            source_ip=source_ip,
            user_agent=user_agent,
            reason=DELETION_REASON,
        )

    async def get_consent(self, session_id: str) -> ConsentSnapshot:
        """Current consent, or the default when nothing was recorded."""
        latest = await self._latest(session_id)
        return latest if latest is not None else self.get_default_consent(session_id)

    async def history(self, session_id: str) -> list[ConsentSnapshot]:
        """Every version, oldest first."""
        return await self._all(session_id)

    # ── Backend hooks ────────────────────────────────────────────────

    @abstractmethod
    async def _append(self, snapshot: ConsentSnapshot) -> None: ...

    @abstractmethod
    async def _latest(self, session_id: str) -> ConsentSnapshot | None: ...

    @abstractmethod
    async def _all(self, session_id: str) -> list[ConsentSnapshot]: ...


class MemoryConsentLedger(ConsentLedger):
    def __init__(
        self,
        ip_hash_secret: str | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(ip_hash_secret, clock, events)
        self._records: dict[str, list[ConsentSnapshot]] = {}

    async def _append(self, snapshot: ConsentSnapshot) -> None:
        self._records.setdefault(snapshot.session_id, []).append(snapshot)

    async def _latest(self, session_id: str) -> ConsentSnapshot | None:
        records = self._records.get(session_id)
        if not records:
            return None
        # Ties on recorded_at go to the later append
        return max(reversed(records), key=lambda r: r.recorded_at)

    async def _all(self, session_id: str) -> list[ConsentSnapshot]:
        return sorted(self._records.get(session_id, []), key=lambda r: r.recorded_at)


class DatabaseConsentLedger(ConsentLedger):
    """Ledger backed by the consent_records table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ip_hash_secret: str | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(ip_hash_secret, clock, events)
        self._session_factory = session_factory

    async def _append(self, snapshot: ConsentSnapshot) -> None:
        async with self._session_factory() as db:
            db.add(ConsentRecord(
                session_id=snapshot.session_id,
                choices=snapshot.choices.model_dump(mode="json"),
                reason=snapshot.reason,
                source_ip_hash=snapshot.source_ip_hash,
                user_agent=snapshot.user_agent,
                recorded_at=snapshot.recorded_at,
            ))
            await db.commit()

    async def _latest(self, session_id: str) -> ConsentSnapshot | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConsentRecord)
                .where(ConsentRecord.session_id == session_id)
                .order_by(ConsentRecord.recorded_at.desc(), ConsentRecord.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
        return _to_snapshot(row) if row is not None else None

    async def _all(self, session_id: str) -> list[ConsentSnapshot]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ConsentRecord)
                .where(ConsentRecord.session_id == session_id)
                .order_by(ConsentRecord.recorded_at.asc(), ConsentRecord.created_at.asc())
            )
            rows = result.scalars().all()
        return [_to_snapshot(r) for r in rows]


def _to_snapshot(row: ConsentRecord) -> ConsentSnapshot:
    return ConsentSnapshot(
        session_id=row.session_id,
        choices=ConsentChoices.model_validate(row.choices),
        recorded_at=row.recorded_at,
        reason=row.reason,
        source_ip_hash=row.source_ip_hash,
        user_agent=row.user_agent,
    )
