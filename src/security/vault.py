"""Encrypted PII vault — token→original-value maps, one per session.

store() seals the map under a fresh per-session secret and returns that
secret exactly once; only the holder can reveal. Expiry is a hard
boundary: an expired entry is purged on read and reported as a miss.
purge() is idempotent, works without the session record, and leaves a
tombstone so a late store() from an in-flight pipeline is refused; the
retention sweep reclaims tombstones once no such store can arrive.

Two interchangeable backends, selected at startup:
- MemoryPIIVault   — process-local, for development and tests
- DatabasePIIVault — pii_vault_entries table

Usage:
    vault = MemoryPIIVault(SessionCipher())
    key = await vault.store(session_id, {"[EMAIL_1]": "jane@example.com"}, timedelta(minutes=30))
    token_map = await vault.reveal(session_id, key)
    await vault.purge(session_id)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import NoReturn

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clock import Clock, utcnow
from src.config import settings
from src.errors import VaultClosed, VaultMiss
from src.events.bus import EventBus
from src.models.enums import PIICategory
from src.models.vault_entry import PIIVaultEntry
from src.schemas.events import EventType, SystemEvent
from src.security.encryption import DecryptionError, SealedPayload, SessionCipher, generate_session_secret
from src.security.pii_detector import token_category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultRecord:
    """Stored form of an entry. `sealed` is None once purged."""

    session_id: str
    sealed: SealedPayload | None
    categories: tuple[PIICategory, ...]
    stored_at: datetime
    expires_at: datetime
    purged_at: datetime | None = None


@dataclass(frozen=True)
class VaultEntryInfo:
    """Metadata only — safe to expose in transparency reports."""

    session_id: str
    categories: tuple[PIICategory, ...]
    stored_at: datetime
    expires_at: datetime
    purged: bool


class PIIVault(ABC):
    """Crypto, TTL and event logic shared by both backends."""

    def __init__(
        self,
        cipher: SessionCipher,
        max_ttl: timedelta | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        self._cipher = cipher
        self._events = events or EventBus()
        self._max_ttl = max_ttl or timedelta(hours=settings.privacy.vault_max_ttl_hours)
        self._clock = clock

    # ── Public API ───────────────────────────────────────────────────

    async def store(
        self,
        session_id: str,
        token_map: dict[str, str],
        ttl: timedelta,
        not_after: datetime | None = None,
    ) -> str:
        """Seal and persist a token map. Returns the session secret (the only copy).

        The entry lives for min(ttl, max_ttl) and never past `not_after`
        (the owning session's expires_at).

        Raises:
            VaultClosed: the session's vault was already purged.
            ValueError: empty map, or an entry already exists.
        """
        if not token_map:
            msg = "Refusing to store an empty token map"
            raise ValueError(msg)

        now = self._clock()
        expires_at = now + min(ttl, self._max_ttl)
        if not_after is not None:
            expires_at = min(expires_at, not_after)
        if expires_at <= now:
            msg = f"Vault entry for session {session_id} would be born expired"
            raise ValueError(msg)

        secret = generate_session_secret()
        sealed = self._cipher.seal(secret, json.dumps(token_map, sort_keys=True), session_id)
        categories = tuple(sorted(
            {c for c in (token_category(t) for t in token_map) if c is not None},
            key=lambda c: c.value,
        ))

        await self._insert(VaultRecord(
            session_id=session_id,
            sealed=sealed,
            categories=categories,
            stored_at=now,
            expires_at=expires_at,
        ))

        await self._events.emit(SystemEvent(
            event_type=EventType.VAULT_STORED,
            session_id=session_id,
            data={
                "categories": [c.value for c in categories],
                "token_count": len(token_map),
                "expires_at": expires_at.isoformat(),
            },
            source_module="security.vault",
        ))
        logger.info("Vault entry stored: session=%s tokens=%d expires=%s", session_id, len(token_map), expires_at)
        return secret

    async def reveal(self, session_id: str, key: str) -> dict[str, str]:
        """Decrypt the token map. Raises VaultMiss when absent, purged, expired or the key is wrong."""
        record = await self._load(session_id)
        if record is None:
            await self._miss(session_id, "absent")
        if record.sealed is None:
            await self._miss(session_id, "purged")
        if self._clock() >= record.expires_at:
            await self.purge(session_id, reason="expired")
            await self._miss(session_id, "expired")

        try:
            plaintext = self._cipher.open(key, record.sealed, session_id)  # type: ignore[arg-type]
        except DecryptionError:
            await self._miss(session_id, "key-mismatch")

        await self._events.emit(SystemEvent(
            event_type=EventType.VAULT_REVEALED,
            session_id=session_id,
            data={"categories": [c.value for c in record.categories]},
            source_module="security.vault",
        ))
        return json.loads(plaintext)

    async def purge(self, session_id: str, reason: str = "request") -> bool:
        """Wipe the payload and leave a tombstone. Idempotent.

        Returns True if a live payload was destroyed by this call.
        """
        destroyed = await self._wipe(session_id, self._clock())
        if destroyed:
            await self._events.emit(SystemEvent(
                event_type=EventType.VAULT_PURGED,
                session_id=session_id,
                data={"reason": reason},
                source_module="security.vault",
            ))
            logger.info("Vault entry purged: session=%s reason=%s", session_id, reason)
        return destroyed

    async def entry_info(self, session_id: str) -> VaultEntryInfo | None:
        record = await self._load(session_id)
        if record is None:
            return None
        return VaultEntryInfo(
            session_id=record.session_id,
            categories=record.categories,
            stored_at=record.stored_at,
            expires_at=record.expires_at,
            purged=record.sealed is None or self._clock() >= record.expires_at,
        )

    async def purge_expired(self) -> int:
        """Destroy every payload past its expiry. Returns the number wiped."""
        now = self._clock()
        count = 0
        for session_id in await self._expired_ids(now):
            if await self.purge(session_id, reason="expired"):
                count += 1
        return count

    async def reclaim_tombstones(self) -> int:
        """Drop tombstones old enough that no pipeline can still try to store.

        A tombstone lives until max_ttl past its expires_at. For an id that
        was never stored that is the purge time; for a stored entry the
        single store() already happened, so only its natural expiry matters.
        """
        count = await self._delete_tombstones(self._clock() - self._max_ttl)
        if count:
            logger.info("Reclaimed %d vault tombstones", count)
        return count

    # ── Helpers ──────────────────────────────────────────────────────

    async def _miss(self, session_id: str, reason: str) -> NoReturn:
        await self._events.emit(SystemEvent(
            event_type=EventType.VAULT_MISS,
            session_id=session_id,
            data={"reason": reason},
            source_module="security.vault",
        ))
        logger.info("Vault miss: session=%s reason=%s", session_id, reason)
        raise VaultMiss(session_id, reason)

    # ── Backend hooks ────────────────────────────────────────────────

    @abstractmethod
    async def _insert(self, record: VaultRecord) -> None:
        """Persist a new entry. Raise VaultClosed over a tombstone, ValueError over a live entry."""

    @abstractmethod
    async def _load(self, session_id: str) -> VaultRecord | None: ...

    @abstractmethod
    async def _wipe(self, session_id: str, now: datetime) -> bool: ...

    @abstractmethod
    async def _expired_ids(self, now: datetime) -> list[str]: ...

    @abstractmethod
    async def _delete_tombstones(self, cutoff: datetime) -> int:
        """Delete tombstones whose expires_at is at or before `cutoff`."""


# ── In-memory backend ────────────────────────────────────────────────


class MemoryPIIVault(PIIVault):
    """Process-local vault. Operations never await between read and write."""

    def __init__(
        self,
        cipher: SessionCipher,
        max_ttl: timedelta | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(cipher, max_ttl, clock, events)
        self._entries: dict[str, VaultRecord] = {}

    async def _insert(self, record: VaultRecord) -> None:
        existing = self._entries.get(record.session_id)
        if existing is not None:
            if existing.sealed is None:
                raise VaultClosed(record.session_id)
            msg = f"Vault entry for session {record.session_id} already exists"
            raise ValueError(msg)
        self._entries[record.session_id] = record

    async def _load(self, session_id: str) -> VaultRecord | None:
        return self._entries.get(session_id)

    async def _wipe(self, session_id: str, now: datetime) -> bool:
        existing = self._entries.get(session_id)
        if existing is None:
            self._entries[session_id] = VaultRecord(
                session_id=session_id, sealed=None, categories=(), stored_at=now, expires_at=now, purged_at=now,
            )
            return False
        if existing.sealed is None:
            return False
        self._entries[session_id] = replace(existing, sealed=None, purged_at=now)
        return True

    async def _expired_ids(self, now: datetime) -> list[str]:
        return [sid for sid, r in self._entries.items() if r.sealed is not None and r.expires_at <= now]

    async def _delete_tombstones(self, cutoff: datetime) -> int:
        stale = [sid for sid, r in self._entries.items() if r.sealed is None and r.expires_at <= cutoff]
        for sid in stale:
            del self._entries[sid]
        return len(stale)


# ── Database backend ─────────────────────────────────────────────────


class DatabasePIIVault(PIIVault):
    """Vault backed by the pii_vault_entries table."""

    def __init__(
        self,
        cipher: SessionCipher,
        session_factory: async_sessionmaker[AsyncSession],
        max_ttl: timedelta | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        super().__init__(cipher, max_ttl, clock, events)
        self._session_factory = session_factory

    async def _insert(self, record: VaultRecord) -> None:
        assert record.sealed is not None
        async with self._session_factory() as db:
            result = await db.execute(select(PIIVaultEntry).where(PIIVaultEntry.session_id == record.session_id))
            existing = result.scalar_one_or_none()
            if existing is not None:
                if existing.purged_at is not None:
                    raise VaultClosed(record.session_id)
                msg = f"Vault entry for session {record.session_id} already exists"
                raise ValueError(msg)
            db.add(PIIVaultEntry(
                session_id=record.session_id,
                encrypted_payload=record.sealed.ciphertext,
                encryption_salt=record.sealed.salt,
                algorithm_id=record.sealed.algorithm_id,
                categories=",".join(c.value for c in record.categories),
                stored_at=record.stored_at,
                expires_at=record.expires_at,
            ))
            await db.commit()

    async def _load(self, session_id: str) -> VaultRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(PIIVaultEntry).where(PIIVaultEntry.session_id == session_id))
            row = result.scalar_one_or_none()
        if row is None:
            return None
        sealed = None
        if row.purged_at is None and row.encrypted_payload and row.encryption_salt:
            sealed = SealedPayload(
                ciphertext=row.encrypted_payload,
                salt=row.encryption_salt,
                algorithm_id=row.algorithm_id,
            )
        return VaultRecord(
            session_id=row.session_id,
            sealed=sealed,
            categories=tuple(PIICategory(c) for c in (row.categories or "").split(",") if c),
            stored_at=row.stored_at,
            expires_at=row.expires_at,
            purged_at=row.purged_at,
        )

    async def _wipe(self, session_id: str, now: datetime) -> bool:
        try:
            return await self._wipe_once(session_id, now)
        except IntegrityError:
            # A store() committed its row between our UPDATE and the tombstone INSERT
            logger.info("Vault purge raced a store, retrying: session=%s", session_id)
            return await self._wipe_once(session_id, now)

    async def _wipe_once(self, session_id: str, now: datetime) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(PIIVaultEntry)
                .where(PIIVaultEntry.session_id == session_id, PIIVaultEntry.purged_at.is_(None))
                .values(encrypted_payload=None, encryption_salt=None, purged_at=now)
            )
            destroyed = result.rowcount > 0  # type: ignore[attr-defined]
            if not destroyed:
                exists = await db.execute(select(PIIVaultEntry.id).where(PIIVaultEntry.session_id == session_id))
                if exists.scalar_one_or_none() is None:
                    db.add(PIIVaultEntry(
                        session_id=session_id,
                        algorithm_id="tombstone",
                        stored_at=now,
                        expires_at=now,
                        purged_at=now,
                    ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise
        return destroyed

    async def _delete_tombstones(self, cutoff: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(PIIVaultEntry).where(
                    PIIVaultEntry.purged_at.is_not(None),
                    PIIVaultEntry.expires_at <= cutoff,
                )
            )
            await db.commit()
        return result.rowcount  # type: ignore[attr-defined]

    async def _expired_ids(self, now: datetime) -> list[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PIIVaultEntry.session_id).where(
                    PIIVaultEntry.purged_at.is_(None),
                    PIIVaultEntry.expires_at <= now,
                )
            )
            return list(result.scalars().all())
