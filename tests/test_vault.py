"""Tests for the in-memory PII vault: store, reveal, TTL, purge tombstones."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fakes import FakeClock, event_types

from src.errors import VaultClosed, VaultMiss
from src.models.enums import PIICategory
from src.schemas.events import EventType
from src.security.encryption import SessionCipher
from src.security.vault import MemoryPIIVault

SESSION = "sess-vault-1"
TOKEN_MAP = {"[NAME_1]": "Jane Smith", "[EMAIL_1]": "jane@example.com"}


@pytest.fixture
def vault(cipher: SessionCipher, clock: FakeClock) -> MemoryPIIVault:
    return MemoryPIIVault(cipher, max_ttl=timedelta(hours=24), clock=clock)


class TestStoreAndReveal:
    @pytest.mark.asyncio()
    async def test_round_trip(self, vault: MemoryPIIVault, emitted) -> None:
        key = await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        assert await vault.reveal(SESSION, key) == TOKEN_MAP
        assert event_types(emitted) == [EventType.VAULT_STORED, EventType.VAULT_REVEALED]

    @pytest.mark.asyncio()
    async def test_events_never_carry_values(self, vault: MemoryPIIVault, emitted) -> None:
        key = await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        await vault.reveal(SESSION, key)
        for call in emitted.await_args_list:
            assert "jane@example.com" not in str(call.args[0].data)

    @pytest.mark.asyncio()
    async def test_wrong_key(self, vault: MemoryPIIVault) -> None:
        await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        with pytest.raises(VaultMiss) as exc_info:
            await vault.reveal(SESSION, "00" * 32)
        assert exc_info.value.reason == "key-mismatch"

    @pytest.mark.asyncio()
    async def test_absent(self, vault: MemoryPIIVault) -> None:
        with pytest.raises(VaultMiss) as exc_info:
            await vault.reveal("nobody", "00" * 32)
        assert exc_info.value.reason == "absent"

    @pytest.mark.asyncio()
    async def test_empty_map_rejected(self, vault: MemoryPIIVault) -> None:
        with pytest.raises(ValueError, match="empty"):
            await vault.store(SESSION, {}, timedelta(minutes=30))

    @pytest.mark.asyncio()
    async def test_second_store_rejected(self, vault: MemoryPIIVault) -> None:
        await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        with pytest.raises(ValueError, match="already exists"):
            await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))

    @pytest.mark.asyncio()
    async def test_categories_recorded(self, vault: MemoryPIIVault) -> None:
        await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        info = await vault.entry_info(SESSION)
        assert info is not None
        assert info.categories == (PIICategory.EMAIL, PIICategory.NAME)
        assert info.purged is False


class TestExpiry:
    @pytest.mark.asyncio()
    async def test_ttl_capped_at_maximum(self, vault: MemoryPIIVault, clock: FakeClock) -> None:
        await vault.store(SESSION, TOKEN_MAP, timedelta(days=3))
        info = await vault.entry_info(SESSION)
        assert info is not None
        assert info.expires_at == clock.now + timedelta(hours=24)

    @pytest.mark.asyncio()
    async def test_never_outlives_session(self, vault: MemoryPIIVault, clock: FakeClock) -> None:
        not_after = clock.now + timedelta(minutes=10)
        await vault.store(SESSION, TOKEN_MAP, timedelta(hours=1), not_after)
        info = await vault.entry_info(SESSION)
        assert info is not None
        assert info.expires_at == not_after

    @pytest.mark.asyncio()
    async def test_born_expired_rejected(self, vault: MemoryPIIVault, clock: FakeClock) -> None:
        with pytest.raises(ValueError, match="born expired"):
            await vault.store(SESSION, TOKEN_MAP, timedelta(hours=1), clock.now)

    @pytest.mark.asyncio()
    async def test_reveal_after_expiry_purges(self, vault: MemoryPIIVault, clock: FakeClock) -> None:
        key = await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        clock.advance(minutes=30)
        with pytest.raises(VaultMiss) as exc_info:
            await vault.reveal(SESSION, key)
        assert exc_info.value.reason == "expired"

        # The payload is gone for good, not just hidden
        clock.advance(minutes=-10)
        with pytest.raises(VaultMiss) as exc_info:
            await vault.reveal(SESSION, key)
        assert exc_info.value.reason == "purged"

    @pytest.mark.asyncio()
    async def test_purge_expired(self, vault: MemoryPIIVault, clock: FakeClock) -> None:
        await vault.store("short", TOKEN_MAP, timedelta(minutes=30))
        await vault.store("long", TOKEN_MAP, timedelta(hours=1))
        clock.advance(minutes=45)
        assert await vault.purge_expired() == 1
        short, long = await vault.entry_info("short"), await vault.entry_info("long")
        assert short is not None and short.purged
        assert long is not None and not long.purged


class TestPurge:
    @pytest.mark.asyncio()
    async def test_idempotent(self, vault: MemoryPIIVault, emitted) -> None:
        key = await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        assert await vault.purge(SESSION) is True
        assert await vault.purge(SESSION) is False
        assert event_types(emitted).count(EventType.VAULT_PURGED) == 1
        with pytest.raises(VaultMiss):
            await vault.reveal(SESSION, key)

    @pytest.mark.asyncio()
    async def test_tombstone_blocks_late_store(self, vault: MemoryPIIVault) -> None:
        await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
        await vault.purge(SESSION)
        with pytest.raises(VaultClosed):
            await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))

    @pytest.mark.asyncio()
    async def test_purge_before_store(self, vault: MemoryPIIVault) -> None:
        """Deleting a session whose pipeline has not reached the vault yet still closes it."""
        assert await vault.purge(SESSION) is False
        with pytest.raises(VaultClosed):
            await vault.store(SESSION, TOKEN_MAP, timedelta(minutes=30))
