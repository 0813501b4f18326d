"""Tests for the audit-log event subscriber."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models.audit import AuditLog
from src.schemas.events import EventType, SystemEvent
from src.security.audit import audit_on_event


def _factory(db):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=db)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


@pytest.mark.asyncio()
async def test_persists_event() -> None:
    db = MagicMock()
    db.commit = AsyncMock()
    event = SystemEvent(
        event_type=EventType.VAULT_STORED,
        session_id="sess-1",
        data={"categories": ["email"], "count": 1},
        source_module="security.vault",
    )
    with patch("src.security.audit.async_session_factory", _factory(db)):
        await audit_on_event(event)

    row = db.add.call_args[0][0]
    assert isinstance(row, AuditLog)
    assert row.event_type == "vault.stored"
    assert row.session_id == "sess-1"
    assert row.actor == "security.vault"
    assert row.data == {"categories": ["email"], "count": 1}
    db.commit.assert_awaited_once()


@pytest.mark.asyncio()
async def test_actor_preferred_over_module() -> None:
    db = MagicMock()
    db.commit = AsyncMock()
    event = SystemEvent(event_type=EventType.DELETION_REQUESTED, session_id="s", actor="client", source_module="x")
    with patch("src.security.audit.async_session_factory", _factory(db)):
        await audit_on_event(event)
    assert db.add.call_args[0][0].actor == "client"


@pytest.mark.asyncio()
async def test_database_failure_is_swallowed(caplog) -> None:
    db = MagicMock()
    db.commit = AsyncMock(side_effect=ConnectionError("db down"))
    event = SystemEvent(event_type=EventType.SESSION_CREATED, session_id="sess-2")
    with patch("src.security.audit.async_session_factory", _factory(db)), caplog.at_level("ERROR"):
        await audit_on_event(event)
    assert "Failed to persist audit event" in caplog.text
