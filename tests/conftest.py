"""Shared fixtures: a movable clock, muted event emission, a cheap cipher."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fakes import FakeClock

from src.events.bus import EventBus
from src.security.encryption import SessionCipher


@pytest.fixture(autouse=True)
def emitted():
    """Replace EventBus.emit on every bus; yields the shared AsyncMock.

    The mock is a plain class attribute, so it is not bound and each call
    records only the event.
    """
    mock = AsyncMock()
    with patch.object(EventBus, "emit", new=mock):
        yield mock


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cipher() -> SessionCipher:
    # Lowest accepted cost keeps key derivation fast
    return SessionCipher(iterations=1000)
