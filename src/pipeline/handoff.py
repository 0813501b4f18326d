"""One-time hand-off of vault keys produced by background sessions.

The anonymize stage runs after the submitting request has returned, so the
key cannot go back on that response. It is parked here until the first
results read claims it, and is gone after that. Slots never outlive the
vault entry they unlock and are process-local only.
"""

from __future__ import annotations

from datetime import datetime

from src.clock import Clock, utcnow


class KeyHandoff:
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._slots: dict[str, tuple[str, datetime]] = {}

    def deposit(self, session_id: str, key: str, expires_at: datetime) -> None:
        self._slots[session_id] = (key, expires_at)

    def claim(self, session_id: str) -> str | None:
        """Return the key once; None if already claimed, never deposited or expired."""
        slot = self._slots.pop(session_id, None)
        if slot is None:
            return None
        key, expires_at = slot
        return key if self._clock() < expires_at else None

    def discard(self, session_id: str) -> bool:
        return self._slots.pop(session_id, None) is not None

    def discard_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._slots.items() if expires_at <= now]
        for sid in expired:
            del self._slots[sid]
        return len(expired)
