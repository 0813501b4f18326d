"""Audit log subscriber — persists every SystemEvent to the audit_log table.

Registered as a global subscriber (receives ALL events) when the database
backend is active. Event payloads carry ids, categories and counts only.

Never raises — failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging

from src.db.engine import async_session_factory
from src.models.audit import AuditLog
from src.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent to the audit_log table.

    Failures are logged and swallowed — audit logging must never
    crash the pipeline or a request.
    """
    try:
        async with async_session_factory() as db:
            db.add(AuditLog(
                event_type=event.event_type.value,
                session_id=event.session_id,
                actor=event.actor or event.source_module,
                data=event.data,
            ))
            await db.commit()
    except Exception:
        logger.exception(
            "Failed to persist audit event: %s (session=%s)",
            event.event_type.value,
            event.session_id,
        )
