"""Retention sweep — periodic storage reclamation for expired data.

Purges vault payloads past their expiry, reclaims old vault tombstones,
drops unclaimed key hand-offs and hard-deletes session records past
expires_at. Correctness never depends on this job: expiry is enforced on
every read. Consent records are never swept.

Wired into the FastAPI lifespan as a background loop (see src.main).
"""

from __future__ import annotations

import asyncio
import logging

from src.config import settings
from src.events.bus import EventBus
from src.pipeline.handoff import KeyHandoff
from src.schemas.events import EventType, SystemEvent
from src.security.vault import PIIVault
from src.sessions.store import SessionStore

logger = logging.getLogger(__name__)


async def enforce_data_retention(
    store: SessionStore,
    vault: PIIVault,
    handoff: KeyHandoff | None = None,
    events: EventBus | None = None,
) -> dict[str, int]:
    """Run one sweep. Returns a summary dict.

    Idempotent: running twice is harmless. A failure in one step is logged
    and the remaining steps still run.
    """
    summary: dict[str, int] = {
        "vault_entries_purged": 0,
        "vault_tombstones_reclaimed": 0,
        "key_handoffs_dropped": 0,
        "sessions_deleted": 0,
    }

    try:
        summary["vault_entries_purged"] = await vault.purge_expired()
        summary["vault_tombstones_reclaimed"] = await vault.reclaim_tombstones()
    except Exception:
        logger.exception("Retention sweep: vault cleanup failed")
    if handoff is not None:
        summary["key_handoffs_dropped"] = handoff.discard_expired()
    try:
        summary["sessions_deleted"] = await store.delete_expired()
    except Exception:
        logger.exception("Retention sweep: session cleanup failed")

    if events is not None:
        await events.emit(SystemEvent(
            event_type=EventType.SYSTEM_MAINTENANCE,
            data={"action": "data_retention", **summary},
            source_module="security.retention",
        ))

    logger.info(
        "Retention sweep complete: vault=%d tombstones=%d handoffs=%d sessions=%d",
        summary["vault_entries_purged"],
        summary["vault_tombstones_reclaimed"],
        summary["key_handoffs_dropped"],
        summary["sessions_deleted"],
    )
    return summary


async def run_retention_loop(
    store: SessionStore,
    vault: PIIVault,
    handoff: KeyHandoff | None = None,
    events: EventBus | None = None,
    interval: float | None = None,
) -> None:
    """Sweep forever at a fixed interval. Cancelled on shutdown."""
    interval = interval if interval is not None else settings.processing.retention_sweep_interval
    while True:
        await asyncio.sleep(interval)
        await enforce_data_retention(store, vault, handoff, events)
