"""Service container — constructed once at startup and kept on app.state.

The storage backend (memory | database) is chosen here from settings and
never switched at runtime. Tests build a Services by hand and pass it to
create_app().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from src.catalog.policies import PolicyCatalog
from src.config import settings
from src.events.bus import EventBus
from src.integrations.extraction.client import ExtractionClient
from src.llm.client import OllamaClient
from src.pipeline.handoff import KeyHandoff
from src.pipeline.orchestrator import Extractor, Orchestrator, PolicyAnalyzer
from src.security.anonymizer import AnonymizationEngine
from src.security.consent import ConsentLedger, DatabaseConsentLedger, MemoryConsentLedger
from src.security.encryption import SessionCipher
from src.security.pii_detector import PIIDetector
from src.security.privacy import PrivacyService
from src.security.rate_limiter import RateLimiter
from src.security.vault import DatabasePIIVault, MemoryPIIVault, PIIVault
from src.sessions.store import DatabaseSessionStore, MemorySessionStore, SessionStore
from src.streaming.publisher import ProgressPublisher

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: SessionStore
    vault: PIIVault
    consent: ConsentLedger
    handoff: KeyHandoff
    orchestrator: Orchestrator
    publisher: ProgressPublisher
    privacy: PrivacyService
    events: EventBus
    rate_limiter: RateLimiter | None = None
    llm: OllamaClient | None = None
    uses_database: bool = False

    async def close(self) -> None:
        if self.llm is not None:
            await self.llm.close()


def assemble_services(
    store: SessionStore,
    vault: PIIVault,
    consent: ConsentLedger,
    extractor: Extractor,
    analyzer: PolicyAnalyzer,
    catalog: PolicyCatalog | None = None,
    detector: PIIDetector | None = None,
    events: EventBus | None = None,
    **orchestrator_options,
) -> Services:
    """Wire the pipeline around already-constructed storage and collaborators.

    Every component built here publishes on `events`; pass the same bus to
    the storage and clients when constructing them.
    """
    events = events or EventBus()
    handoff = KeyHandoff()
    anonymizer = AnonymizationEngine(detector or PIIDetector(), vault, events)
    orchestrator = Orchestrator(
        store,
        anonymizer,
        consent,
        extractor,
        analyzer,
        catalog or PolicyCatalog.default(),
        handoff=handoff,
        events=events,
        **orchestrator_options,
    )
    return Services(
        store=store,
        vault=vault,
        consent=consent,
        handoff=handoff,
        orchestrator=orchestrator,
        publisher=ProgressPublisher(store, handoff),
        privacy=PrivacyService(vault, consent, store, handoff, events=events),
        events=events,
    )


def build_services() -> Services:
    """Production wiring from settings."""
    cipher = SessionCipher()
    events = EventBus()
    if settings.db.storage_backend == "database":
        from src.db.engine import async_session_factory, redis_client

        store: SessionStore = DatabaseSessionStore(async_session_factory)
        vault: PIIVault = DatabasePIIVault(cipher, async_session_factory, events=events)
        consent: ConsentLedger = DatabaseConsentLedger(async_session_factory, events=events)
        rate_limiter: RateLimiter | None = RateLimiter(redis_client)
    else:
        store = MemorySessionStore()
        vault = MemoryPIIVault(cipher, events=events)
        consent = MemoryConsentLedger(events=events)
        rate_limiter = None

    llm = OllamaClient(events=events)
    services = assemble_services(store, vault, consent, ExtractionClient(events=events), llm, events=events)
    services.rate_limiter = rate_limiter
    services.llm = llm
    services.uses_database = settings.db.storage_backend == "database"
    logger.info("Services built: backend=%s", settings.db.storage_backend)
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services
