"""FastAPI application entry point — wires everything together.

Usage:
    python -m src.main

Starts the HTTP API, the event system and the retention sweeper.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from src.api.dependencies import Services, build_services
from src.api.errors import register_exception_handlers
from src.api.routes import policies_router, privacy_router
from src.config import settings
from src.security.audit import audit_on_event
from src.security.retention import run_retention_loop

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)


# ── FastAPI app ──────────────────────────────────────────────────────


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application. Tests pass a pre-assembled Services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        svc = services if services is not None else build_services()
        app.state.services = svc
        logger.info(
            "Starting PolicyLens (env=%s, backend=%s)",
            settings.environment,
            "database" if svc.uses_database else "memory",
        )

        async with contextlib.AsyncExitStack() as stack:
            # 1. Database (+ audit trail, which needs a table to write to)
            if svc.uses_database:
                from src.db.engine import db_lifespan

                await stack.enter_async_context(db_lifespan())
                svc.events.subscribe(audit_on_event)
                logger.info("Database initialized, audit logging registered")

            # 2. Event system
            await svc.events.start()
            logger.info("Event system started")

            # 3. Retention sweeper
            sweeper = asyncio.create_task(
                run_retention_loop(svc.store, svc.vault, svc.handoff, svc.events),
                name="retention-sweeper",
            )

            try:
                yield
            finally:
                logger.info("Shutting down PolicyLens...")

                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

                await svc.orchestrator.shutdown()
                logger.info("In-flight sessions drained")

                await svc.close()

                await svc.events.stop()
                if svc.uses_database:
                    svc.events.unsubscribe(audit_on_event)
                logger.info("Event system stopped")

        logger.info("PolicyLens shutdown complete")

    app = FastAPI(
        title="PolicyLens API",
        description="Privacy-preserving insurance policy analysis",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(policies_router)
    app.include_router(privacy_router)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        svc: Services = app.state.services
        return {
            "status": "ok",
            "environment": settings.environment,
            "storageBackend": "database" if svc.uses_database else "memory",
            "activeSessions": svc.orchestrator.active_sessions,
        }

    return app


app = create_app()


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
