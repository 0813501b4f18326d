"""In-process pub/sub for SystemEvents.

One EventBus is built with the service container and handed to every
component that publishes (orchestrator, anonymizer, vault, consent ledger,
privacy service, retention sweep, external-service clients). The audit
logger subscribes to it in the app lifespan.

Delivery is asynchronous: emit() enqueues and returns, and a worker task on
the running loop fans each event out to the matching handlers. A failing
handler is logged and never affects the others or the emitter.

Usage:
    events = EventBus()
    events.subscribe(audit_on_event)
    await events.start()
    await events.emit(SystemEvent(event_type=EventType.SESSION_CREATED, session_id=sid))
    await events.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Queue plus one dispatch worker, both bound to the loop that first emits."""

    def __init__(self) -> None:
        self._global: list[EventHandler] = []
        self._by_type: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register `handler` for every event, or only for `event_types`."""
        if event_types is None:
            if handler not in self._global:
                self._global.append(handler)
            logger.info("Subscribed %s to all events", handler.__name__)
            return
        for event_type in event_types:
            handlers = self._by_type.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
        logger.info("Subscribed %s to %s", handler.__name__, [t.value for t in event_types])

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._global:
            self._global.remove(handler)
        for handlers in self._by_type.values():
            if handler in handlers:
                handlers.remove(handler)

    @property
    def subscriber_count(self) -> int:
        return len(self._global) + sum(len(h) for h in self._by_type.values())

    # ── Publishing ───────────────────────────────────────────────────

    async def emit(self, event: SystemEvent) -> None:
        """Enqueue an event. Starts the worker lazily if needed."""
        if not self.running:
            self._spawn_worker()
        assert self._queue is not None
        await self._queue.put(event)
        logger.debug("Event queued: %s (session=%s)", event.event_type.value, event.session_id)

    @property
    def running(self) -> bool:
        """True when a live worker is attached to the current loop."""
        if self._queue is None or self._worker is None or self._worker.done():
            return False
        return self._worker.get_loop() is asyncio.get_running_loop()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if not self.running:
            self._spawn_worker()
        logger.info("Event bus started with %d subscriber(s)", self.subscriber_count)

    async def stop(self) -> None:
        """Deliver what is queued, then stop the worker."""
        if self.running:
            assert self._queue is not None and self._worker is not None
            await self._queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        logger.info("Event bus stopped")

    # ── Internals ────────────────────────────────────────────────────

    def _spawn_worker(self) -> None:
        queue: asyncio.Queue[SystemEvent] = asyncio.Queue()
        self._queue = queue
        self._worker = asyncio.create_task(self._drain(queue), name="event-bus")

    async def _drain(self, queue: asyncio.Queue[SystemEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event delivery failed for %s", event.event_type.value)
            finally:
                queue.task_done()

    async def _deliver(self, event: SystemEvent) -> None:
        handlers = [*self._global, *self._by_type.get(event.event_type, [])]
        if handlers:
            await asyncio.gather(*(self._call(handler, event) for handler in handlers))

    @staticmethod
    async def _call(handler: EventHandler, event: SystemEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception("Handler %s failed for %s", handler.__name__, event.event_type.value)
