"""Governance event bus: async pub/sub for SystemEvents.

Ledger writes are synchronous and authoritative; events are the best-effort
notification path that feeds the AlertEngine. A slow or failing subscriber
never blocks or fails a governed action.

Usage:
    # Emit an event from anywhere:
    from govcore.admin.events import emit

    await emit(SystemEvent(
        event_type=EventType.ESCALATION_OPENED,
        data={"metric": "overdue_approvals", "value": 3},
    ))

    # Register a subscriber at startup:
    from govcore.admin.events import subscribe

    subscribe(my_handler)  # async def my_handler(event: SystemEvent) -> None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from govcore.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]

_QUEUE_MAXSIZE = 1000


class EventBus:
    """Queue-backed dispatcher with global and per-type subscribers."""

    def __init__(self, maxsize: int = _QUEUE_MAXSIZE) -> None:
        self._maxsize = maxsize
        self._subscribers: list[EventHandler] = []
        self._type_subscribers: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Register a handler for all events, or only for `event_types`."""
        if event_types is None:
            self._subscribers.append(handler)
            logger.info("Registered global event subscriber: %s", handler.__name__)
            return
        for et in event_types:
            self._type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for types: %s",
            handler.__name__,
            [t.value for t in event_types],
        )

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)
        for handlers in self._type_subscribers.values():
            if handler in handlers:
                handlers.remove(handler)

    async def emit(self, event: SystemEvent) -> None:
        """Queue an event for the background worker.

        Without a running worker (CLI, tests) the event is dispatched inline.
        A full queue drops the event with an error log.
        """
        if self._queue is None or not self.running:
            await self.dispatch(event)
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("Event queue full, dropping %s", event.event_type.value)
            return
        logger.debug("Event emitted: %s (actor=%s)", event.event_type.value, event.actor_id)

    async def dispatch(self, event: SystemEvent) -> None:
        """Deliver one event to every matching subscriber, isolating failures."""
        handlers: list[EventHandler] = list(self._subscribers)
        handlers.extend(self._type_subscribers.get(event.event_type, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Handler %s failed for event %s: %s",
                    handler.__name__,
                    event.event_type.value,
                    result,
                )

    async def start(self) -> None:
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        if not self.running:
            self._worker_task = asyncio.create_task(self._worker())
        logger.info(
            "Event system started with %d global + %d typed subscribers",
            len(self._subscribers),
            sum(len(v) for v in self._type_subscribers.values()),
        )

    async def stop(self) -> None:
        """Drain pending events, then cancel the worker."""
        if self._queue is not None and self.running:
            await self._queue.join()
        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        self._worker_task = None
        self._queue = None
        logger.info("Event system stopped")

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Error in event worker")
            finally:
                self._queue.task_done()


# Module-level singleton
event_bus = EventBus()


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    event_bus.subscribe(handler, event_types)


def unsubscribe(handler: EventHandler) -> None:
    event_bus.unsubscribe(handler)


async def emit(event: SystemEvent) -> None:
    await event_bus.emit(event)


async def start_event_system() -> None:
    """Initialize the event system. Call during FastAPI lifespan startup."""
    await event_bus.start()


async def stop_event_system() -> None:
    """Gracefully stop the event system. Call during FastAPI lifespan shutdown."""
    await event_bus.stop()
