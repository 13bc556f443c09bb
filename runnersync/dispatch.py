"""Debounced, coalescing fan-out of change notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from .types import ChangeType, QueuedEvent

logger = logging.getLogger("runnersync.dispatch")

EventHandler = Callable[[Any], Any]


def event_key(name: str | Enum) -> str:
    return name.value if isinstance(name, Enum) else name


class EventDispatcher:
    """Pub/sub layer between the realtime transport and the application.

    ``enqueue`` feeds the debounced path: one timer shared by every change
    type is re-armed on each call, and when it fires only the latest payload
    per type is delivered. ``emit`` is the immediate path. Every handler call
    is isolated, so one failing handler never stops the others.
    """

    def __init__(self, *, debounce_delay: float = 0.5, clock: Callable[[], float] = time.time) -> None:
        self._debounce_delay = debounce_delay
        self._clock = clock
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queue: list[QueuedEvent] = []
        self._timer: asyncio.TimerHandle | None = None
        self._handler_tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def debounce_armed(self) -> bool:
        return self._timer is not None

    def on(self, name: str | Enum, handler: EventHandler) -> None:
        self._handlers.setdefault(event_key(name), []).append(handler)

    def off(self, name: str | Enum, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_key(name))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event_key(name), None)

    def handlers(self, name: str | Enum) -> list[EventHandler]:
        return list(self._handlers.get(event_key(name), ()))

    def enqueue(self, change_type: ChangeType | str, payload: Any) -> None:
        event = QueuedEvent(type=ChangeType(change_type), payload=payload, enqueued_at=self._clock())
        self._queue.append(event)
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def flush(self) -> dict[ChangeType, Any]:
        """Deliver the latest queued payload per change type and empty the queue."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._queue:
            return {}
        queued, self._queue = self._queue, []
        latest: dict[ChangeType, Any] = {}
        for event in queued:
            latest.pop(event.type, None)
            latest[event.type] = event.payload
        logger.debug("dispatch_flush", extra={"queued": len(queued), "types": [t.value for t in latest]})
        for change_type, payload in latest.items():
            self.emit(change_type.value, payload)
        return latest

    def emit(self, name: str | Enum, data: Any = None) -> int:
        """Invoke every handler for ``name`` now; returns how many completed without raising."""
        delivered = 0
        for handler in self.handlers(name):
            try:
                outcome = handler(data)
            except Exception:
                logger.exception("event_handler_failed", extra={"event": event_key(name)})
                continue
            if inspect.isawaitable(outcome):
                self._track(name, outcome)
            delivered += 1
        return delivered

    def _track(self, name: str | Enum, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._handler_tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._handler_tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("event_handler_failed", extra={"event": event_key(name)}, exc_info=exc)

        task.add_done_callback(_done)

    async def dispose(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queue.clear()
        tasks = list(self._handler_tasks)
        self._handler_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["EventDispatcher", "EventHandler", "event_key"]
