"""Cache notifications.

Caches publish lifecycle and item changes to registered listeners:
- Listeners may be plain callables or coroutine functions
- Coroutine listeners are scheduled as tasks, never awaited by the emitter
- A failing listener is logged and does not affect other listeners

Example:
    cache.on(CacheEvent.EVICTED, lambda info: print(info["id"], info["cause"]))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CacheEvent(str, Enum):
    """Event names emitted by caches."""

    SYNCED = "synced"
    REFRESHED = "refreshed"
    REFRESHED_ITEM = "refreshed_item"
    ITEM_CREATED = "item_created"
    ITEM_UPDATED = "item_updated"
    ITEM_REMOVED = "item_removed"
    ITEM_INVALIDATED = "item_invalidated"
    CLEARED = "cleared"
    CLEARED_FIELD = "cleared_field"
    EVICTED = "evicted"
    READY = "ready"
    ERROR = "error"
    REDIS_RECONNECTING = "redis_reconnecting"
    REDIS_RECONNECTED = "redis_reconnected"
    REDIS_DISCONNECTED = "redis_disconnected"
    # Orchestration only
    INITIALIZED = "initialized"
    DESTROYED = "destroyed"


Listener = Callable[..., Any]


class EventEmitter:
    """Listener registry keyed by event name."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: CacheEvent | str, listener: Listener) -> Listener:
        """Register a listener and return it."""
        self._listeners[_name(event)].append(listener)
        return listener

    def off(self, event: CacheEvent | str, listener: Listener) -> None:
        """Unregister a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(_name(event))
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: CacheEvent | str) -> int:
        return len(self._listeners.get(_name(event), ()))

    def remove_all_listeners(self, event: CacheEvent | str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(_name(event), None)

    def emit(self, event: CacheEvent | str, *args: Any) -> bool:
        """Call every listener of ``event``. Returns True if any were registered."""
        listeners = list(self._listeners.get(_name(event), ()))
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                logger.exception(f"Listener for {_name(event)!r} failed")
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return bool(listeners)

    def _schedule(self, event: CacheEvent | str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Async listener for {_name(event)!r} failed: {t.exception()}")

        task.add_done_callback(_done)


def _name(event: CacheEvent | str) -> str:
    return event.value if isinstance(event, CacheEvent) else event
