"""Request-coalescing loader for cache misses.

Concurrent misses for the same record share one backing-store fetch. The
in-flight registry only holds pending fetches; a settled fetch is dropped
immediately, so results are never cached here.

Load keys:
- ``id:<id>`` for primary key lookups
- ``key:<field>:<value>`` for key field lookups

Fetch failures are logged, emitted as ``error`` events and resolved to None.
A cache miss never raises into the read path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from rowcache.core.entry import Record, plain
from rowcache.core.store import index_value
from rowcache.events import CacheEvent, EventEmitter
from rowcache.observability.logging import LogContext
from rowcache.source.base import ModelSource

module_logger = logging.getLogger(__name__)

RecordWriter = Callable[[Record], Any]


class DeduplicatingLoader:
    """Loads missing records from a ``ModelSource`` at most once per key at a time."""

    def __init__(
        self,
        source: ModelSource,
        write: RecordWriter,
        emitter: EventEmitter,
        *,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ):
        self.source = source
        self.enabled = enabled
        self._write = write
        self._emitter = emitter
        self._inflight: dict[str, asyncio.Task[Record | None]] = {}
        self.logger = logger or module_logger

    @property
    def pending(self) -> int:
        """Number of fetches currently in flight."""
        return len(self._inflight)

    def is_loading(self, load_key: str) -> bool:
        return load_key in self._inflight

    async def load_by_id(self, record_id: Any, emit_event: bool = True) -> Record | None:
        """Fetch a record by primary key, coalescing concurrent calls."""
        if not self.enabled:
            return None
        load_key = f"id:{record_id}"
        return await self._coalesce(
            load_key, lambda: self.source.find_by_pk(record_id), emit_event
        )

    async def load_by_key(
        self, field: str, value: Any, emit_event: bool = True
    ) -> Record | None:
        """Fetch a record by key field value, coalescing concurrent calls."""
        if not self.enabled:
            return None
        load_key = f"key:{field}:{index_value(value)}"
        return await self._coalesce(
            load_key, lambda: self.source.find_one({field: value}), emit_event
        )

    async def _coalesce(
        self,
        load_key: str,
        fetch: Callable[[], Awaitable[Record | None]],
        emit_event: bool,
    ) -> Record | None:
        # Check-and-set happens before the first await
        task = self._inflight.get(load_key)
        if task is None:
            task = asyncio.create_task(self._fetch(load_key, fetch, emit_event))
            self._inflight[load_key] = task
        # Shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(
        self,
        load_key: str,
        fetch: Callable[[], Awaitable[Record | None]],
        emit_event: bool,
    ) -> Record | None:
        with LogContext(model=self.source.name, operation="lazy_load"):
            try:
                found = await fetch()
                if found is None:
                    self.logger.debug(f"Lazy load found nothing for {load_key}")
                    return None
                record = plain(found)
                self._write(record)
                if emit_event:
                    self._emitter.emit(CacheEvent.REFRESHED_ITEM, record)
                return record
            except Exception as e:
                self.logger.error(f"Lazy load failed for {load_key}: {e}")
                self._emitter.emit(CacheEvent.ERROR, e)
                return None
            finally:
                self._inflight.pop(load_key, None)
