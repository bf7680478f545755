"""Read-through cache for a single model.

``CacheManager`` keeps an in-memory copy of one model's records, indexed by
primary key and by any number of key fields, and keeps it fresh:
- Full and incremental syncs against the backing source
- Source change hooks applied as they happen
- TTL expiry with optional stale-while-revalidate
- Deduplicated lazy loading on misses
- LRU eviction once ``max_size`` entries are cached
- Optional write-through replication to Redis and cross-instance
  invalidation over Redis Pub/Sub

Example:
    cache = CacheManager(source, CacheOptions(key_fields=["email"], ttl_ms=60_000))
    await cache.auto_load()
    user = await cache.get_by_key("email", "a@example.com")
    await cache.destroy()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from copy import deepcopy
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from rowcache.cache.invalidation import ClusterSync, InvalidationMessage
from rowcache.cache.keys import CacheKeys
from rowcache.cache.redis import RedisConnectionManager, RedisReplica
from rowcache.config import CacheOptions
from rowcache.core.entry import CacheEntry, Record, now_ms, plain
from rowcache.core.loader import DeduplicatingLoader
from rowcache.core.store import EntryStore, index_value
from rowcache.errors import CacheError, CacheLoadError
from rowcache.events import CacheEvent, EventEmitter
from rowcache.observability.logging import LogContext
from rowcache.observability.metrics import CacheMetrics
from rowcache.source.base import Gt, HookCallback, HookType, In, ModelSource

module_logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Lifecycle of a cache."""

    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    REFRESHING = "refreshing"
    DESTROYED = "destroyed"


class CacheManager(EventEmitter):
    """In-memory cache of one model, optionally replicated to Redis.

    Args:
        source: Backing model
        options: Cache options; keyword overrides are applied on top
    """

    def __init__(
        self,
        source: ModelSource,
        options: CacheOptions | None = None,
        **overrides: Any,
    ):
        super().__init__()
        if overrides:
            options = CacheOptions(**{**(dict(options) if options else {}), **overrides})
        self.options = options or CacheOptions()
        self.source = source
        self.name = source.name
        self.logger = self.options.logger or module_logger

        self.metrics = CacheMetrics(model=self.name)
        self.store = EntryStore(
            self.name,
            self.options.key_fields,
            primary_key=source.primary_key,
            ttl_ms=self.options.ttl_ms,
            max_size=self.options.max_size,
            metrics=self.metrics,
            emitter=self,
            logger=self.logger,
        )
        self.loader = DeduplicatingLoader(
            source,
            self._write,
            self,
            enabled=self.options.lazy_reload,
            logger=self.logger,
        )

        # Redis is a capability: all three stay None when not configured
        self.connection: RedisConnectionManager | None = None
        self.replica: RedisReplica | None = None
        self.cluster: ClusterSync | None = None
        redis_options = self.options.redis
        if redis_options is not None:
            if redis_options.key_prefix:
                self.keys = CacheKeys(redis_options.key_prefix)
            else:
                self.keys = CacheKeys.for_model(self.name)
            self.connection = RedisConnectionManager(
                redis_options, self, name=self.name, logger=self.logger
            )
            self.replica = RedisReplica(
                self.connection, self.keys, self, model_name=self.name, logger=self.logger
            )
            if redis_options.enable_cluster_sync:
                self.cluster = ClusterSync(
                    self.connection,
                    self.keys,
                    self._on_remote_invalidation,
                    self,
                    logger=self.logger,
                )
                self.on(CacheEvent.REDIS_RECONNECTED, self._resume_cluster_sync)

        self._state = LifecycleState.UNINITIALIZED
        self._ready = False
        self._ready_task: asyncio.Task[None] | None = None
        self._syncing = False
        self._last_sync_error: BaseException | None = None
        self.last_sync_at: float | None = None
        self._last_auto_sync = 0.0
        self._refresh_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._revalidations: set[asyncio.Task[Any]] = set()
        self._hook_refs: dict[HookType, HookCallback] | None = None
        self._signal_loop: asyncio.AbstractEventLoop | None = None
        self._signal_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def syncing(self) -> bool:
        return self._syncing

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _put(self, entry: CacheEntry) -> CacheEntry | None:
        """Store an entry and mirror it to Redis."""
        if self._state == LifecycleState.DESTROYED:
            return None
        stored = self.store.put_entry(entry)
        if stored is not None and self.replica is not None:
            record_id = self.store.primary_id(stored.data)
            if record_id is not None:
                self.replica.write(record_id, stored)
        return stored

    def _write(self, record: Record) -> CacheEntry | None:
        return self._put(CacheEntry(data=record, expires_at=self.store.expiry()))

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync(self, incremental: bool = True) -> bool:
        """Reconcile the cache with the source.

        Incremental syncs fetch records modified since the last successful
        sync and merge them; deletions only arrive through hooks. A full sync
        replaces the in-memory contents. Returns True on success; failures are
        logged and emitted and leave the cache untouched.
        """
        if self._state == LifecycleState.DESTROYED:
            return False
        if self._syncing:
            self.logger.warning(f"Sync already in progress for {self.name}, skipping")
            return False

        self._syncing = True
        if self._state == LifecycleState.READY:
            self._state = LifecycleState.REFRESHING
        started = now_ms()

        with LogContext(model=self.name, operation="sync"):
            try:
                can_increment = incremental and self.last_sync_at is not None
                if can_increment and not self._has_timestamp_field():
                    self.logger.info(
                        f"Model {self.name} has no {self.options.timestamp_field} field, "
                        "falling back to full sync"
                    )
                    incremental = False

                if incremental and self.last_sync_at is not None:
                    await self._sync_incremental(self.last_sync_at)
                else:
                    await self._sync_full()

                self.last_sync_at = started
                self._last_sync_error = None
                self.emit(CacheEvent.SYNCED)
                return True
            except Exception as e:
                self._last_sync_error = e
                self.logger.error(f"Error syncing {self.name} cache: {e}")
                self.emit(CacheEvent.ERROR, e)
                return False
            finally:
                self._syncing = False
                if self._state == LifecycleState.REFRESHING:
                    self._state = LifecycleState.READY

    def _has_timestamp_field(self) -> bool:
        attributes = self.source.get_attributes()
        # Sources that cannot describe themselves are assumed to have it
        return attributes is None or self.options.timestamp_field in attributes

    async def _sync_full(self) -> None:
        rows = await self.source.find_all()
        if self._state == LifecycleState.DESTROYED:
            return
        records = [plain(row) for row in rows]

        self.store.reset()
        for record in records:
            self.store.set(record)
        if self.replica is not None:
            await self.replica.write_many(self.store.entries())
        self.logger.info(f"Full synced {len(records)} items for {self.name}")

    async def _sync_incremental(self, since_ms: float) -> None:
        since = datetime.fromtimestamp(since_ms / 1000, tz=timezone.utc)
        rows = await self.source.find_all({self.options.timestamp_field: Gt(since)})
        if self._state == LifecycleState.DESTROYED:
            return
        if not rows:
            self.logger.debug(f"No new updates for {self.name}")
            return

        written: list[tuple[str, CacheEntry]] = []
        for row in rows:
            record = plain(row)
            entry = self.store.set(record)
            record_id = self.store.primary_id(record)
            if entry is not None and record_id is not None:
                written.append((record_id, entry))
        if self.replica is not None:
            await self.replica.write_many(written)
        self.logger.info(f"Incremental synced {len(rows)} items for {self.name}")

    async def refresh(self, force_full: bool = False) -> bool:
        """Sync now; counts as an auto-refresh attempt for debouncing."""
        self._last_auto_sync = now_ms()
        return await self.sync(not force_full)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_by_id(self, record_id: Any) -> Record | None:
        """Record by primary key, loading it on a miss."""
        entry = self.store.get(record_id)
        if entry is None:
            entry = await self._restore(record_id)
        if entry is None:
            self.metrics.record_miss()
            return await self.loader.load_by_id(record_id)

        self.metrics.record_hit()
        key = index_value(record_id)
        if key in self.store:
            self.store.touch(key)
        return await self._serve(entry, lambda: self.loader.load_by_id(record_id))

    async def get_by_key(self, field: str, value: Any) -> Record | None:
        """Record by key field value, loading it on a miss."""
        entry = self.store.get_by_key(field, value)
        if entry is None and field == self.store.primary_key:
            entry = await self._restore(value)
        if entry is None:
            self.metrics.record_miss()
            return await self.loader.load_by_key(field, value)

        self.metrics.record_hit()
        record_id = self.store.primary_id(entry.data)
        if record_id is not None and record_id in self.store:
            self.store.touch(record_id)
        return await self._serve(entry, lambda: self.loader.load_by_key(field, value))

    async def _restore(self, record_id: Any) -> CacheEntry | None:
        """Bring an entry back from Redis after a memory miss."""
        if self.replica is None or not self.replica.available:
            return None
        entry = await self.replica.get(index_value(record_id))
        if entry is None:
            return None
        stored = self.store.put_entry(entry)
        if stored is not None:
            self.logger.debug(f"Restored {self.name} id={record_id} from Redis")
        return stored

    async def _serve(
        self,
        entry: CacheEntry,
        reload: Callable[[], Coroutine[Any, Any, Record | None]],
    ) -> Record | None:
        if not entry.is_expired():
            return entry.data
        if self.options.stale_while_revalidate:
            self._revalidate(reload())
            return entry.data
        return await reload()

    def _revalidate(self, load: Coroutine[Any, Any, Record | None]) -> None:
        task = asyncio.create_task(load)
        self._revalidations.add(task)
        task.add_done_callback(self._revalidations.discard)

    async def get_many_by_key(self, field: str, values: Iterable[Any]) -> dict[str, Record | None]:
        """Records for many key values; misses are fetched in a single query."""
        result: dict[str, Record | None] = {}
        missing: list[Any] = []
        for value in values:
            entry = self.store.get_by_key(field, value)
            if entry is not None and not entry.is_expired():
                self.metrics.record_hit()
                result[index_value(value)] = entry.data
            else:
                missing.append(value)

        if not missing:
            return result

        for _ in missing:
            self.metrics.record_miss()
        try:
            rows = await self.source.find_all({field: In(missing)})
        except Exception as e:
            self.logger.error(f"Bulk load of {len(missing)} {self.name} items failed: {e}")
            self.emit(CacheEvent.ERROR, e)
            rows = []
        for row in rows:
            self._write(plain(row))

        for value in missing:
            entry = self.store.get_by_key(field, value)
            result[index_value(value)] = entry.data if entry is not None else None
        return result

    def get_all(self) -> list[Record]:
        """All non-expired records."""
        return self.store.records()

    def has(self, field: str, value: Any) -> bool:
        return self.store.get_by_key(field, value) is not None

    def has_by_id(self, record_id: Any) -> bool:
        return record_id in self.store

    def is_expired(self, record_id: Any) -> bool:
        entry = self.store.get(record_id)
        return entry is not None and entry.is_expired()

    def size(self) -> int:
        return len(self.store)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def invalidate(self, field: str, value: Any) -> None:
        """Drop one key-field lookup and broadcast it to other instances.

        Only the ``field``/``value`` pointer is removed. The canonical entry
        and the record's other key fields stay cached.
        """
        self._apply_invalidation(field, value)
        if self.cluster is not None:
            await self.cluster.publish(field, value)

    def _apply_invalidation(self, field: str, value: Any) -> None:
        self.store.remove_by_key(field, value)
        self.emit(CacheEvent.ITEM_INVALIDATED, {"field": field, "value": value})

    def _on_remote_invalidation(self, message: InvalidationMessage) -> None:
        self._apply_invalidation(message.field, message.value)

    async def _resume_cluster_sync(self) -> None:
        """Resubscribe after Redis comes back if the first subscribe failed."""
        if self.cluster is None or self.cluster.running:
            return
        if not self._ready or self._state == LifecycleState.DESTROYED:
            return
        await self.cluster.start()

    async def clear(self, field: str | None = None) -> None:
        """Clear everything (including the Redis namespace), or one key field's index."""
        if field is None:
            self.store.clear()
            if self.replica is not None:
                await self.replica.purge()
            self.emit(CacheEvent.CLEARED)
            return
        self.store.clear(field)
        self.emit(CacheEvent.CLEARED_FIELD, field)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def attach_hooks(self) -> None:
        """Apply source changes to the cache as they happen."""
        if self._hook_refs is not None:
            return
        self._hook_refs = {
            HookType.AFTER_CREATE: self._on_created,
            HookType.AFTER_UPDATE: self._on_updated,
            HookType.AFTER_DESTROY: self._on_destroyed,
        }
        for hook_type, callback in self._hook_refs.items():
            self.source.add_hook(hook_type, callback)
        self.logger.info(f"Cache hooks attached to {self.name}")

    def detach_hooks(self) -> None:
        if self._hook_refs is None:
            return
        for hook_type, callback in self._hook_refs.items():
            try:
                self.source.remove_hook(hook_type, callback)
            except Exception as e:
                self.logger.warning(f"Failed to remove {hook_type.value} hook for {self.name}: {e}")
        self._hook_refs = None
        self.logger.info(f"Cache hooks detached from {self.name}")

    @property
    def hooks_attached(self) -> bool:
        return self._hook_refs is not None

    def _on_created(self, record: Record) -> None:
        record = plain(record)
        self._write(record)
        self.emit(CacheEvent.ITEM_CREATED, record)

    def _on_updated(self, record: Record) -> None:
        record = plain(record)
        self._write(record)
        self.emit(CacheEvent.ITEM_UPDATED, record)

    def _on_destroyed(self, record: Record) -> None:
        record = plain(record)
        self.store.remove_record(record)
        record_id = self.store.primary_id(record)
        if self.replica is not None and record_id is not None:
            self.replica.delete(record_id)
        self.emit(CacheEvent.ITEM_REMOVED, record)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def auto_load(self) -> None:
        """Load the cache and start keeping it fresh.

        Concurrent callers share one load. Raises ``CacheLoadError`` if the
        initial full sync fails; a later call retries.
        """
        if self._state == LifecycleState.DESTROYED:
            raise CacheError(f"{self.name} cache has been destroyed")
        if self._ready_task is None or (self._ready_task.done() and not self._ready):
            self._ready_task = asyncio.create_task(self._load())
        await asyncio.shield(self._ready_task)

    async def _load(self) -> None:
        self._state = LifecycleState.LOADING
        with LogContext(model=self.name, operation="auto_load"):
            if self.connection is not None:
                await self.connection.connect()

            if not await self.sync(incremental=False):
                self._state = LifecycleState.UNINITIALIZED
                error = self._last_sync_error
                raise CacheLoadError(f"Initial sync failed for {self.name}: {error}") from error

            self.attach_hooks()
            self.start_auto_refresh()
            self.start_cleanup()
            if self.cluster is not None:
                await self.cluster.start()

            self._ready = True
            self._state = LifecycleState.READY
            self.logger.info(f"{self.name} cache ready ({self.size()} entries)")
            self.emit(CacheEvent.READY)

    async def wait_until_ready(self) -> None:
        """Wait for ``auto_load``; returns immediately if it was never called."""
        if self._ready_task is None:
            return
        await asyncio.shield(self._ready_task)

    def is_ready(self) -> bool:
        return self._ready

    def start_auto_refresh(self) -> None:
        """Run an incremental sync every ``refresh_interval_ms``."""
        self.stop_auto_refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        self.logger.info(f"Auto-refresh started for {self.name}")

    def stop_auto_refresh(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
            self.logger.info(f"Auto-refresh stopped for {self.name}")

    async def _refresh_loop(self) -> None:
        interval = self.options.refresh_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.auto_refresh_tick()
            except Exception as e:
                self.logger.error(f"Auto-refresh failed for {self.name}: {e}")
                self.emit(CacheEvent.ERROR, e)

    async def auto_refresh_tick(self) -> bool:
        """One auto-refresh attempt; skipped when too close to the previous one."""
        if now_ms() - self._last_auto_sync < self.options.min_auto_sync_interval_ms:
            return False
        self._last_auto_sync = now_ms()
        if not await self.sync(incremental=True):
            return False
        self.logger.info(f"Auto-refreshed {self.name}")
        self.emit(CacheEvent.REFRESHED)
        return True

    def start_cleanup(self) -> None:
        """Periodically drop expired entries; no-op without a TTL."""
        if not self.options.ttl_ms:
            return
        self.stop_cleanup()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self.logger.info(
            f"TTL cleanup active for {self.name} (TTL: {self.options.ttl_ms} ms, "
            f"cleanup interval: {self.options.cleanup_interval_ms} ms)"
        )

    def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        interval = self.options.cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup_expired()
            except Exception as e:
                self.logger.error(f"Error during {self.name} cache cleanup: {e}")

    def cleanup_expired(self) -> int:
        """Remove expired entries now. Skipped while a sync is running."""
        if not self.options.ttl_ms or self._syncing:
            return 0
        removed = self.store.remove_expired()
        if removed:
            self.logger.debug(f"Removed {removed} expired {self.name} entries")
        return removed

    async def destroy(self) -> None:
        """Stop all background work and release resources. Safe to call twice."""
        if self._state == LifecycleState.DESTROYED:
            return
        self._state = LifecycleState.DESTROYED
        self._ready = False

        background = [
            task
            for task in (self._ready_task, self._refresh_task, self._cleanup_task)
            if task is not None and not task.done()
        ]
        background.extend(self._revalidations)
        self.stop_auto_refresh()
        self.stop_cleanup()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        if self.cluster is not None:
            await self.cluster.stop()
        self.detach_hooks()
        self._remove_signal_handlers()
        self.store.clear()

        if self.replica is not None:
            await self.replica.drain()
        if self.connection is not None:
            await self.connection.close()

        self.logger.info(f"{self.name} cache destroyed")
        self.remove_all_listeners()

    def handle_process_signals(self) -> None:
        """Destroy the cache on SIGINT/SIGTERM. Must be called from the event loop."""
        loop = asyncio.get_running_loop()

        def _on_signal(signame: str) -> None:
            self.logger.info(f"Received {signame}, cleaning up {self.name} cache...")
            self._signal_task = loop.create_task(self.destroy())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig.name)
        self._signal_loop = loop

    def _remove_signal_handlers(self) -> None:
        if self._signal_loop is None:
            return
        if not self._signal_loop.is_closed():
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._signal_loop.remove_signal_handler(sig)
        self._signal_loop = None

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def to_json(self, include_meta: bool = False) -> list[dict[str, Any]]:
        """Detached snapshot of the cache.

        Without metadata only non-expired records are returned; with it every
        entry is returned as ``{"data", "expiresAt"}``.
        """
        if include_meta:
            return [entry.to_json() for _, entry in self.store.entries()]
        return [deepcopy(record) for record in self.store.records()]

    def load_from_json(self, data: Iterable[dict[str, Any]], has_meta: bool = False) -> int:
        """Load a snapshot produced by ``to_json``. Returns the number of entries loaded."""
        loaded = 0
        skipped = 0
        now = now_ms()
        for item in data:
            if has_meta:
                entry = CacheEntry.from_json(item)
                if entry.is_expired(now):
                    skipped += 1
                    continue
                entry.data = plain(entry.data)
                stored = self._put(entry)
            else:
                stored = self._write(plain(item))
            if stored is not None:
                loaded += 1

        if skipped:
            self.logger.info(f"Skipped {skipped} expired {self.name} entries while loading")
        return loaded

    async def preload(self, fetch: Callable[[], Awaitable[Iterable[Record]]]) -> int:
        """Load records from an external source such as a file or snapshot."""
        items = list(await fetch())
        loaded = self.load_from_json(items)
        self.logger.info(f"Preloaded {loaded} {self.name} items into cache")
        return loaded

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "total": len(self.store),
            "max_size": self.options.max_size,
            "by_key": self.store.bucket_sizes(),
            "metrics": self.metrics.to_dict(),
            "last_sync_at": self.last_sync_at,
            "ttl_ms": self.options.ttl_ms,
            "syncing": self._syncing,
            "refresh_interval_ms": self.options.refresh_interval_ms,
            "lazy_reload": self.options.lazy_reload,
            "stale_while_revalidate": self.options.stale_while_revalidate,
            "redis_enabled": self.replica is not None,
            "redis_connected": self.connection is not None and self.connection.is_connected,
            "cluster_sync_enabled": self.cluster is not None,
            "state": self._state.value,
        }

    def dump(self, limit: int = 10) -> list[dict[str, Any]]:
        """First ``limit`` entries with the key fields indexing them."""
        return self.store.dump(limit)
