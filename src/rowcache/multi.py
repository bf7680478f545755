"""Caches for several models behind one object.

``MultiModelCacheManager`` creates one ``CacheManager`` per model and:
- Shares a single Redis client across all of them (one connection pool,
  one key namespace per model)
- Forwards every cache event with the model name attached
- Loads all caches in parallel and tears them down together

Each cache still opens its own pub/sub connection when cluster sync is on.

Example:
    caches = MultiModelCacheManager(
        {"User": users, "Product": products},
        CacheOptions(ttl_ms=300_000, redis=RedisOptions(url="redis://localhost:6379")),
    )
    await caches.init()
    user = await caches.get_by_id("User", 123)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from rowcache.cache.redis import RedisConnectionManager
from rowcache.config import CacheOptions
from rowcache.core.entry import Record
from rowcache.errors import (
    AlreadyInitializedError,
    CacheLoadError,
    NotInitializedError,
    ReadyTimeoutError,
    UnknownModelError,
)
from rowcache.events import CacheEvent, EventEmitter
from rowcache.manager import CacheManager
from rowcache.source.base import ModelSource

module_logger = logging.getLogger(__name__)

# Model name used for events raised by the shared Redis client
SHARED = "shared"

# Events whose single argument is a record
_ITEM_EVENTS = (
    CacheEvent.ITEM_CREATED,
    CacheEvent.ITEM_UPDATED,
    CacheEvent.ITEM_REMOVED,
    CacheEvent.REFRESHED_ITEM,
)
# Events whose single argument is a dict merged into the payload
_DICT_EVENTS = (
    CacheEvent.ITEM_INVALIDATED,
    CacheEvent.EVICTED,
    CacheEvent.REDIS_RECONNECTING,
)
# Events without arguments
_BARE_EVENTS = (
    CacheEvent.READY,
    CacheEvent.SYNCED,
    CacheEvent.REFRESHED,
    CacheEvent.CLEARED,
    CacheEvent.REDIS_RECONNECTED,
    CacheEvent.REDIS_DISCONNECTED,
)


class MultiModelCacheManager(EventEmitter):
    """Orchestrates one ``CacheManager`` per model.

    Args:
        sources: Model name to backing source
        options: Base options applied to every cache. ``redis.key_prefix``
            becomes a base prefix: model ``User`` is stored under
            ``<key_prefix>User:`` (``cache:User:`` when unset).
    """

    def __init__(
        self,
        sources: Mapping[str, ModelSource],
        options: CacheOptions | None = None,
    ):
        super().__init__()
        self.sources = dict(sources)
        self.options = options or CacheOptions()
        self.logger = self.options.logger or module_logger
        self._managers: dict[str, CacheManager] = {}
        self._initialized = False
        self.shared_connection: RedisConnectionManager | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Create and load every cache.

        Raises:
            AlreadyInitializedError: ``init()`` was already called
            CacheLoadError: A cache failed its initial load
        """
        if self._initialized:
            raise AlreadyInitializedError("MultiModelCacheManager is already initialized")

        redis_options = self.options.redis
        shared_client = None
        if redis_options is not None:
            self.shared_connection = RedisConnectionManager(
                redis_options, _SharedEvents(self), name=SHARED, logger=self.logger
            )
            await self.shared_connection.connect()
            shared_client = self.shared_connection.client

        for name, source in self.sources.items():
            model_options = self.options
            if redis_options is not None:
                base = redis_options.key_prefix
                model_redis = redis_options.model_copy(
                    update={
                        "client": shared_client,
                        "key_prefix": f"{base}{name}:" if base else f"cache:{name}:",
                    }
                )
                model_options = self.options.model_copy(update={"redis": model_redis})

            manager = CacheManager(source, model_options)
            self._forward_events(manager, name)
            self._managers[name] = manager

        results = await asyncio.gather(
            *(manager.auto_load() for manager in self._managers.values()),
            return_exceptions=True,
        )
        for name, result in zip(self._managers, results):
            if isinstance(result, BaseException):
                await self._release()
                raise CacheLoadError(
                    f"Failed to initialize cache for model {name}: {result}"
                ) from result

        self._initialized = True
        self.logger.info(f"Initialized caches for {len(self._managers)} models")
        self.emit(CacheEvent.INITIALIZED, {"models": list(self._managers)})

    def _forward_events(self, manager: CacheManager, name: str) -> None:
        for event in _BARE_EVENTS:
            manager.on(event, self._relay(event, lambda: {"model": name}))
        for event in _ITEM_EVENTS:
            manager.on(event, self._relay(event, lambda item: {"model": name, "item": item}))
        for event in _DICT_EVENTS:
            manager.on(event, self._relay(event, lambda data: {"model": name, **data}))
        manager.on(
            CacheEvent.CLEARED_FIELD,
            self._relay(CacheEvent.CLEARED_FIELD, lambda field: {"model": name, "field": field}),
        )
        manager.on(
            CacheEvent.ERROR,
            self._relay(CacheEvent.ERROR, lambda error: {"model": name, "error": error}),
        )

    def _relay(
        self, event: CacheEvent, payload: Callable[..., dict[str, Any]]
    ) -> Callable[..., None]:
        def relay(*args: Any) -> None:
            self.emit(event, payload(*args))

        return relay

    async def wait_until_ready(self, timeout_ms: int = 30_000) -> None:
        """Wait for every cache to be ready.

        Raises ``ReadyTimeoutError`` after ``timeout_ms``; the loads themselves
        keep running.
        """
        self._assert_initialized()
        ready = asyncio.gather(
            *(manager.wait_until_ready() for manager in self._managers.values())
        )
        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise ReadyTimeoutError(
                f"wait_until_ready timeout exceeded ({timeout_ms}ms)"
            ) from e

    async def destroy(self) -> None:
        """Destroy every cache, then the shared Redis client."""
        await self._release()
        self._initialized = False
        self.emit(CacheEvent.DESTROYED)
        self.remove_all_listeners()

    async def _release(self) -> None:
        managers = list(self._managers.items())
        results = await asyncio.gather(
            *(manager.destroy() for _, manager in managers),
            return_exceptions=True,
        )
        failed = 0
        for (name, _), result in zip(managers, results):
            if isinstance(result, BaseException):
                failed += 1
                self.logger.error(f"Failed to destroy cache manager for {name}: {result}")
        if failed:
            self.logger.warning(
                f"Destroyed {len(managers) - failed}/{len(managers)} cache managers "
                f"({failed} failed)"
            )
        else:
            self.logger.debug(f"Destroyed all {len(managers)} cache managers")
        self._managers.clear()

        if self.shared_connection is not None:
            await self.shared_connection.close()
            self.shared_connection = None

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _assert_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError(
                "MultiModelCacheManager is not initialized. Call init() first."
            )

    def get_manager(self, model: str) -> CacheManager:
        self._assert_initialized()
        manager = self._managers.get(model)
        if manager is None:
            raise UnknownModelError(model)
        return manager

    def get_managers(self) -> dict[str, CacheManager]:
        self._assert_initialized()
        return dict(self._managers)

    def get_model_names(self) -> list[str]:
        return list(self._managers)

    def has_model(self, model: str) -> bool:
        return model in self._managers

    def is_initialized(self) -> bool:
        return self._initialized

    # -------------------------------------------------------------------------
    # Delegation
    # -------------------------------------------------------------------------

    async def get_by_id(self, model: str, record_id: Any) -> Record | None:
        self.logger.debug(f"MultiCache.get_by_id: model={model}, id={record_id}")
        return await self.get_manager(model).get_by_id(record_id)

    async def get_by_key(self, model: str, field: str, value: Any) -> Record | None:
        self.logger.debug(f"MultiCache.get_by_key: model={model}, field={field}, value={value}")
        return await self.get_manager(model).get_by_key(field, value)

    async def get_many_by_key(
        self, model: str, field: str, values: Iterable[Any]
    ) -> dict[str, Record | None]:
        return await self.get_manager(model).get_many_by_key(field, values)

    def get_all(self, model: str) -> list[Record]:
        return self.get_manager(model).get_all()

    async def invalidate(self, model: str, field: str, value: Any) -> None:
        self.logger.debug(f"MultiCache.invalidate: model={model}, field={field}, value={value}")
        await self.get_manager(model).invalidate(field, value)

    async def preload(
        self, model: str, fetch: Callable[[], Awaitable[Iterable[Record]]]
    ) -> int:
        return await self.get_manager(model).preload(fetch)

    def to_json(self, model: str, include_meta: bool = False) -> list[dict[str, Any]]:
        return self.get_manager(model).to_json(include_meta)

    def load_from_json(
        self, model: str, data: Iterable[dict[str, Any]], has_meta: bool = False
    ) -> int:
        return self.get_manager(model).load_from_json(data, has_meta)

    async def clear(self, model: str | None = None) -> None:
        if model is not None:
            await self.get_manager(model).clear()
            return
        self._assert_initialized()
        await asyncio.gather(*(manager.clear() for manager in self._managers.values()))

    async def refresh(self, model: str | None = None, force_full: bool = False) -> None:
        if model is not None:
            await self.get_manager(model).refresh(force_full)
            return
        self._assert_initialized()
        await asyncio.gather(
            *(manager.refresh(force_full) for manager in self._managers.values())
        )

    def get_stats(self, model: str | None = None) -> dict[str, Any]:
        """Stats of one cache, or of every cache keyed by model name."""
        if model is not None:
            return self.get_manager(model).get_stats()
        self._assert_initialized()
        return {name: manager.get_stats() for name, manager in self._managers.items()}

    def size(self, model: str | None = None) -> int | dict[str, int]:
        if model is not None:
            return self.get_manager(model).size()
        self._assert_initialized()
        return {name: manager.size() for name, manager in self._managers.items()}


class _SharedEvents(EventEmitter):
    """Re-emits shared-client events on the orchestrator as ``{"model": "shared"}``."""

    def __init__(self, target: EventEmitter):
        super().__init__()
        self._target = target

    def emit(self, event: CacheEvent | str, *args: Any) -> bool:
        payload: dict[str, Any] = {"model": SHARED}
        if args and isinstance(args[0], dict):
            payload.update(args[0])
        elif args:
            payload["error"] = args[0]
        return self._target.emit(event, payload)
