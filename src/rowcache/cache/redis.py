"""Redis replication for cache entries.

Provides:
- ``create_redis_client``: build a redis-py asyncio client from ``RedisOptions``
- ``RedisConnectionManager``: connection state with exponential backoff reconnection
- ``RedisReplica``: mirrors canonical cache writes/deletes into a namespaced
  keyspace and restores entries from it on a memory miss

Replication is best effort. Every failure is logged and emitted as an
``error`` event; nothing is raised to cache callers, and while Redis is down
the cache keeps working from memory only.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any, cast

import orjson
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rowcache.cache.keys import CacheKeys
from rowcache.config import RedisOptions
from rowcache.core.entry import CacheEntry
from rowcache.events import CacheEvent, EventEmitter

if TYPE_CHECKING:
    from redis.asyncio import Redis

module_logger = logging.getLogger(__name__)

# Keys deleted per DEL while purging a namespace
PURGE_BATCH_SIZE = 100
SCAN_COUNT = 100

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)


def create_redis_client(options: RedisOptions) -> Redis:
    """Create a Redis client. ``url`` takes precedence over host/port."""
    if options.url:
        return redis.from_url(  # type: ignore[no-untyped-call]
            options.url,
            password=options.password,
            db=options.db,
            decode_responses=False,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    return redis.Redis(
        host=options.host or "localhost",
        port=options.port,
        password=options.password,
        db=options.db,
        decode_responses=False,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


class RedisConnectionState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class RedisConnectionManager:
    """Owns (or borrows) a Redis client and reconnects it with backoff.

    Features:
    - Exponential backoff: ``min(min_delay * factor ** (attempt - 1), max_delay)``
    - ``redis_reconnecting``/``redis_reconnected``/``redis_disconnected`` events
    - Gives up after ``retries`` attempts and stays in the ``failed`` state
    - Never closes a client it did not create
    """

    def __init__(
        self,
        options: RedisOptions,
        emitter: EventEmitter,
        *,
        client: Redis | None = None,
        name: str = "shared",
        logger: logging.Logger | None = None,
    ):
        self.options = options
        self.strategy = options.reconnect_strategy
        self.name = name
        self._emitter = emitter
        self._client: Redis | None = client or options.client
        self.owns_client = self._client is None
        self._state = RedisConnectionState.DISCONNECTED
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempts = 0
        self._closed = False
        self.logger = logger or module_logger

    @property
    def state(self) -> RedisConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == RedisConnectionState.CONNECTED and self._client is not None

    @property
    def client(self) -> Redis | None:
        return self._client

    async def connect(self) -> bool:
        """Connect (or verify the borrowed client) once.

        On failure the reconnect loop is started in the background and the
        cache runs from memory until it succeeds.
        """
        if self.is_connected:
            return True
        if self._client is None:
            self._client = create_redis_client(self.options)

        self._state = RedisConnectionState.CONNECTING
        if await self._ping():
            self._state = RedisConnectionState.CONNECTED
            self._reset_backoff()
            self.logger.info(f"Redis client ready ({self.name})")
            return True

        self._state = RedisConnectionState.DISCONNECTED
        self._start_reconnect()
        return False

    async def _ping(self) -> bool:
        if self._client is None:
            return False
        try:
            await cast(Awaitable[bool], self._client.ping())
            return True
        except Exception as e:
            self.logger.warning(f"Redis ping failed ({self.name}): {e}")
            return False

    def mark_disconnected(self, error: BaseException) -> None:
        """Record a connection-level failure seen by a caller."""
        if self._closed or self._state != RedisConnectionState.CONNECTED:
            return
        self.logger.warning(f"Redis connection lost ({self.name}): {error}")
        self._state = RedisConnectionState.DISCONNECTED
        self._emitter.emit(CacheEvent.REDIS_DISCONNECTED)
        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._closed or self._state == RedisConnectionState.FAILED:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Background reconnection with exponential backoff."""
        self._state = RedisConnectionState.RECONNECTING
        retries = self.strategy.retries

        while not self._closed:
            self._attempts += 1
            if self._attempts > retries:
                self._state = RedisConnectionState.FAILED
                self.logger.error(f"Redis reconnect failed after {retries} attempts ({self.name})")
                return

            delay = self.strategy.delay_ms(self._attempts)
            self.logger.info(
                f"Redis reconnecting (attempt {self._attempts}/{retries}) in {delay:.0f}ms..."
            )
            self._emitter.emit(
                CacheEvent.REDIS_RECONNECTING, {"attempt": self._attempts, "delay": delay}
            )
            try:
                await asyncio.sleep(delay / 1000)
            except asyncio.CancelledError:
                return

            if await self._ping():
                self._state = RedisConnectionState.CONNECTED
                self._reset_backoff()
                self.logger.info(f"Redis reconnected ({self.name})")
                self._emitter.emit(CacheEvent.REDIS_RECONNECTED)
                return

    def _reset_backoff(self) -> None:
        self._attempts = 0

    async def close(self) -> None:
        """Stop reconnecting and close the client if this manager created it."""
        self._closed = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        was_connected = self._state == RedisConnectionState.CONNECTED
        if self.owns_client and self._client is not None:
            try:
                await self._client.aclose()
                self.logger.info(f"Redis client disconnected ({self.name})")
            except Exception as e:
                self.logger.error(f"Failed to disconnect Redis client ({self.name}): {e}")
            self._client = None

        self._state = RedisConnectionState.DISCONNECTED
        if was_connected and self.owns_client:
            self._emitter.emit(CacheEvent.REDIS_DISCONNECTED)

    async def health_check(self) -> dict[str, Any]:
        """Return connection health status."""
        return {
            "connected": self.is_connected,
            "state": self._state.value,
            "reconnect_attempts": self._attempts,
            "owns_client": self.owns_client,
        }


class RedisReplica:
    """Mirror of one cache's canonical entries in Redis.

    Writes and deletes are fire-and-forget; ``drain()`` waits for the ones in
    flight. Values are orjson-encoded ``{"data", "expiresAt"}`` payloads with
    a matching Redis expiry when the entry has a TTL.

    Records come back from Redis as JSON types: ``datetime`` and ``date``
    fields are ISO-8601 strings, ``Decimal`` and ``UUID`` fields are strings.
    Records loaded from the source keep their Python types.
    """

    def __init__(
        self,
        connection: RedisConnectionManager,
        keys: CacheKeys,
        emitter: EventEmitter,
        *,
        model_name: str = "",
        logger: logging.Logger | None = None,
    ):
        self.connection = connection
        self.keys = keys
        self.model_name = model_name
        self._emitter = emitter
        self._pending: set[asyncio.Task[Any]] = set()
        self.logger = logger or module_logger

    @property
    def available(self) -> bool:
        return self.connection.is_connected

    @staticmethod
    def encode(entry: CacheEntry) -> bytes:
        return orjson.dumps(entry.to_json(), default=str)

    @staticmethod
    def decode(raw: bytes | str) -> CacheEntry:
        return CacheEntry.from_json(orjson.loads(raw))

    def _fail(self, operation: str, error: Exception) -> None:
        self.logger.error(f"Redis {operation} failed for {self.model_name}: {error}")
        self._emitter.emit(CacheEvent.ERROR, error)
        if isinstance(error, _CONNECTION_ERRORS):
            self.connection.mark_disconnected(error)

    def _dispatch(self, operation: str, awaitable: Awaitable[Any]) -> None:
        async def guarded() -> None:
            try:
                await awaitable
            except Exception as e:
                self._fail(operation, e)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous caller): memory-only for this write
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(guarded())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight fire-and-forget operations."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def write(self, record_id: str, entry: CacheEntry) -> None:
        """Mirror one entry (fire-and-forget)."""
        client = self.connection.client
        if not self.available or client is None:
            return
        px = _expiry_px(entry)
        if px is not None and px <= 0:
            return
        try:
            payload = self.encode(entry)
        except TypeError as e:
            self._fail("encode", e)
            return
        self._dispatch("set", client.set(self.keys.record(record_id), payload, px=px))

    def delete(self, record_id: str) -> None:
        """Remove one mirrored entry (fire-and-forget)."""
        client = self.connection.client
        if not self.available or client is None:
            return
        self._dispatch("delete", client.delete(self.keys.record(record_id)))

    async def write_many(self, items: Iterable[tuple[str, CacheEntry]]) -> int:
        """Mirror many entries in one pipelined transaction.

        Returns the number of entries written (0 on failure).
        """
        client = self.connection.client
        if not self.available or client is None:
            return 0
        written = 0
        try:
            async with client.pipeline(transaction=True) as pipe:
                for record_id, entry in items:
                    px = _expiry_px(entry)
                    if px is not None and px <= 0:
                        continue
                    pipe.set(self.keys.record(record_id), self.encode(entry), px=px)
                    written += 1
                if written:
                    await pipe.execute()
        except Exception as e:
            self._fail("pipeline", e)
            return 0
        return written

    async def purge(self) -> int:
        """Delete every key in the namespace using SCAN (never KEYS).

        Returns the number of keys deleted.
        """
        client = self.connection.client
        if not self.available or client is None:
            return 0
        deleted = 0
        batch: list[Any] = []
        try:
            async for key in client.scan_iter(match=self.keys.pattern(), count=SCAN_COUNT):
                batch.append(key)
                if len(batch) >= PURGE_BATCH_SIZE:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
        except Exception as e:
            self._fail("purge", e)
        return deleted

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, record_id: Any) -> CacheEntry | None:
        """Fetch a mirrored entry; expired or unreadable payloads count as misses."""
        client = self.connection.client
        if not self.available or client is None:
            return None
        try:
            raw = await client.get(self.keys.record(record_id))
        except Exception as e:
            self._fail("get", e)
            return None
        if raw is None:
            return None
        try:
            entry = self.decode(raw)
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self.logger.warning(
                f"Discarding unreadable Redis entry {record_id} for {self.model_name}: {e}"
            )
            return None
        if entry.is_expired():
            return None
        return entry


def _expiry_px(entry: CacheEntry) -> int | None:
    if math.isinf(entry.expires_at):
        return None
    return int(entry.remaining_ms())
