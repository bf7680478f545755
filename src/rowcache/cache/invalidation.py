"""Cross-instance cache invalidation over Redis Pub/Sub.

Every cache with cluster sync enabled subscribes to its namespace channel on a
dedicated pub/sub connection. Local invalidations are published with the
publishing instance's id; each instance drops messages carrying its own id,
so an invalidation is applied exactly once per process and never echoed back.

Propagation is eventually consistent: expect tens to hundreds of milliseconds
before a remote instance observes an invalidation.

Example:
    cluster = ClusterSync(connection, CacheKeys.for_model("User"), apply_invalidation, emitter)
    await cluster.start()
    await cluster.publish("email", "a@example.com")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import secrets
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import orjson

from rowcache.cache.keys import CacheKeys
from rowcache.cache.redis import RedisConnectionManager
from rowcache.events import CacheEvent, EventEmitter
from rowcache.observability.logging import LogContext

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

module_logger = logging.getLogger(__name__)


def generate_instance_id() -> str:
    """Id unique across hosts, processes and restarts."""
    return f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class InvalidationMessage:
    """Key-scoped invalidation broadcast."""

    field: str
    value: Any
    source_instance_id: str

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes."""
        return orjson.dumps(
            {
                "field": self.field,
                "value": self.value,
                "sourceInstanceId": self.source_instance_id,
            },
            default=str,
        )

    @classmethod
    def from_bytes(cls, data: bytes | str) -> "InvalidationMessage":
        """Deserialize from JSON bytes."""
        parsed = orjson.loads(data)
        return cls(
            field=parsed["field"],
            value=parsed["value"],
            source_instance_id=parsed["sourceInstanceId"],
        )


# Applies a foreign invalidation to the local cache
InvalidationHandler = Callable[[InvalidationMessage], Any]


class ClusterSync:
    """Publishes local invalidations and applies foreign ones.

    The subscriber runs on its own pub/sub connection because a subscribed
    connection cannot issue regular commands.
    """

    def __init__(
        self,
        connection: RedisConnectionManager,
        keys: CacheKeys,
        handler: InvalidationHandler,
        emitter: EventEmitter,
        *,
        instance_id: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self.connection = connection
        self.channel = keys.channel()
        self.instance_id = instance_id or generate_instance_id()
        self._handler = handler
        self._emitter = emitter
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pubsub: PubSub | None = None
        self.received = 0
        self.ignored = 0
        self.logger = logger or module_logger

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Subscribe to the channel. Returns False if Redis is unavailable."""
        if self._running:
            return True

        client = self.connection.client
        if client is None or not self.connection.is_connected:
            self.logger.warning(f"Cluster sync not started on {self.channel}: Redis unavailable")
            return False

        try:
            self._pubsub = client.pubsub()
            await self._pubsub.subscribe(self.channel)
        except Exception as e:
            self.logger.error(f"Failed to subscribe to {self.channel}: {e}")
            self._emitter.emit(CacheEvent.ERROR, e)
            await self._close_pubsub()
            return False

        self._running = True
        self._task = asyncio.create_task(self._listen_loop())
        self.logger.info(f"Cluster sync started on {self.channel} as {self.instance_id}")
        return True

    async def stop(self) -> None:
        """Stop listening and release the pub/sub connection."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except Exception as e:
                self.logger.warning(f"Failed to unsubscribe from {self.channel}: {e}")
            await self._close_pubsub()
            self.logger.info(f"Cluster sync stopped on {self.channel}")

    async def _close_pubsub(self) -> None:
        if self._pubsub is None:
            return
        try:
            await self._pubsub.aclose()
        except Exception as e:
            self.logger.warning(f"Failed to close pub/sub connection for {self.channel}: {e}")
        self._pubsub = None

    async def _listen_loop(self) -> None:
        """Main loop for receiving invalidation messages."""
        with LogContext(instance_id=self.instance_id, operation="cluster_sync"):
            while self._running and self._pubsub:
                try:
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0,
                    )

                    if message is None:
                        continue

                    if message["type"] == "message":
                        await self._handle_message(message["data"])

                except asyncio.CancelledError:
                    break
                except Exception as e:
                    self.logger.error(f"Error in invalidation listener on {self.channel}: {e}")
                    self._emitter.emit(CacheEvent.ERROR, e)
                    await asyncio.sleep(1)

    async def _handle_message(self, data: bytes | str) -> None:
        """Apply a foreign invalidation; drop our own."""
        try:
            msg = InvalidationMessage.from_bytes(data)
        except Exception as e:
            self.logger.error(f"Failed to parse invalidation message on {self.channel}: {e}")
            return

        if msg.source_instance_id == self.instance_id:
            self.ignored += 1
            return

        self.received += 1
        self.logger.debug(
            f"Received invalidation {msg.field}={msg.value} from {msg.source_instance_id}"
        )
        try:
            result = self._handler(msg)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"Invalidation handler failed on {self.channel}: {e}")
            self._emitter.emit(CacheEvent.ERROR, e)

    async def publish(self, field: str, value: Any) -> int:
        """Broadcast an invalidation. Returns the number of subscribers reached."""
        client = self.connection.client
        if client is None or not self.connection.is_connected:
            return 0
        message = InvalidationMessage(field=field, value=value, source_instance_id=self.instance_id)
        try:
            count = cast(int, await client.publish(self.channel, message.to_bytes()))
        except Exception as e:
            self.logger.error(f"Failed to publish invalidation on {self.channel}: {e}")
            self._emitter.emit(CacheEvent.ERROR, e)
            self.connection.mark_disconnected(e)
            return 0
        self.logger.debug(f"Published invalidation {field}={value} to {count} subscribers")
        return count
