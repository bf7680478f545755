"""Global pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from typing import Any

import pytest
from fakes import FakeRedis, FakeRedisServer

from rowcache.config import CacheOptions
from rowcache.manager import CacheManager
from rowcache.source.memory import InMemoryModelSource

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)

USERS = [
    {"id": 1, "email": "a@x.com", "name": "Ada", "updated_at": JAN_1},
    {"id": 2, "email": "b@x.com", "name": "Bob", "updated_at": JAN_1},
]


@pytest.fixture
def users() -> InMemoryModelSource:
    """User model with two rows."""
    return InMemoryModelSource("User", USERS, attributes={"id", "email", "name", "updated_at"})


@pytest.fixture
def redis_server() -> FakeRedisServer:
    """Keyspace shared by every fake client in a test."""
    return FakeRedisServer()


@pytest.fixture
def redis_client(redis_server: FakeRedisServer) -> FakeRedis:
    return redis_server.client()


@pytest.fixture
async def make_cache() -> AsyncIterator[Callable[..., CacheManager]]:
    """Factory for caches that are destroyed when the test ends."""
    created: list[CacheManager] = []

    def factory(source: InMemoryModelSource, **options: Any) -> CacheManager:
        options.setdefault("key_fields", ["email"])
        cache = CacheManager(source, CacheOptions(**options))
        created.append(cache)
        return cache

    yield factory

    for cache in created:
        await cache.destroy()
