"""Tests for the multi-model cache orchestrator."""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import patch

import pytest
from fakes import FakeRedis, redis_options

from rowcache.config import CacheOptions
from rowcache.errors import (
    AlreadyInitializedError,
    CacheLoadError,
    NotInitializedError,
    ReadyTimeoutError,
    UnknownModelError,
)
from rowcache.events import CacheEvent
from rowcache.manager import CacheManager, LifecycleState
from rowcache.multi import MultiModelCacheManager
from rowcache.source.memory import InMemoryModelSource

MakeMulti = Callable[..., MultiModelCacheManager]


@pytest.fixture
def products() -> InMemoryModelSource:
    return InMemoryModelSource(
        "Product",
        [{"id": 10, "sku": "P-10"}, {"id": 11, "sku": "P-11"}],
        timestamp_field=None,
    )


@pytest.fixture
async def make_multi(
    users: InMemoryModelSource, products: InMemoryModelSource
) -> AsyncIterator[MakeMulti]:
    """Factory for User + Product orchestrators, destroyed after the test."""
    created: list[MultiModelCacheManager] = []

    def factory(**options: Any) -> MultiModelCacheManager:
        options.setdefault("key_fields", ["email", "sku"])
        caches = MultiModelCacheManager(
            {"User": users, "Product": products}, CacheOptions(**options)
        )
        created.append(caches)
        return caches

    yield factory

    for caches in created:
        await caches.destroy()


class TestInit:
    """Test initialization and teardown."""

    async def test_init_loads_every_model(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        initialized: list[dict] = []
        caches.on(CacheEvent.INITIALIZED, initialized.append)

        await caches.init()

        assert caches.is_initialized()
        assert caches.get_model_names() == ["User", "Product"]
        assert caches.has_model("Product")
        assert not caches.has_model("Order")
        assert caches.size() == {"User": 2, "Product": 2}
        assert initialized == [{"models": ["User", "Product"]}]
        assert all(m.is_ready() for m in caches.get_managers().values())

    async def test_double_init_rejected(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        with pytest.raises(AlreadyInitializedError):
            await caches.init()

    async def test_failed_model_releases_all(
        self, make_multi: MakeMulti, products: InMemoryModelSource
    ) -> None:
        """One failed load tears down the caches that did load."""
        caches = make_multi()
        products.fail_next()
        managers: list[CacheManager] = []

        with patch("rowcache.multi.CacheManager", side_effect=_recording(managers)):
            with pytest.raises(CacheLoadError, match="for model Product"):
                await caches.init()

        assert not caches.is_initialized()
        assert caches.get_model_names() == []
        assert [m.state for m in managers] == [LifecycleState.DESTROYED] * 2

    async def test_destroy_isolates_failures(
        self, make_multi: MakeMulti, caplog: pytest.LogCaptureFixture
    ) -> None:
        caches = make_multi()
        destroyed: list[Any] = []
        caches.on(CacheEvent.DESTROYED, lambda *args: destroyed.append(args))
        await caches.init()
        user_cache = caches.get_manager("User")
        product_cache = caches.get_manager("Product")

        with patch.object(user_cache, "destroy", side_effect=RuntimeError("boom")):
            with caplog.at_level(logging.WARNING):
                await caches.destroy()

        assert "Failed to destroy cache manager for User: boom" in caplog.text
        assert "Destroyed 1/2 cache managers (1 failed)" in caplog.text
        assert product_cache.state == LifecycleState.DESTROYED
        assert destroyed == [()]
        assert not caches.is_initialized()
        await user_cache.destroy()

    async def test_wait_until_ready_times_out(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        async def hang() -> None:
            await asyncio.sleep(0.1)

        with patch.object(caches.get_manager("User"), "wait_until_ready", side_effect=hang):
            with pytest.raises(ReadyTimeoutError, match="20ms"):
                await caches.wait_until_ready(timeout_ms=20)
        await asyncio.sleep(0.1)

    async def test_wait_until_ready(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()
        await caches.wait_until_ready(timeout_ms=100)


class TestLookup:
    """Test model lookup guards."""

    async def test_requires_init(self, make_multi: MakeMulti) -> None:
        caches = make_multi()

        with pytest.raises(NotInitializedError, match="Call init\\(\\) first"):
            await caches.get_by_id("User", 1)
        with pytest.raises(NotInitializedError):
            caches.size()
        with pytest.raises(NotInitializedError):
            await caches.wait_until_ready()

    async def test_unknown_model(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        with pytest.raises(UnknownModelError, match="No cache manager found for model: Order"):
            caches.get_manager("Order")
        with pytest.raises(KeyError):
            await caches.get_by_key("Order", "id", 1)


class TestDelegation:
    """Test per-model operations."""

    async def test_reads(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        assert (await caches.get_by_id("User", 1))["email"] == "a@x.com"
        assert (await caches.get_by_key("Product", "sku", "P-11"))["id"] == 11
        many = await caches.get_many_by_key("User", "email", ["a@x.com", "q@x.com"])
        assert many["a@x.com"]["id"] == 1
        assert many["q@x.com"] is None
        assert len(caches.get_all("Product")) == 2

    async def test_invalidate_is_model_scoped(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        await caches.invalidate("User", "email", "a@x.com")

        assert not caches.get_manager("User").has("email", "a@x.com")
        assert caches.get_manager("Product").has("sku", "P-10")

    async def test_clear_one_or_all(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        await caches.clear("User")
        assert caches.size() == {"User": 0, "Product": 2}

        await caches.clear()
        assert caches.size() == {"User": 0, "Product": 0}

    async def test_refresh_all(
        self, make_multi: MakeMulti, users: InMemoryModelSource, products: InMemoryModelSource
    ) -> None:
        caches = make_multi()
        await caches.init()

        await caches.refresh(force_full=True)
        await caches.refresh("Product")

        assert users.query_counts["find_all"] == 2
        assert products.query_counts["find_all"] == 3

    async def test_snapshots_and_preload(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()
        snapshot = caches.to_json("Product", include_meta=True)
        await caches.clear("Product")

        assert caches.load_from_json("Product", snapshot, has_meta=True) == 2

        async def fetch() -> list[dict]:
            return [{"id": 12, "sku": "P-12"}]

        assert await caches.preload("Product", fetch) == 1
        assert caches.size("Product") == 3

    async def test_stats(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        await caches.init()

        stats = caches.get_stats()
        assert set(stats) == {"User", "Product"}
        assert caches.get_stats("User")["by_key"] == {"email": 2}


class TestEvents:
    """Test event forwarding."""

    async def test_events_carry_model_name(
        self, make_multi: MakeMulti, users: InMemoryModelSource
    ) -> None:
        caches = make_multi()
        seen: dict[str, list] = {"ready": [], "item_created": [], "cleared_field": [], "error": []}
        for event in seen:
            caches.on(event, seen[event].append)
        await caches.init()

        await users.create({"id": 3, "email": "c@x.com"})
        await caches.get_manager("Product").clear("sku")
        users.fail_next()
        await caches.refresh("User")

        assert sorted(p["model"] for p in seen["ready"]) == ["Product", "User"]
        assert seen["item_created"][0]["model"] == "User"
        assert seen["item_created"][0]["item"]["email"] == "c@x.com"
        assert seen["cleared_field"] == [{"model": "Product", "field": "sku"}]
        assert seen["error"][0]["model"] == "User"
        assert isinstance(seen["error"][0]["error"], ConnectionError)

    async def test_dict_events_are_merged(self, make_multi: MakeMulti) -> None:
        caches = make_multi()
        invalidated: list[dict] = []
        caches.on(CacheEvent.ITEM_INVALIDATED, invalidated.append)
        await caches.init()

        await caches.invalidate("Product", "sku", "P-10")

        assert invalidated == [{"model": "Product", "field": "sku", "value": "P-10"}]


class TestSharedRedis:
    """Test the shared Redis client."""

    async def test_models_share_one_client(
        self, make_multi: MakeMulti, redis_client: FakeRedis
    ) -> None:
        caches = make_multi(redis=redis_options(redis_client))
        await caches.init()

        for manager in caches.get_managers().values():
            assert manager.connection is not None
            assert manager.connection.client is redis_client
        assert sorted(redis_client.server.data) == [
            "cache:Product:10",
            "cache:Product:11",
            "cache:User:1",
            "cache:User:2",
        ]

        await caches.destroy()
        assert not redis_client.closed

    async def test_key_prefix_is_a_base(
        self, make_multi: MakeMulti, redis_client: FakeRedis
    ) -> None:
        caches = make_multi(redis=redis_options(redis_client, key_prefix="app:"))
        await caches.init()

        assert "app:User:1" in redis_client.server.data
        assert "app:Product:10" in redis_client.server.data

    async def test_shared_client_events(
        self, make_multi: MakeMulti, redis_client: FakeRedis
    ) -> None:
        """Shared-client reconnects are reported under the "shared" model."""
        redis_client.down = True
        caches = make_multi(redis=redis_options(redis_client))
        reconnecting: list[dict] = []
        caches.on(CacheEvent.REDIS_RECONNECTING, reconnecting.append)

        await caches.init()
        await asyncio.sleep(0.03)

        shared = [p for p in reconnecting if p["model"] == "shared"]
        assert shared[0] == {"model": "shared", "attempt": 1, "delay": 10}
        assert {p["model"] for p in reconnecting} == {"shared", "User", "Product"}


def _recording(managers: list[CacheManager]) -> Callable[..., CacheManager]:
    def build(*args: Any, **kwargs: Any) -> CacheManager:
        manager = CacheManager(*args, **kwargs)
        managers.append(manager)
        return manager

    return build
