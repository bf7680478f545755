"""Tests for the in-memory model source."""

from datetime import datetime, timedelta, timezone

import pytest

from rowcache.source.base import Gt, HookType, In, matches
from rowcache.source.memory import InMemoryModelSource


class TestMatches:
    """Test where-filter evaluation."""

    def test_equality(self) -> None:
        assert matches({"email": "a@x.com"}, {"email": "a@x.com"})
        assert not matches({"email": "a@x.com"}, {"email": "b@x.com"})

    def test_greater_than(self) -> None:
        """Gt is strict and never matches missing values."""
        assert matches({"n": 2}, {"n": Gt(1)})
        assert not matches({"n": 1}, {"n": Gt(1)})
        assert not matches({}, {"n": Gt(1)})

    def test_membership(self) -> None:
        assert matches({"n": 2}, {"n": In([1, 2])})
        assert not matches({"n": 3}, {"n": In([1, 2])})

    def test_empty_filter_matches_everything(self) -> None:
        assert matches({"n": 1}, None)
        assert matches({"n": 1}, {})


class TestQueries:
    """Test reads."""

    @pytest.fixture
    def source(self) -> InMemoryModelSource:
        return InMemoryModelSource(
            "User",
            [{"id": 1, "email": "a@x.com"}, {"id": 2, "email": "b@x.com"}],
        )

    async def test_find_by_pk(self, source: InMemoryModelSource) -> None:
        assert await source.find_by_pk(1) == {"id": 1, "email": "a@x.com"}
        assert await source.find_by_pk(3) is None

    async def test_find_all_with_filter(self, source: InMemoryModelSource) -> None:
        rows = await source.find_all({"email": In(["b@x.com", "c@x.com"])})
        assert rows == [{"id": 2, "email": "b@x.com"}]

    async def test_results_are_copies(self, source: InMemoryModelSource) -> None:
        """Mutating a result does not change the stored row."""
        row = await source.find_by_pk(1)
        assert row is not None
        row["email"] = "changed"

        assert (await source.find_one({"id": 1})) == {"id": 1, "email": "a@x.com"}

    async def test_failure_injection(self, source: InMemoryModelSource) -> None:
        """fail_next makes exactly the next query raise."""
        source.fail_next(RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            await source.find_all()
        assert len(await source.find_all()) == 2
        assert source.query_counts["find_all"] == 2


class TestWrites:
    """Test writes and hooks."""

    async def test_writes_fire_hooks(self) -> None:
        """create, update and destroy notify their hooks."""
        source = InMemoryModelSource("User")
        seen: list[tuple[str, dict]] = []
        source.add_hook(HookType.AFTER_CREATE, lambda r: seen.append(("create", r)))
        source.add_hook(HookType.AFTER_UPDATE, lambda r: seen.append(("update", r)))
        source.add_hook(HookType.AFTER_DESTROY, lambda r: seen.append(("destroy", r)))

        await source.create({"id": 1, "email": "a@x.com"})
        await source.update(1, {"email": "b@x.com"})
        await source.destroy(1)

        assert [kind for kind, _ in seen] == ["create", "update", "destroy"]
        assert seen[1][1]["email"] == "b@x.com"

    async def test_async_hooks_are_awaited(self) -> None:
        source = InMemoryModelSource("User")
        seen: list[dict] = []

        async def hook(record: dict) -> None:
            seen.append(record)

        source.add_hook(HookType.AFTER_CREATE, hook)
        await source.create({"id": 1})

        assert len(seen) == 1

    async def test_writes_stamp_timestamp(self) -> None:
        """Writes set the timestamp field to the current UTC time."""
        source = InMemoryModelSource("User")
        before = datetime.now(timezone.utc) - timedelta(seconds=1)

        row = await source.create({"id": 1})

        assert row["updated_at"] > before
        assert await source.find_all({"updated_at": Gt(before)}) == [row]

    async def test_remove_hook(self) -> None:
        source = InMemoryModelSource("User")

        def hook(record: dict) -> None:
            pass

        source.add_hook(HookType.AFTER_CREATE, hook)
        source.remove_hook(HookType.AFTER_CREATE, hook)

        assert source.hook_count(HookType.AFTER_CREATE) == 0
        with pytest.raises(ValueError):
            source.remove_hook(HookType.AFTER_CREATE, hook)
