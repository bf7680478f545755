"""Tests for the entry store, secondary indexes and LRU order."""

import logging
import math

import pytest

from rowcache.core.entry import CacheEntry, now_ms
from rowcache.core.store import EntryStore
from rowcache.events import CacheEvent, EventEmitter


def make_store(**kwargs) -> EntryStore:
    kwargs.setdefault("emitter", EventEmitter())
    return EntryStore("User", ["email", "name"], **kwargs)


def assert_lru_matches(store: EntryStore) -> None:
    assert set(store.lru_order()) == set(store.by_id)


class TestIndexing:
    """Test canonical and secondary indexing."""

    def test_entry_shared_between_indexes(self) -> None:
        """The same entry object backs the id and every key bucket."""
        store = make_store()
        entry = store.set({"id": 1, "email": "a@x.com", "name": "Ada"})

        assert entry is not None
        assert store.get(1) is entry
        assert store.get_by_key("email", "a@x.com") is entry
        assert store.get_by_key("name", "Ada") is entry

    def test_none_values_not_indexed(self) -> None:
        """Key fields with a None value get no bucket entry."""
        store = make_store()
        store.set({"id": 1, "email": None, "name": "Ada"})

        assert store.get_by_key("email", None) is None
        assert "email" not in store.by_key
        assert store.bucket_sizes() == {"name": 1}

    def test_values_are_stringified(self) -> None:
        """1 and "1" address the same entry."""
        store = make_store()
        entry = store.set({"id": 1, "email": "a@x.com"})

        assert store.get("1") is entry
        assert "1" in store
        assert 1 in store

    def test_overwrite_replaces_entry(self) -> None:
        """Setting an existing id replaces the canonical entry."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com"})
        newer = store.set({"id": 1, "email": "a@x.com", "name": "Ada"})

        assert store.get(1) is newer
        assert store.get_by_key("email", "a@x.com") is newer
        assert len(store) == 1

    def test_missing_primary_key_not_cached(self, caplog: pytest.LogCaptureFixture) -> None:
        """Records without a primary key are skipped with a warning."""
        store = make_store()
        with caplog.at_level(logging.WARNING):
            assert store.set({"email": "a@x.com"}) is None

        assert len(store) == 0
        assert store.get_by_key("email", "a@x.com") is None
        assert "has no 'id' field" in caplog.text

    def test_custom_primary_key(self) -> None:
        """Canonical storage follows the configured primary key."""
        store = EntryStore("Country", ["name"], primary_key="code")
        entry = store.set({"code": "DE", "name": "Germany"})

        assert store.get("DE") is entry

    def test_no_ttl_never_expires(self) -> None:
        """Without a TTL entries expire at infinity."""
        store = make_store()
        entry = store.set({"id": 1})

        assert entry is not None
        assert math.isinf(entry.expires_at)
        assert not entry.is_expired()

    def test_ttl_sets_expiry(self) -> None:
        """With a TTL entries expire ttl_ms from now."""
        store = make_store(ttl_ms=1000)
        before = now_ms()
        entry = store.set({"id": 1})

        assert entry is not None
        assert before + 1000 <= entry.expires_at <= now_ms() + 1000


class TestRemoval:
    """Test the separate removal paths."""

    def test_remove_by_id_keeps_secondary(self) -> None:
        """Removing by id leaves key buckets untouched."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com"})

        store.remove_by_id(1)

        assert store.get(1) is None
        assert store.get_by_key("email", "a@x.com") is not None
        assert_lru_matches(store)

    def test_remove_by_key_keeps_canonical(self) -> None:
        """Removing a key pointer leaves the canonical entry and other keys."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com", "name": "Ada"})

        store.remove_by_key("email", "a@x.com")

        assert store.get_by_key("email", "a@x.com") is None
        assert store.get(1) is not None
        assert store.get_by_key("name", "Ada") is not None

    def test_remove_record_removes_everything(self) -> None:
        """Removing a record drops its id and every configured key value."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com", "name": "Ada"})

        store.remove_record({"id": 1, "email": "a@x.com", "name": "Ada"})

        assert len(store) == 0
        assert store.bucket_sizes() == {"email": 0, "name": 0}
        assert store.lru_order() == []

    def test_remove_expired(self) -> None:
        """Expired canonical and secondary entries are removed."""
        store = make_store(ttl_ms=1000)
        store.set({"id": 1, "email": "a@x.com"})
        store.put_entry(CacheEntry({"id": 2, "email": "b@x.com"}, expires_at=now_ms() - 1))

        removed = store.remove_expired()

        assert removed == 1
        assert store.get(2) is None
        assert store.get_by_key("email", "b@x.com") is None
        assert store.get(1) is not None
        assert_lru_matches(store)

    def test_clear_field_drops_bucket_only(self) -> None:
        """Clearing a field leaves canonical entries and other buckets."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com", "name": "Ada"})

        store.clear("email")

        assert "email" not in store.by_key
        assert store.get(1) is not None
        assert store.get_by_key("name", "Ada") is not None

    def test_full_clear_resets_metrics(self) -> None:
        """A full clear resets entries and metrics; reset keeps metrics."""
        store = make_store(max_size=1)
        store.set({"id": 1})
        store.set({"id": 2})
        assert store.metrics.evictions == 1

        store.reset()
        assert len(store) == 0
        assert store.metrics.evictions == 1

        store.set({"id": 3})
        store.clear()
        assert len(store) == 0
        assert store.by_key == {}
        assert store.metrics.evictions == 0


class TestLru:
    """Test capacity-based eviction."""

    def test_oldest_entry_evicted(self) -> None:
        """max_size=2 with A, B, C evicts A."""
        emitter = EventEmitter()
        evicted: list[dict] = []
        emitter.on(CacheEvent.EVICTED, evicted.append)
        store = make_store(max_size=2, emitter=emitter)

        store.set({"id": "A", "email": "a@x.com"})
        store.set({"id": "B", "email": "b@x.com"})
        store.set({"id": "C", "email": "c@x.com"})

        assert store.get("A") is None
        assert store.get_by_key("email", "a@x.com") is None
        assert store.get("B") is not None
        assert store.get("C") is not None
        assert evicted == [{"id": "A", "cause": "lru"}]
        assert store.metrics.evictions == 1
        assert_lru_matches(store)

    def test_touch_protects_entry(self) -> None:
        """A recently touched entry survives the next eviction."""
        store = make_store(max_size=2)
        store.set({"id": "A"})
        store.set({"id": "B"})

        store.touch("A")
        store.set({"id": "C"})

        assert store.get("A") is not None
        assert store.get("B") is None

    def test_overwrite_at_capacity_does_not_evict(self) -> None:
        """Updating an existing id never evicts."""
        store = make_store(max_size=2)
        store.set({"id": "A"})
        store.set({"id": "B"})

        store.set({"id": "A", "name": "again"})

        assert len(store) == 2
        assert store.metrics.evictions == 0
        assert store.lru_order() == ["B", "A"]

    def test_eviction_keeps_pointers_owned_by_other_entries(self) -> None:
        """Eviction only removes bucket entries that are the evicted object."""
        store = make_store(max_size=2)
        store.set({"id": "A", "email": "shared@x.com"})
        newer = store.set({"id": "B", "email": "shared@x.com"})

        store.set({"id": "C"})

        assert store.get("A") is None
        assert store.get_by_key("email", "shared@x.com") is newer

    def test_lru_tracks_store_through_mixed_operations(self) -> None:
        """LRU keys equal canonical keys after any mix of operations."""
        store = make_store(max_size=3, ttl_ms=1000)
        for i in range(6):
            store.set({"id": i, "email": f"{i}@x.com"})
            assert_lru_matches(store)
        store.remove_by_id(4)
        assert_lru_matches(store)
        store.remove_record({"id": 5, "email": "5@x.com"})
        assert_lru_matches(store)
        store.put_entry(CacheEntry({"id": 9}, expires_at=now_ms() - 1))
        store.remove_expired()
        assert_lru_matches(store)
        assert len(store) <= 3


class TestDump:
    """Test debugging output."""

    def test_dump_lists_indexing_fields(self) -> None:
        """Dump shows which buckets reference each entry."""
        store = make_store()
        store.set({"id": 1, "email": "a@x.com", "name": "Ada"})
        store.set({"id": 2, "email": "b@x.com"})

        dump = store.dump(limit=1)

        assert len(dump) == 1
        assert dump[0]["id"] == "1"
        assert sorted(dump[0]["keys"]) == ["email", "name"]
        assert dump[0]["expired"] is False
