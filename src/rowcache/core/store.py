"""In-memory entry store with secondary indexes and LRU bookkeeping.

Layout:
- ``by_id``: canonical entries keyed by the stringified primary key
- ``by_key``: one bucket per key field, mapping stringified field values to
  the *same* entry objects held in ``by_id``
- ``_lru``: primary keys in access order, most recently used last

Removal by id and removal by key value are separate operations. Removing a
canonical entry does not touch secondary buckets, and invalidating a key value
does not touch the canonical entry; callers combine them as needed.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from collections.abc import Iterator, Sequence
from typing import Any

from rowcache.core.entry import CacheEntry, Record, now_ms
from rowcache.events import CacheEvent, EventEmitter
from rowcache.observability.metrics import CacheMetrics

module_logger = logging.getLogger(__name__)

# Log the store size every N canonical entries
SIZE_LOG_EVERY = 1000


def index_value(value: Any) -> str:
    """Normalize a field value to its index key (``1`` and ``"1"`` collide)."""
    return str(value)


class EntryStore:
    """Canonical entries, secondary indexes and LRU order for one model."""

    def __init__(
        self,
        model_name: str,
        key_fields: Sequence[str],
        *,
        primary_key: str = "id",
        ttl_ms: int | None = None,
        max_size: int | None = None,
        metrics: CacheMetrics | None = None,
        emitter: EventEmitter | None = None,
        logger: logging.Logger | None = None,
    ):
        self.model_name = model_name
        self.key_fields = list(key_fields)
        self.primary_key = primary_key
        self.ttl_ms = ttl_ms
        self.max_size = max_size
        self.metrics = metrics or CacheMetrics(model=model_name)
        self.emitter = emitter or EventEmitter()
        self.logger = logger or module_logger

        self.by_id: dict[str, CacheEntry] = {}
        self.by_key: dict[str, dict[str, CacheEntry]] = {}
        self._lru: OrderedDict[str, None] = OrderedDict()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def expiry(self) -> float:
        """Expiry timestamp for an entry written now."""
        return now_ms() + self.ttl_ms if self.ttl_ms else math.inf

    def primary_id(self, record: Record) -> str | None:
        value = record.get(self.primary_key)
        return None if value is None else index_value(value)

    def set(self, record: Record) -> CacheEntry | None:
        """Insert or overwrite the entry for ``record``.

        Returns the stored entry, or None when the record has no primary key.
        """
        return self.put_entry(CacheEntry(data=record, expires_at=self.expiry()))

    def put_entry(self, entry: CacheEntry) -> CacheEntry | None:
        """Store a prebuilt entry (keeps its expiry)."""
        record_id = self.primary_id(entry.data)
        if record_id is None:
            self.logger.warning(
                f"Record for {self.model_name} has no '{self.primary_key}' field, not cached"
            )
            return None

        if record_id not in self.by_id and self.max_size is not None:
            while len(self.by_id) >= self.max_size and self._lru:
                self._evict_lru()

        self.by_id[record_id] = entry
        self.touch(record_id)

        for field in self.key_fields:
            value = entry.data.get(field)
            if value is not None:
                self.by_key.setdefault(field, {})[index_value(value)] = entry

        size = len(self.by_id)
        if size % SIZE_LOG_EVERY == 0:
            self.logger.info(f"{self.model_name} cache size: {size} entries")
        self.metrics.observe_size(size)
        return entry

    def touch(self, record_id: str) -> None:
        """Mark ``record_id`` as most recently used."""
        self._lru[record_id] = None
        self._lru.move_to_end(record_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, record_id: Any) -> CacheEntry | None:
        return self.by_id.get(index_value(record_id))

    def get_by_key(self, field: str, value: Any) -> CacheEntry | None:
        bucket = self.by_key.get(field)
        if bucket is None:
            return None
        return bucket.get(index_value(value))

    def records(self, include_expired: bool = False) -> list[Record]:
        now = now_ms()
        return [
            entry.data
            for entry in self.by_id.values()
            if include_expired or not entry.is_expired(now)
        ]

    def entries(self) -> Iterator[tuple[str, CacheEntry]]:
        return iter(list(self.by_id.items()))

    def lru_order(self) -> list[str]:
        return list(self._lru)

    def __len__(self) -> int:
        return len(self.by_id)

    def __contains__(self, record_id: object) -> bool:
        return index_value(record_id) in self.by_id

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def remove_by_id(self, record_id: Any) -> CacheEntry | None:
        """Drop the canonical entry and its LRU position (secondary buckets untouched)."""
        key = index_value(record_id)
        self._lru.pop(key, None)
        entry = self.by_id.pop(key, None)
        self.metrics.observe_size(len(self.by_id))
        return entry

    def remove_by_key(self, field: str, value: Any) -> CacheEntry | None:
        """Drop a single secondary pointer (canonical entry untouched)."""
        bucket = self.by_key.get(field)
        if bucket is None:
            return None
        return bucket.pop(index_value(value), None)

    def remove_record(self, record: Record) -> None:
        """Drop the canonical entry and every configured key value of ``record``."""
        record_id = record.get(self.primary_key)
        if record_id is not None:
            self.remove_by_id(record_id)
        for field in self.key_fields:
            value = record.get(field)
            if value is not None:
                self.remove_by_key(field, value)

    def _evict_lru(self) -> None:
        record_id, _ = self._lru.popitem(last=False)
        entry = self.by_id.pop(record_id, None)
        if entry is not None:
            self._unindex(entry)
        self.metrics.record_eviction()
        self.logger.debug(f"Evicted {self.model_name} id={record_id} (lru)")
        self.emitter.emit(CacheEvent.EVICTED, {"id": record_id, "cause": "lru"})

    def _unindex(self, entry: CacheEntry) -> None:
        """Remove every secondary pointer that refers to ``entry`` itself."""
        for field in self.key_fields:
            value = entry.data.get(field)
            bucket = self.by_key.get(field)
            if value is None or bucket is None:
                continue
            key = index_value(value)
            if bucket.get(key) is entry:
                del bucket[key]

    def remove_expired(self, at: float | None = None) -> int:
        """Remove canonical and secondary entries that have expired.

        Returns the number of canonical entries removed.
        """
        now = now_ms() if at is None else at
        removed = 0
        for record_id, entry in self.entries():
            if entry.expires_at < now:
                self.remove_by_id(record_id)
                removed += 1
        for bucket in self.by_key.values():
            for value, entry in list(bucket.items()):
                if entry.expires_at < now:
                    del bucket[value]
        return removed

    def reset(self) -> None:
        """Drop all entries, indexes and LRU order; metrics are kept."""
        self.by_id = {}
        self.by_key = {}
        self._lru = OrderedDict()
        self.metrics.observe_size(0)

    def clear(self, field: str | None = None) -> None:
        """Full reset including metrics, or drop one field's bucket."""
        if field is None:
            self.reset()
            self.metrics.reset()
            return
        self.by_key.pop(field, None)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def bucket_sizes(self) -> dict[str, int]:
        return {field: len(bucket) for field, bucket in self.by_key.items()}

    def dump(self, limit: int = 10) -> list[dict[str, Any]]:
        """First ``limit`` canonical entries with the key fields indexing them."""
        now = now_ms()
        result = []
        for record_id, entry in list(self.by_id.items())[:limit]:
            result.append(
                {
                    "id": record_id,
                    "keys": [
                        field
                        for field, bucket in self.by_key.items()
                        if any(candidate is entry for candidate in bucket.values())
                    ],
                    "expires_at": entry.expires_at,
                    "expired": entry.is_expired(now),
                    "data": entry.data,
                }
            )
        return result
