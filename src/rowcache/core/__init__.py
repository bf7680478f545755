"""Storage primitives shared by every cache.

- ``CacheEntry``: one cached record with its expiry
- ``EntryStore``: canonical entries, key-field indexes and LRU order
- ``DeduplicatingLoader``: coalesces concurrent misses into one fetch
"""

from rowcache.core.entry import CacheEntry, Record, now_ms, plain
from rowcache.core.loader import DeduplicatingLoader
from rowcache.core.store import EntryStore, index_value

__all__ = [
    "CacheEntry",
    "Record",
    "now_ms",
    "plain",
    "EntryStore",
    "index_value",
    "DeduplicatingLoader",
]
