"""rowcache: read-through caching for relational models.

Provides an in-memory cache per model with:
- Primary key and key-field lookups over shared entries
- TTL expiry, stale-while-revalidate and LRU eviction
- Deduplicated lazy loading from the backing store
- Hook-driven invalidation and periodic incremental sync
- Optional Redis replication and cross-instance invalidation
"""

from rowcache.config import CacheOptions, ReconnectStrategy, RedisOptions, Settings, settings
from rowcache.errors import (
    AlreadyInitializedError,
    CacheError,
    CacheLoadError,
    NotInitializedError,
    ReadyTimeoutError,
    UnknownModelError,
)
from rowcache.events import CacheEvent, EventEmitter
from rowcache.manager import CacheManager, LifecycleState
from rowcache.multi import MultiModelCacheManager
from rowcache.source import (
    Gt,
    HookType,
    In,
    InMemoryModelSource,
    ModelSource,
    SqlAlchemyModelSource,
)

__version__ = "0.1.0"

__all__ = [
    # Caches
    "CacheManager",
    "LifecycleState",
    "MultiModelCacheManager",
    # Configuration
    "CacheOptions",
    "RedisOptions",
    "ReconnectStrategy",
    "Settings",
    "settings",
    # Sources
    "ModelSource",
    "InMemoryModelSource",
    "SqlAlchemyModelSource",
    "HookType",
    "Gt",
    "In",
    # Events
    "CacheEvent",
    "EventEmitter",
    # Errors
    "CacheError",
    "CacheLoadError",
    "NotInitializedError",
    "AlreadyInitializedError",
    "UnknownModelError",
    "ReadyTimeoutError",
]
