"""Redis layer for rowcache.

Provides optional multi-process coherence:
- Write-through replication of cache entries under a per-model namespace
- Reconnection with exponential backoff; memory-only operation while down
- Cross-instance invalidation over Redis Pub/Sub
"""

from rowcache.cache.invalidation import ClusterSync, InvalidationMessage, generate_instance_id
from rowcache.cache.keys import CacheKeys
from rowcache.cache.redis import (
    RedisConnectionManager,
    RedisConnectionState,
    RedisReplica,
    create_redis_client,
)

__all__ = [
    # Replication
    "CacheKeys",
    "RedisConnectionManager",
    "RedisConnectionState",
    "RedisReplica",
    "create_redis_client",
    # Cluster sync
    "ClusterSync",
    "InvalidationMessage",
    "generate_instance_id",
]
