"""Cache hit/miss/eviction accounting.

Each cache keeps its own ``CacheMetrics`` counters (reset on a full clear).
Every increment is also mirrored to process-wide Prometheus counters labelled
by model name, which are monotonic and never reset.

Usage:
    from rowcache.observability.metrics import get_metrics

    registry = get_metrics()
    registry.cache_hits_total.labels(model="User").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, generate_latest

from rowcache.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    cache_hits_total: Any = None
    cache_misses_total: Any = None
    cache_evictions_total: Any = None
    cache_entries: Any = None

    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.cache_hits_total = Counter(
            "rowcache_cache_hits_total",
            "Cache hits",
            ["model"],
        )
        self.cache_misses_total = Counter(
            "rowcache_cache_misses_total",
            "Cache misses",
            ["model"],
        )
        self.cache_evictions_total = Counter(
            "rowcache_cache_evictions_total",
            "Entries evicted by the LRU capacity limit",
            ["model"],
        )
        self.cache_entries = Gauge(
            "rowcache_cache_entries",
            "Canonical entries currently cached",
            ["model"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry, initializing it on first access."""
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


@dataclass
class CacheMetrics:
    """Per-cache request counters."""

    model: str
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    def __post_init__(self) -> None:
        self._registry = get_metrics()

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        return self.hits / total if total else 0.0

    def record_hit(self) -> None:
        self.hits += 1
        if self._registry.cache_hits_total is not None:
            self._registry.cache_hits_total.labels(model=self.model).inc()

    def record_miss(self) -> None:
        self.misses += 1
        if self._registry.cache_misses_total is not None:
            self._registry.cache_misses_total.labels(model=self.model).inc()

    def record_eviction(self) -> None:
        self.evictions += 1
        if self._registry.cache_evictions_total is not None:
            self._registry.cache_evictions_total.labels(model=self.model).inc()

    def observe_size(self, size: int) -> None:
        if self._registry.cache_entries is not None:
            self._registry.cache_entries.labels(model=self.model).set(size)

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def to_dict(self) -> dict[str, Any]:
        """Export metrics as dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
        }
