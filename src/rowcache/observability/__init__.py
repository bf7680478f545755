"""Observability module for rowcache.

Provides metrics and structured logging:
- Prometheus counters for hits, misses and evictions per model
- JSON structured logging with model and instance context
"""

from rowcache.observability.logging import (
    LogContext,
    configure_logging,
    current_context,
    instance_id_var,
    model_var,
    operation_var,
)
from rowcache.observability.metrics import CacheMetrics, get_metrics, metrics_registry

__all__ = [
    # Logging
    "configure_logging",
    "current_context",
    "LogContext",
    "model_var",
    "instance_id_var",
    "operation_var",
    # Metrics
    "CacheMetrics",
    "metrics_registry",
    "get_metrics",
]
