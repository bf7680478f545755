"""Redis key schema for replicated cache entries.

Key format: {prefix}{record_id}

Where:
- prefix: per-model namespace, "cache:<model>:" unless configured
- record_id: stringified primary key

Each namespace also owns one pub/sub channel, "{prefix}invalidations".
"""

from __future__ import annotations

from typing import Any


class CacheKeys:
    """Key generator for one model namespace."""

    DEFAULT_ROOT = "cache"
    CHANNEL_SUFFIX = "invalidations"

    def __init__(self, prefix: str):
        self.prefix = prefix

    @classmethod
    def for_model(cls, model_name: str, base_prefix: str | None = None) -> "CacheKeys":
        """Namespace for ``model_name``, nested under ``base_prefix`` when given."""
        if base_prefix:
            return cls(f"{base_prefix}{model_name}:")
        return cls(f"{cls.DEFAULT_ROOT}:{model_name}:")

    def record(self, record_id: Any) -> str:
        """Key holding a replicated entry."""
        return f"{self.prefix}{record_id}"

    def pattern(self) -> str:
        """SCAN pattern matching every key in the namespace."""
        return f"{self.prefix}*"

    def channel(self) -> str:
        """Pub/sub channel for invalidation broadcasts."""
        return f"{self.prefix}{self.CHANNEL_SUFFIX}"
