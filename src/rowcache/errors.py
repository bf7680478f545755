"""Exceptions raised by rowcache.

Failures of external dependencies (database, Redis) are never raised from
read or write calls; they are logged and emitted as ``error`` events. The
exceptions below cover startup failures and caller misuse.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base exception for rowcache."""


class CacheLoadError(CacheError):
    """Initial load of a cache failed."""


class NotInitializedError(CacheError):
    """Operation attempted before ``init()``."""


class AlreadyInitializedError(CacheError):
    """``init()`` called twice."""


class UnknownModelError(CacheError, KeyError):
    """No cache is managed under the requested model name."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"No cache manager found for model: {model_name}")

    def __str__(self) -> str:
        return str(self.args[0])


class ReadyTimeoutError(CacheError, TimeoutError):
    """Caches did not become ready within the allotted time."""
