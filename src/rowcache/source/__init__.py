"""Backing-store adapters.

Provides the ``ModelSource`` interface caches read from, plus:
- ``InMemoryModelSource`` for tests and non-database data
- ``SqlAlchemyModelSource`` for SQLAlchemy 2.0 async ORM models
"""

from rowcache.source.base import Gt, HookCallback, HookType, In, ModelSource, Where, matches
from rowcache.source.memory import InMemoryModelSource
from rowcache.source.sql import SqlAlchemyModelSource

__all__ = [
    # Interface
    "ModelSource",
    "HookType",
    "HookCallback",
    "Where",
    "Gt",
    "In",
    "matches",
    # Adapters
    "InMemoryModelSource",
    "SqlAlchemyModelSource",
]
