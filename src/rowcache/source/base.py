"""Backing-store interface consumed by caches.

A ``ModelSource`` exposes one relational model (table) as plain dict records
and lets caches subscribe to its change notifications.

Filters passed as ``where`` map field names to either a plain value
(equality), ``Gt(value)`` (strictly greater) or ``In(values)`` (membership).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

Record = dict[str, Any]
HookCallback = Callable[[Record], Any]
Where = dict[str, Any]


class HookType(str, Enum):
    """Change notifications a source can deliver."""

    AFTER_CREATE = "after_create"
    AFTER_UPDATE = "after_update"
    AFTER_DESTROY = "after_destroy"


@dataclass(frozen=True)
class Gt:
    """Field value strictly greater than ``value``."""

    value: Any


@dataclass(frozen=True)
class In:
    """Field value contained in ``values``."""

    values: tuple[Any, ...]

    def __init__(self, values: Iterable[Any]):
        object.__setattr__(self, "values", tuple(values))


def matches(record: Record, where: Where | None) -> bool:
    """Evaluate a ``where`` filter against a plain record."""
    if not where:
        return True
    for field, condition in where.items():
        value = record.get(field)
        if isinstance(condition, Gt):
            if value is None or not value > condition.value:
                return False
        elif isinstance(condition, In):
            if value not in condition.values:
                return False
        elif value != condition:
            return False
    return True


class ModelSource(ABC):
    """Abstract access to a single backing model."""

    #: Model name, used in logs, metrics and Redis namespaces
    name: str
    #: Primary key field of the plain records
    primary_key: str = "id"

    @abstractmethod
    async def find_by_pk(self, pk: Any) -> Record | None:
        """Return the record with primary key ``pk`` or None."""

    @abstractmethod
    async def find_all(self, where: Where | None = None) -> list[Record]:
        """Return all records matching ``where``."""

    @abstractmethod
    async def find_one(self, where: Where) -> Record | None:
        """Return the first record matching ``where`` or None."""

    @abstractmethod
    def add_hook(self, hook_type: HookType, callback: HookCallback) -> None:
        """Register ``callback`` for a change notification."""

    @abstractmethod
    def remove_hook(self, hook_type: HookType, callback: HookCallback) -> None:
        """Unregister a callback previously passed to ``add_hook``."""

    def get_attributes(self) -> set[str] | None:
        """Field names of the model, or None when unknown."""
        return None
