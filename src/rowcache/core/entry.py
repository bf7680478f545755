"""Cache entry type and time helpers."""

from __future__ import annotations

import math
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

Record = dict[str, Any]


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


def plain(record: Any) -> Record:
    """Detached dict snapshot of a record.

    Accepts dicts and objects exposing ``to_dict()``; the result shares no
    mutable state with the input.
    """
    if isinstance(record, dict):
        return deepcopy(record)
    to_dict = getattr(record, "to_dict", None)
    if callable(to_dict):
        return deepcopy(to_dict())
    raise TypeError(f"Cannot cache record of type {type(record).__name__}")


@dataclass(eq=False)
class CacheEntry:
    """One cached record.

    Identity matters: the canonical store and every secondary index bucket
    hold the same instance, so ``eq`` is disabled and comparisons use ``is``.
    """

    data: Record
    expires_at: float = math.inf

    def is_expired(self, at: float | None = None) -> bool:
        return self.expires_at < (now_ms() if at is None else at)

    def remaining_ms(self) -> float:
        return self.expires_at - now_ms()

    def to_json(self) -> dict[str, Any]:
        return {
            "data": deepcopy(self.data),
            "expiresAt": None if math.isinf(self.expires_at) else self.expires_at,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "CacheEntry":
        expires_at = payload.get("expiresAt")
        return cls(
            data=payload["data"],
            expires_at=math.inf if expires_at is None else float(expires_at),
        )
