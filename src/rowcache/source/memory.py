"""Dict-backed model source.

Suitable for tests, local development and caching data that does not live in
a database. Writes go through ``create``/``update``/``destroy`` so hooks fire
exactly as they would for an ORM model.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import Counter, defaultdict
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any

from rowcache.source.base import HookCallback, HookType, ModelSource, Record, Where, matches


class InMemoryModelSource(ModelSource):
    """In-memory model with ORM-like hooks.

    Args:
        name: Model name
        records: Initial rows
        primary_key: Primary key field
        attributes: Declared field names; None means "unknown"
        timestamp_field: Field stamped with the current UTC time on every
            write, or None to leave records untouched
        latency: Seconds to sleep in every query
    """

    def __init__(
        self,
        name: str,
        records: list[Record] | None = None,
        *,
        primary_key: str = "id",
        attributes: set[str] | None = None,
        timestamp_field: str | None = "updated_at",
        latency: float = 0.0,
    ):
        self.name = name
        self.primary_key = primary_key
        self.attributes = attributes
        self.timestamp_field = timestamp_field
        self.latency = latency
        self.query_counts: Counter[str] = Counter()
        self._rows: dict[Any, Record] = {}
        self._hooks: dict[HookType, list[HookCallback]] = defaultdict(list)
        self._failures: list[Exception] = []
        for record in records or []:
            self._rows[record[primary_key]] = deepcopy(record)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def find_by_pk(self, pk: Any) -> Record | None:
        await self._query("find_by_pk")
        row = self._rows.get(pk)
        return deepcopy(row) if row is not None else None

    async def find_all(self, where: Where | None = None) -> list[Record]:
        await self._query("find_all")
        return [deepcopy(row) for row in self._rows.values() if matches(row, where)]

    async def find_one(self, where: Where) -> Record | None:
        await self._query("find_one")
        for row in self._rows.values():
            if matches(row, where):
                return deepcopy(row)
        return None

    async def _query(self, operation: str) -> None:
        self.query_counts[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failures:
            raise self._failures.pop(0)

    def fail_next(self, error: Exception | None = None) -> None:
        """Make the next query raise ``error``."""
        self._failures.append(error or ConnectionError(f"{self.name} store unavailable"))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, record: Record) -> Record:
        row = self._stamp(deepcopy(record))
        self._rows[row[self.primary_key]] = row
        await self._fire(HookType.AFTER_CREATE, row)
        return deepcopy(row)

    async def update(self, pk: Any, changes: Record) -> Record:
        row = self._rows[pk]
        row.update(deepcopy(changes))
        self._stamp(row)
        await self._fire(HookType.AFTER_UPDATE, row)
        return deepcopy(row)

    async def destroy(self, pk: Any) -> Record | None:
        row = self._rows.pop(pk, None)
        if row is not None:
            await self._fire(HookType.AFTER_DESTROY, row)
        return row

    def _stamp(self, row: Record) -> Record:
        if self.timestamp_field:
            row[self.timestamp_field] = datetime.now(timezone.utc)
        return row

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def add_hook(self, hook_type: HookType, callback: HookCallback) -> None:
        self._hooks[hook_type].append(callback)

    def remove_hook(self, hook_type: HookType, callback: HookCallback) -> None:
        self._hooks[hook_type].remove(callback)

    def hook_count(self, hook_type: HookType) -> int:
        return len(self._hooks[hook_type])

    async def _fire(self, hook_type: HookType, row: Record) -> None:
        for callback in list(self._hooks[hook_type]):
            result = callback(deepcopy(row))
            if inspect.isawaitable(result):
                await result

    def get_attributes(self) -> set[str] | None:
        return self.attributes
