"""In-process DocumentStore and CounterStore.

Used by the test suite and by single-node deployments that do not need
durability (`storage.document_backend: memory`). Documents are deep-copied on
the way in and out so callers can never mutate stored state by reference.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from streamguard.stores.protocol import CounterStore, DocumentStore, Filter, get_field
from streamguard.utils.clock import Clock, SystemClock


def matches(doc: dict[str, Any], flt: Filter) -> bool:
    """Evaluate one Filter against a document (shared with tests)."""
    value = get_field(doc, flt.field)
    if flt.op == "==":
        return value == flt.value
    if flt.op == "!=":
        return value != flt.value
    if flt.op == "in":
        return value in flt.value
    if flt.op == "contains":
        return isinstance(value, list) and flt.value in value
    if value is None:
        return False
    if flt.op == "<":
        return value < flt.value
    if flt.op == "<=":
        return value <= flt.value
    if flt.op == ">":
        return value > flt.value
    return value >= flt.value


def _sort_key(doc: dict[str, Any], field: str) -> tuple[bool, Any]:
    # Missing values sort first ascending, last descending.
    value = get_field(doc, field)
    return (value is not None, value if value is not None else 0)


def _set_field(doc: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    for part in parents:
        doc = doc.setdefault(part, {})
    doc[leaf] = value


class MemoryDocumentStore:
    """Dict-of-dicts document store."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    async def initialize(self) -> None:
        return None

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(doc)

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            return False
        doc.update(copy.deepcopy(fields))
        return True

    async def increment(
        self,
        collection: str,
        doc_id: str,
        field: str,
        amount: int = 1,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is None:
            return None
        value = (get_field(doc, field) or 0) + amount
        _set_field(doc, field, value)
        if fields:
            doc.update(copy.deepcopy(fields))
        return value

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._collections.get(collection, {}).pop(doc_id, None) is not None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        docs = [
            doc
            for doc in self._collections.get(collection, {}).values()
            if all(matches(doc, flt) for flt in filters)
        ]
        if order_by is not None:
            docs.sort(key=lambda d: _sort_key(d, order_by), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return [copy.deepcopy(doc) for doc in docs]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryCounterStore:
    """Single-process counter store with clock-driven expiry.

    Atomic by construction within one event loop: increment_with_expiry never
    awaits between read and write. Expired counters are swept on write at most
    once per SWEEP_INTERVAL, so the map only holds live windows.
    """

    SWEEP_INTERVAL = timedelta(seconds=60)

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._counters: dict[str, tuple[int, datetime]] = {}
        self._next_sweep: Optional[datetime] = None

    def size(self) -> int:
        """Number of counters currently held, live or not yet swept."""
        return len(self._counters)

    def _sweep(self, now: datetime) -> None:
        if self._next_sweep is not None and now < self._next_sweep:
            return
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self.SWEEP_INTERVAL

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> int:
        now = self._clock.now()
        self._sweep(now)
        entry = self._counters.get(key)
        if entry is None or entry[1] <= now:
            count, expires_at = 1, now + timedelta(seconds=ttl_seconds)
        else:
            count, expires_at = entry[0] + 1, entry[1]
        self._counters[key] = (count, expires_at)
        return count

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._counters.clear()


# ─── Protocol compliance assertions ──────────────────────────────────────────
assert isinstance(MemoryDocumentStore(), DocumentStore), (
    "MemoryDocumentStore does not satisfy DocumentStore protocol"
)
assert isinstance(MemoryCounterStore(), CounterStore), (
    "MemoryCounterStore does not satisfy CounterStore protocol"
)
