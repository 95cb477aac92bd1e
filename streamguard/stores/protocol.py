"""DocumentStore / CounterStore protocols + Filter dataclass.

Every durable piece of StreamGuard state lives behind one of two interfaces:

  DocumentStore — keyed JSON documents grouped in collections, with equality,
                  range, membership and array-contains filters on top-level
                  (or dotted) fields. Audit partitions, fraud events, keys,
                  incidents and blocklists all use it.
  CounterStore  — a distributed atomic counter with TTL. The rate limiter's
                  correctness depends entirely on increment_with_expiry being
                  atomic across processes; there is no in-process locking.

Implementations:
  memory.py        — MemoryDocumentStore, MemoryCounterStore (tests, single node)
  sqlite_store.py  — SQLiteDocumentStore (aiosqlite, WAL)
  redis_counter.py — RedisCounterStore (redis.asyncio)

Adapters raise StoreUnavailableError when the backing service fails; callers
decide whether to absorb it (rate limiter, audit trail) or propagate it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

# Supported filter operators.
#   "==" / "!=" / "<" / "<=" / ">" / ">="  scalar comparison
#   "in"        field value is one of `value` (a list)
#   "contains"  field is an array that contains `value`
FILTER_OPERATORS: frozenset[str] = frozenset(
    {"==", "!=", "<", "<=", ">", ">=", "in", "contains"}
)


@dataclass(frozen=True)
class Filter:
    """One predicate in a DocumentStore.query() call.

    Timestamps are stored as fixed-width ISO-8601 strings (see
    utils.clock.isoformat) so range filters compare lexicographically.
    """

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op!r}")


# ─── DocumentStore Protocol ───────────────────────────────────────────────────


@runtime_checkable
class DocumentStore(Protocol):
    """Keyed JSON document store."""

    async def initialize(self) -> None:
        """Open connections / create schema. Safe to call once at startup."""
        ...

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        """Insert or replace a document."""
        ...

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Return the document or None if absent."""
        ...

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool:
        """Shallow-merge `fields` into an existing document. Returns False if absent."""
        ...

    async def increment(
        self,
        collection: str,
        doc_id: str,
        field: str,
        amount: int = 1,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """Atomically add `amount` to a numeric field (missing counts as 0).

        `fields` are shallow-merged in the same write. Returns the new value,
        or None if the document is absent.
        """
        ...

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Return documents matching ALL filters."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the store is operational. Must not raise."""
        ...

    async def close(self) -> None:
        ...


# ─── CounterStore Protocol ────────────────────────────────────────────────────


@runtime_checkable
class CounterStore(Protocol):
    """Distributed atomic counter with per-key expiry."""

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment `key` and return the new count.

        The TTL is applied when the key is created (count == 1) and not
        extended by later increments, so a window's counter expires with the
        window.
        """
        ...

    async def health_check(self) -> bool:
        ...

    async def close(self) -> None:
        ...


def get_field(doc: dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path (``"location.country"``) against a document."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current
