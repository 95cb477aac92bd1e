"""SQLiteDocumentStore — aiosqlite-backed JSON document store.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1, RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Documents stored as JSON text; filters compiled to json_extract() SQL
  - Array-contains filters compiled to EXISTS over json_each()

Every operation wraps aiosqlite errors in StoreUnavailableError so callers
can apply their own degradation policy.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from typing import Any, Optional, Sequence

import aiosqlite

from streamguard.errors import StoreUnavailableError
from streamguard.stores.protocol import DocumentStore, Filter
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection  TEXT NOT NULL,
    doc_id      TEXT NOT NULL,
    body        TEXT NOT NULL,
    PRIMARY KEY (collection, doc_id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection
    ON documents(collection);
"""

_SCHEMA_VERSION = 1

# Field paths are interpolated into json_extract() paths, so they are
# restricted to identifier characters and dots.
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_SCALAR_OPS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


def _json_path(field: str) -> str:
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid document field path: {field!r}")
    return f"$.{field}"


def _bind(value: Any) -> Any:
    # json_extract returns 1/0 for JSON booleans; bool binds as int already.
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def build_query_sql(
    collection: str,
    filters: Sequence[Filter],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> tuple[str, list[Any]]:
    """Compile a query() call to parameterised SQL.

    Exposed as a module-level function so the SQL shape can be unit-tested
    without a database.
    """
    clauses = ["collection = ?"]
    params: list[Any] = [collection]

    for flt in filters:
        path = _json_path(flt.field)
        if flt.op == "contains":
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(documents.body, ?) WHERE json_each.value = ?)"
            )
            params.extend([path, _bind(flt.value)])
        elif flt.op == "in":
            values = list(flt.value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ",".join("?" for _ in values)
            clauses.append(f"json_extract(body, ?) IN ({placeholders})")
            params.append(path)
            params.extend(_bind(v) for v in values)
        elif flt.value is None and flt.op in ("==", "!="):
            clauses.append(
                "json_extract(body, ?) IS NULL" if flt.op == "==" else "json_extract(body, ?) IS NOT NULL"
            )
            params.append(path)
        else:
            clauses.append(f"json_extract(body, ?) {_SCALAR_OPS[flt.op]} ?")
            params.extend([path, _bind(flt.value)])

    sql = f"SELECT body FROM documents WHERE {' AND '.join(clauses)}"
    if order_by is not None:
        sql += f" ORDER BY json_extract(body, ?) {'DESC' if descending else 'ASC'}"
        params.append(_json_path(order_by))
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return sql, params


# ─── SQLiteDocumentStore ──────────────────────────────────────────────────────


class SQLiteDocumentStore:
    """Async SQLite document store using aiosqlite exclusively.

    Usage:
        store = SQLiteDocumentStore("/var/lib/streamguard/streamguard.db")
        await store.initialize()   # raises RuntimeError on schema version mismatch
        await store.put("security_incidents", incident_id, doc)
        docs = await store.query("fraud_events", [Filter("user_id", "==", uid)])
        await store.close()
    """

    def __init__(self, db_path: str = "~/.streamguard/streamguard.db") -> None:
        self._db_path: str = os.path.expanduser(db_path) if db_path != ":memory:" else db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._update_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode and create/verify the schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1. The
                          FastAPI lifespan lets this abort startup.
        """
        if self._db_path != ":memory:":
            parent_dir = os.path.dirname(self._db_path)
            if parent_dir:
                os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info("document_db_schema_created", db_path=self._db_path)
        elif current_version == _SCHEMA_VERSION:
            logger.info("document_db_schema_ok", db_path=self._db_path)
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported document database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("document_db_closed", db_path=self._db_path)

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreUnavailableError(
                "Document store not initialized — call initialize() first", store="sqlite"
            )
        return self._db

    # ── DocumentStore Protocol Methods ────────────────────────────────────────

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        db = self._conn()
        try:
            await db.execute(
                "INSERT OR REPLACE INTO documents (collection, doc_id, body) VALUES (?,?,?)",
                (collection, doc_id, json.dumps(doc)),
            )
            await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        db = self._conn()
        try:
            cursor = await db.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc
        return json.loads(row["body"]) if row else None

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool:
        db = self._conn()
        try:
            async with self._update_lock:
                return await self._merge(db, collection, doc_id, fields)
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc

    async def increment(
        self,
        collection: str,
        doc_id: str,
        field: str,
        amount: int = 1,
        fields: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        db = self._conn()
        path = _json_path(field)
        try:
            async with self._update_lock:
                # Single-statement arithmetic: atomic across connections.
                cursor = await db.execute(
                    "UPDATE documents SET body = json_set(body, ?, COALESCE(json_extract(body, ?), 0) + ?) "
                    "WHERE collection = ? AND doc_id = ?",
                    (path, path, amount, collection, doc_id),
                )
                if cursor.rowcount == 0:
                    await db.commit()
                    return None
                if fields:
                    await self._merge(db, collection, doc_id, fields)
                else:
                    await db.commit()
                cursor = await db.execute(
                    "SELECT json_extract(body, ?) AS value FROM documents WHERE collection = ? AND doc_id = ?",
                    (path, collection, doc_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc
        return int(row["value"]) if row else None

    async def _merge(
        self, db: aiosqlite.Connection, collection: str, doc_id: str, fields: dict[str, Any]
    ) -> bool:
        # Read-modify-write; callers hold _update_lock.
        cursor = await db.execute(
            "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return False
        doc = json.loads(row["body"])
        doc.update(fields)
        await db.execute(
            "UPDATE documents SET body = ? WHERE collection = ? AND doc_id = ?",
            (json.dumps(doc), collection, doc_id),
        )
        await db.commit()
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        db = self._conn()
        try:
            cursor = await db.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            await db.commit()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc
        return (cursor.rowcount or 0) > 0

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        db = self._conn()
        sql, params = build_query_sql(collection, filters, order_by, descending, limit)
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreUnavailableError(str(exc), store="sqlite") from exc
        return [json.loads(row["body"]) for row in rows]

    async def health_check(self) -> bool:
        try:
            if self._db is None:
                return False
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False


assert isinstance(SQLiteDocumentStore(":memory:"), DocumentStore), (
    "SQLiteDocumentStore does not satisfy DocumentStore protocol"
)
