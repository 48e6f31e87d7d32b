"""
SQLite partition store for VoterDB.

This module manages one SQLite database per TenantKey, each holding the
Member documents of one constituency as JSON bodies:
- Document CRUD and batched conditional updates
- Filter, sort and aggregation via partition.query, narrowed in SQL first
- Streaming iteration in fixed-size batches

Filters are narrowed in SQL before they reach Python. build_prefilter()
turns top-level equality, $in and $exists on plain attribute names (and
on _id) into json_extract/json_type predicates. Attributes listed in
indexed_fields get an expression index over the same expression. Every
candidate row is still checked with matches(), so the SQL predicate only
needs to be a superset. When it is exact, COUNT, LIMIT and OFFSET run in
SQL as well.

Invariants:
    - One SQLite file per tenant key, named by a deterministic pattern
    - Every write batch runs in a single transaction
    - sqlite3 errors never leak; they surface as PartitionTransportError
    - datetime values round-trip through {"$date": "<iso8601>"}
    - A prefilter never drops a document that matches() accepts

How to change safely:
    - Schema migrations must be backward compatible
    - Filter semantics live in partition.query; a new SQL translation must
      select a superset of what matches() accepts, and may only mark
      itself exact when the two agree on every stored shape
    - Attribute names are inlined into SQL only after _ATTRIBUTE_NAME
    - Use transactions for all write operations

Table schema:
    members:
        - doc_id TEXT PRIMARY KEY
        - seq INTEGER (insertion order)
        - body_json TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
    indexes:
        - idx_members_seq on seq
        - idx_members_attr_<name> on attribute_expression(<name>)
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

from ..errors import PartitionTransportError
from .base import SortSpec, UpdateOp, apply_update, partition_name
from .query import (
    is_operator_dict,
    matches,
    project,
    run_pipeline,
    sort_documents,
    validate_filter,
)

logger = logging.getLogger(__name__)

_ATTRIBUTE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _encode_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return {"$date": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and "$date" in obj and isinstance(obj["$date"], str):
        try:
            return datetime.fromisoformat(obj["$date"])
        except ValueError:
            return obj
    return obj


def dumps(value: Any) -> str:
    """Serialize a document body, encoding datetimes."""
    return json.dumps(value, default=_encode_default)


def loads(text: str) -> Any:
    """Deserialize a document body, decoding datetimes."""
    return json.loads(text, object_hook=_decode_hook)


# =============================================================================
# SQL prefilter
# =============================================================================


def attribute_expression(name: str) -> str:
    """SQL expression for the unwrapped scalar value of a top-level attribute.

    Reads ``<name>.value`` first so legacy-wrapped and flat values land on
    the same index entry. Arrays come back as their JSON text.
    """
    if not _ATTRIBUTE_NAME.match(name):
        raise ValueError(f"Attribute name cannot be used in SQL: {name!r}")
    return (
        f"COALESCE(json_extract(body_json, '$.{name}.value'), "
        f"json_extract(body_json, '$.{name}'))"
    )


def _sql_scalar(value: Any) -> bool:
    # bool is excluded: json_extract reports JSON true/false as 1/0
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


@dataclass
class Prefilter:
    """SQL WHERE clause narrowing a filter to candidate rows.

    Attributes:
        clauses: SQL conditions joined with AND
        params: Positional parameters for the clauses
        exact: Whether the clauses select exactly the matching rows
    """

    clauses: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)
    exact: bool = True

    @property
    def where(self) -> str:
        return " AND ".join(self.clauses) if self.clauses else "1=1"

    def add(self, clause: str, params: Sequence[Any] = (), exact: bool = True) -> None:
        self.clauses.append(clause)
        self.params.extend(params)
        if not exact:
            self.exact = False


def build_prefilter(filter_: Optional[Mapping[str, Any]]) -> Prefilter:
    """Translate the SQL-expressible part of a filter.

    Raises:
        QueryError: If the filter uses an unsupported operator
    """
    validate_filter(filter_)
    prefilter = Prefilter()
    _translate(prefilter, filter_ or {})
    return prefilter


def _translate(prefilter: Prefilter, filter_: Mapping[str, Any]) -> None:
    for key, condition in filter_.items():
        if key == "$and":
            for sub in condition:
                _translate(prefilter, sub)
        elif key == "_id":
            _translate_id(prefilter, condition)
        elif key.startswith("$") or not _ATTRIBUTE_NAME.match(key):
            # $or, $nor and dotted paths are left to matches()
            prefilter.exact = False
        else:
            _translate_attribute(prefilter, key, condition)


def _translate_id(prefilter: Prefilter, condition: Any) -> None:
    if isinstance(condition, str):
        prefilter.add("doc_id = ?", [condition])
    elif (
        is_operator_dict(condition)
        and list(condition) == ["$in"]
        and isinstance(condition["$in"], (list, tuple))
        and all(isinstance(option, str) for option in condition["$in"])
    ):
        options = list(condition["$in"])
        if not options:
            prefilter.add("0")
        else:
            placeholders = ", ".join(["?"] * len(options))
            prefilter.add(f"doc_id IN ({placeholders})", options)
    else:
        prefilter.exact = False


def _translate_attribute(prefilter: Prefilter, name: str, condition: Any) -> None:
    operators = condition.items() if is_operator_dict(condition) else [("$eq", condition)]
    expr = attribute_expression(name)
    # JSON array text sorts between '[' and '\'; arrays match by element
    arrays = f"({expr} >= '[' AND {expr} < '\\')"

    for op, expected in operators:
        if op == "$exists":
            test = "IS NOT NULL" if expected else "IS NULL"
            prefilter.add(f"json_type(body_json, '$.{name}') {test}")
        elif op == "$eq" and _sql_scalar(expected):
            prefilter.add(f"({expr} = ? OR {arrays})", [expected], exact=False)
        elif op == "$in" and isinstance(expected, (list, tuple)) and all(
            _sql_scalar(option) for option in expected
        ):
            if not expected:
                prefilter.add("0")
            else:
                placeholders = ", ".join(["?"] * len(expected))
                prefilter.add(f"({expr} IN ({placeholders}) OR {arrays})", expected, exact=False)
        else:
            prefilter.exact = False


class SqlitePartition:
    """Per-constituency SQLite store for Member documents.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> partition = SqlitePartition(111, "/var/lib/voterdb")
        >>> await partition.connect()
        >>> ids = await partition.insert_many([{"name": {"english": "Ravi"}}])
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        tenant_key: int,
        data_dir: str,
        db_pattern: str = "voters_{tenant_key}.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        indexed_fields: Sequence[str] = (),
        scan_batch_size: int = 500,
    ) -> None:
        """Initialize the partition store.

        Args:
            tenant_key: Constituency key
            data_dir: Directory for SQLite database files
            db_pattern: File name pattern, formatted with tenant_key
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            indexed_fields: Attributes to create expression indexes for
            scan_batch_size: Rows per batch in update_many

        Raises:
            ValueError: If an indexed field is not a plain attribute name
        """
        self.tenant_key = tenant_key
        self.name = partition_name(tenant_key)
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_pattern.format(tenant_key=tenant_key)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.indexed_fields = tuple(indexed_fields)
        for name in self.indexed_fields:
            attribute_expression(name)
        self.scan_batch_size = scan_batch_size
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _transport_error(self, action: str, error: Exception) -> PartitionTransportError:
        logger.error(
            f"Partition {self.name} failed to {action}: {error}",
            extra={"tenant_key": self.tenant_key, "db_path": str(self.db_path)},
        )
        return PartitionTransportError(
            f"Partition {self.name} failed to {action}: {error}", self.tenant_key
        )

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection for this partition.

        Yields:
            SQLite connection

        Raises:
            PartitionTransportError: If not connected or on any sqlite error
        """
        if not self._connected:
            raise PartitionTransportError(f"Partition {self.name} not connected", self.tenant_key)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise self._transport_error("open database", e) from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise self._transport_error("execute query", e) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS members (
                doc_id TEXT PRIMARY KEY,
                seq INTEGER NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_members_seq ON members(seq);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)
        for name in self.indexed_fields:
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_members_attr_{name} "
                f"ON members({attribute_expression(name)})"
            )

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._connected = True
        try:
            with self._get_connection() as conn:
                self._create_schema(conn)
        except PartitionTransportError:
            self._connected = False
            raise
        logger.info(f"Initialized partition database: {self.name}")

    async def close(self) -> None:
        self._connected = False

    def _scan(
        self,
        conn: sqlite3.Connection,
        prefilter: Optional[Prefilter] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> Iterator[dict[str, Any]]:
        """Yield candidate bodies in insertion order.

        LIMIT and OFFSET apply to the SQL rows, so callers only pass them
        for exact prefilters.
        """
        prefilter = prefilter or Prefilter()
        sql = f"SELECT body_json FROM members WHERE {prefilter.where} ORDER BY seq"
        params = list(prefilter.params)
        if limit is not None or skip:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, skip])
        for row in conn.execute(sql, params):
            yield loads(row["body_json"])

    async def count(self, filter_: Optional[Mapping[str, Any]] = None) -> int:
        prefilter = build_prefilter(filter_)
        with self._get_connection() as conn:
            if prefilter.exact:
                return conn.execute(
                    f"SELECT COUNT(*) FROM members WHERE {prefilter.where}", prefilter.params
                ).fetchone()[0]
            return sum(1 for doc in self._scan(conn, prefilter) if matches(doc, filter_))

    async def find(
        self,
        filter_: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        prefilter = build_prefilter(filter_)
        with self._get_connection() as conn:
            if sort:
                found = sort_documents(
                    (doc for doc in self._scan(conn, prefilter) if matches(doc, filter_)), sort
                )
                end = None if limit is None else skip + limit
                return [project(doc, projection) for doc in found[skip:end]]

            if prefilter.exact:
                docs = self._scan(conn, prefilter, limit=limit, skip=skip)
                return [project(doc, projection) for doc in docs]

            results: list[dict[str, Any]] = []
            if limit == 0:
                return results
            skipped = 0
            for doc in self._scan(conn, prefilter):
                if not matches(doc, filter_):
                    continue
                if skipped < skip:
                    skipped += 1
                    continue
                results.append(project(doc, projection))
                if limit is not None and len(results) >= limit:
                    break
            return results

    async def find_one(self, filter_: Optional[Mapping[str, Any]] = None) -> Optional[dict[str, Any]]:
        found = await self.find(filter_, limit=1)
        return found[0] if found else None

    async def get(self, doc_id: str) -> Optional[dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT body_json FROM members WHERE doc_id = ?", (doc_id,)
            ).fetchone()
            return loads(row["body_json"]) if row else None

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        # A leading $match narrows the rows read; run_pipeline still applies it
        prefilter = None
        if pipeline and isinstance(pipeline[0], Mapping) and list(pipeline[0]) == ["$match"]:
            prefilter = build_prefilter(pipeline[0]["$match"])
        with self._get_connection() as conn:
            return run_pipeline(self._scan(conn, prefilter), pipeline)

    async def insert_many(self, docs: Sequence[Mapping[str, Any]]) -> list[str]:
        now = int(time.time() * 1000)
        ids = []
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                next_seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM members").fetchone()[0]
                for doc in docs:
                    body = dict(doc)
                    doc_id = str(body.get("_id") or uuid.uuid4().hex)
                    body["_id"] = doc_id
                    next_seq += 1
                    conn.execute(
                        """
                        INSERT INTO members (doc_id, seq, body_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (doc_id, next_seq, dumps(body), now, now),
                    )
                    ids.append(doc_id)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Inserted members",
            extra={"partition": self.name, "count": len(ids)},
        )
        return ids

    def _write_body(self, conn: sqlite3.Connection, doc_id: str, body: dict[str, Any]) -> None:
        conn.execute(
            "UPDATE members SET body_json = ?, updated_at = ? WHERE doc_id = ?",
            (dumps(body), int(time.time() * 1000), doc_id),
        )

    async def update_one(
        self,
        doc_id: str,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> Optional[dict[str, Any]]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT body_json FROM members WHERE doc_id = ?", (doc_id,)
                ).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    return None

                body = loads(row["body_json"])
                if apply_update(body, dict(set_fields or {}), unset_fields):
                    self._write_body(conn, doc_id, body)
                conn.execute("COMMIT")
                return body

            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def update_many(
        self,
        filter_: Optional[Mapping[str, Any]],
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> int:
        """Update every matching document, scan_batch_size rows per transaction.

        Batches follow the seq cursor, so a document is visited at most once
        even when the update changes whether it matches. Batches already
        committed stay committed if a later one fails.
        """
        prefilter = build_prefilter(filter_)
        updates = dict(set_fields or {})
        modified = 0
        last_seq = 0
        with self._get_connection() as conn:
            while True:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    rows = conn.execute(
                        f"SELECT seq, doc_id, body_json FROM members "
                        f"WHERE seq > ? AND {prefilter.where} ORDER BY seq LIMIT ?",
                        [last_seq, *prefilter.params, self.scan_batch_size],
                    ).fetchall()
                    for row in rows:
                        last_seq = row["seq"]
                        body = loads(row["body_json"])
                        if not matches(body, filter_):
                            continue
                        if apply_update(body, updates, unset_fields):
                            self._write_body(conn, row["doc_id"], body)
                            modified += 1
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                if len(rows) < self.scan_batch_size:
                    break

        logger.debug(
            "Updated matching members",
            extra={"partition": self.name, "modified": modified},
        )
        return modified

    async def bulk_update(self, ops: Sequence[UpdateOp]) -> int:
        modified = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for op in ops:
                    row = conn.execute(
                        "SELECT body_json FROM members WHERE doc_id = ?", (op.doc_id,)
                    ).fetchone()
                    if not row:
                        continue
                    body = loads(row["body_json"])
                    if op.guard is not None and not matches(body, op.guard):
                        continue
                    if apply_update(body, op.set_fields, op.unset_fields):
                        self._write_body(conn, op.doc_id, body)
                        modified += 1
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Applied update batch",
            extra={"partition": self.name, "ops": len(ops), "modified": modified},
        )
        return modified

    async def iterate(self, batch_size: int = 500) -> AsyncIterator[dict[str, Any]]:
        last_seq = 0
        while True:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT seq, body_json FROM members WHERE seq > ? ORDER BY seq LIMIT ?",
                    (last_seq, batch_size),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                last_seq = row["seq"]
                yield loads(row["body_json"])

    def get_db_path(self) -> Path:
        """Get the database file path for this partition."""
        return self.db_path
