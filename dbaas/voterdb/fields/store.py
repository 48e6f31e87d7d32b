"""
Field metadata store for VoterDB.

Field descriptors live in a single collection (``voter_fields``) shared by
every tenant, keyed uniquely by field name. Two backends are provided:
- InMemoryFieldStore for tests and local development
- SqliteFieldStore persisting descriptors in one SQLite file

Invariants:
    - At most one descriptor per name (enforced by a UNIQUE constraint)
    - A unique-key violation surfaces as DuplicateFieldNameError so callers
      can choose between failing and merging
    - Storage failures surface as MetadataStoreError

How to change safely:
    - Keep both backends behaviourally identical; tests run against both
    - Never silently overwrite an existing descriptor on insert or rename

Table schema:
    voter_fields:
        - name TEXT PRIMARY KEY
        - descriptor_json TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from ..errors import VoterDbError
from ..partition.sqlite import dumps, loads
from .types import FieldDescriptor, now_ms

logger = logging.getLogger(__name__)


class MetadataStoreError(VoterDbError):
    """Field metadata storage failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="METADATA_STORE_ERROR")


class DuplicateFieldNameError(VoterDbError):
    """Unique-key violation on the descriptor name."""

    def __init__(self, field_name: str) -> None:
        super().__init__(
            f"Field descriptor '{field_name}' already exists",
            code="DUPLICATE_KEY",
            details={"field_name": field_name},
        )
        self.field_name = field_name


class InMemoryFieldStore:
    """In-memory field metadata store.

    Thread safety:
        Uses an asyncio lock so concurrent renames serialize the write.
    """

    def __init__(self) -> None:
        self._descriptors: dict[str, FieldDescriptor] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def get(self, name: str) -> FieldDescriptor | None:
        return self._descriptors.get(name)

    async def list_all(self) -> list[FieldDescriptor]:
        return [self._descriptors[name] for name in sorted(self._descriptors)]

    async def insert(self, descriptor: FieldDescriptor) -> FieldDescriptor:
        async with self._lock:
            if descriptor.name in self._descriptors:
                raise DuplicateFieldNameError(descriptor.name)
            self._descriptors[descriptor.name] = descriptor
        return descriptor

    async def update(self, descriptor: FieldDescriptor) -> FieldDescriptor | None:
        async with self._lock:
            if descriptor.name not in self._descriptors:
                return None
            self._descriptors[descriptor.name] = descriptor
        return descriptor

    async def rename(self, old_name: str, new_name: str) -> FieldDescriptor | None:
        async with self._lock:
            existing = self._descriptors.get(old_name)
            if existing is None:
                return None
            if new_name in self._descriptors:
                raise DuplicateFieldNameError(new_name)
            renamed = replace(existing, name=new_name, updated_at=now_ms())
            del self._descriptors[old_name]
            self._descriptors[new_name] = renamed
        return renamed

    async def delete(self, name: str) -> bool:
        async with self._lock:
            return self._descriptors.pop(name, None) is not None

    async def close(self) -> None:
        pass


class SqliteFieldStore:
    """SQLite-backed field metadata store.

    Each operation opens its own connection, like the partition backend.

    Example:
        >>> store = SqliteFieldStore("/var/lib/voterdb/voter_fields.db")
        >>> await store.initialize()
        >>> await store.insert(FieldDescriptor(name="score"))
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MetadataStoreError(f"Cannot create field metadata directory: {e}") from e
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Cannot open field metadata store: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the metadata table if missing."""
        try:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS voter_fields (
                        name TEXT PRIMARY KEY,
                        descriptor_json TEXT NOT NULL,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL
                    );
                """)
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to initialize field metadata store: {e}") from e
        logger.info("Initialized field metadata store", extra={"path": str(self.db_path)})

    @staticmethod
    def _row_to_descriptor(row: sqlite3.Row) -> FieldDescriptor:
        return FieldDescriptor.from_dict(loads(row["descriptor_json"]))

    async def get(self, name: str) -> FieldDescriptor | None:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT descriptor_json FROM voter_fields WHERE name = ?", (name,)
                ).fetchone()
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to read field '{name}': {e}") from e
        return self._row_to_descriptor(row) if row else None

    async def list_all(self) -> list[FieldDescriptor]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT descriptor_json FROM voter_fields ORDER BY name"
                ).fetchall()
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to list fields: {e}") from e
        return [self._row_to_descriptor(row) for row in rows]

    async def insert(self, descriptor: FieldDescriptor) -> FieldDescriptor:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO voter_fields (name, descriptor_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        descriptor.name,
                        dumps(descriptor.to_dict()),
                        descriptor.created_at,
                        descriptor.updated_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateFieldNameError(descriptor.name) from e
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to insert field '{descriptor.name}': {e}") from e
        return descriptor

    async def update(self, descriptor: FieldDescriptor) -> FieldDescriptor | None:
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE voter_fields SET descriptor_json = ?, updated_at = ?
                    WHERE name = ?
                    """,
                    (dumps(descriptor.to_dict()), descriptor.updated_at, descriptor.name),
                )
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to update field '{descriptor.name}': {e}") from e
        return descriptor if cursor.rowcount > 0 else None

    async def rename(self, old_name: str, new_name: str) -> FieldDescriptor | None:
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT descriptor_json FROM voter_fields WHERE name = ?", (old_name,)
                    ).fetchone()
                    if not row:
                        conn.execute("ROLLBACK")
                        return None

                    renamed = replace(
                        self._row_to_descriptor(row), name=new_name, updated_at=now_ms()
                    )
                    conn.execute(
                        """
                        UPDATE voter_fields SET name = ?, descriptor_json = ?, updated_at = ?
                        WHERE name = ?
                        """,
                        (new_name, dumps(renamed.to_dict()), renamed.updated_at, old_name),
                    )
                    conn.execute("COMMIT")
                    return renamed
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.IntegrityError as e:
            raise DuplicateFieldNameError(new_name) from e
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to rename field '{old_name}': {e}") from e

    async def delete(self, name: str) -> bool:
        try:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM voter_fields WHERE name = ?", (name,))
        except sqlite3.Error as e:
            raise MetadataStoreError(f"Failed to delete field '{name}': {e}") from e
        return cursor.rowcount > 0

    async def close(self) -> None:
        pass
