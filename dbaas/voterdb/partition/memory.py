"""
In-memory partition implementation for testing.

This module provides a simple in-memory partition backend for:
- Unit tests
- Integration tests of fan-out and schema evolution
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Same filter/pipeline semantics as the SQLite backend
    - Documents are deep-copied in and out; callers never alias storage

How to change safely:
    - This is test-oriented code, changes don't affect production storage
    - Keep interface compatible with PartitionHandle protocol
    - Add features to help with testing scenarios (latency, failures)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from ..errors import PartitionTransportError
from .base import SortSpec, UpdateOp, apply_update, partition_name
from .query import matches, project, run_pipeline, sort_documents

logger = logging.getLogger(__name__)


class InMemoryPartition:
    """In-memory implementation of PartitionHandle.

    Attributes:
        tenant_key: Constituency key owning this partition
        name: Deterministic partition name (voters_<key>)
        latency: Seconds to sleep per round-trip, to exercise concurrency

    Thread safety:
        Uses an asyncio lock per partition. Safe to use from
        multiple coroutines.

    Example:
        >>> partition = InMemoryPartition(111)
        >>> await partition.connect()
        >>> await partition.insert_many([{"gender": "Male"}, {"gender": "Female"}])
        >>> await partition.count({})
        2
    """

    def __init__(self, tenant_key: int, latency: float = 0.0) -> None:
        self.tenant_key = tenant_key
        self.name = partition_name(tenant_key)
        self.latency = latency
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._failure: Optional[Exception] = None
        self._failure_operation: Optional[str] = None
        self._failure_countdown = 0
        self.call_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryPartition connected", extra={"partition": self.name})

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._docs.clear()
        logger.debug("InMemoryPartition closed", extra={"partition": self.name})

    async def _round_trip(self, operation: str) -> None:
        if not self._connected:
            raise PartitionTransportError(f"Partition {self.name} not connected", self.tenant_key)
        self.call_count += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failure is not None and self._failure_operation in (None, operation):
            if self._failure_countdown > 0:
                self._failure_countdown -= 1
            else:
                raise self._failure

    async def count(self, filter_: Optional[Mapping[str, Any]] = None) -> int:
        await self._round_trip("count")
        return sum(1 for doc in self._docs.values() if matches(doc, filter_))

    async def find(
        self,
        filter_: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        await self._round_trip("find")
        found = [doc for doc in self._docs.values() if matches(doc, filter_)]
        found = sort_documents(found, sort)
        end = None if limit is None else skip + limit
        return [copy.deepcopy(project(doc, projection)) for doc in found[skip:end]]

    async def find_one(self, filter_: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        await self._round_trip("find_one")
        for doc in self._docs.values():
            if matches(doc, filter_):
                return copy.deepcopy(doc)
        return None

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._round_trip("get")
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        await self._round_trip("aggregate")
        return run_pipeline(list(self._docs.values()), pipeline)

    async def insert_many(self, docs: Sequence[Mapping[str, Any]]) -> List[str]:
        await self._round_trip("insert_many")
        ids = []
        async with self._lock:
            for doc in docs:
                stored = copy.deepcopy(dict(doc))
                doc_id = str(stored.get("_id") or uuid.uuid4().hex)
                stored["_id"] = doc_id
                self._docs[doc_id] = stored
                ids.append(doc_id)
        return ids

    async def update_one(
        self,
        doc_id: str,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> Optional[Dict[str, Any]]:
        await self._round_trip("update_one")
        async with self._lock:
            doc = self._docs.get(doc_id)
            if doc is None:
                return None
            apply_update(doc, copy.deepcopy(dict(set_fields or {})), unset_fields)
            return copy.deepcopy(doc)

    async def update_many(
        self,
        filter_: Optional[Mapping[str, Any]],
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> int:
        await self._round_trip("update_many")
        modified = 0
        async with self._lock:
            for doc in self._docs.values():
                if matches(doc, filter_):
                    if apply_update(doc, copy.deepcopy(dict(set_fields or {})), unset_fields):
                        modified += 1
        return modified

    async def bulk_update(self, ops: Sequence[UpdateOp]) -> int:
        await self._round_trip("bulk_update")
        modified = 0
        async with self._lock:
            for op in ops:
                doc = self._docs.get(op.doc_id)
                if doc is None:
                    continue
                if op.guard is not None and not matches(doc, op.guard):
                    continue
                if apply_update(doc, copy.deepcopy(op.set_fields), op.unset_fields):
                    modified += 1
        return modified

    async def iterate(self, batch_size: int = 500) -> AsyncIterator[Dict[str, Any]]:
        ids = list(self._docs.keys())
        for start in range(0, len(ids), batch_size):
            await self._round_trip("iterate")
            for doc_id in ids[start:start + batch_size]:
                doc = self._docs.get(doc_id)
                if doc is not None:
                    yield copy.deepcopy(doc)

    # Testing helpers

    def inject_failure(
        self,
        error: Optional[Exception] = None,
        operation: Optional[str] = None,
        after: int = 0,
    ) -> None:
        """Make round-trips fail until clear_failure() is called.

        Args:
            error: Exception to raise (PartitionTransportError by default)
            operation: Only fail this operation name (e.g. "bulk_update")
            after: Number of matching round-trips that still succeed first
        """
        self._failure = error or PartitionTransportError(
            f"Injected failure on {self.name}", self.tenant_key
        )
        self._failure_operation = operation
        self._failure_countdown = after

    def clear_failure(self) -> None:
        """Remove an injected failure."""
        self._failure = None
        self._failure_operation = None
        self._failure_countdown = 0

    def all_documents(self) -> List[Dict[str, Any]]:
        """Get copies of every stored document (testing helper)."""
        return [copy.deepcopy(doc) for doc in self._docs.values()]

    def document_count(self) -> int:
        """Get stored document count without a round-trip (testing helper)."""
        return len(self._docs)
