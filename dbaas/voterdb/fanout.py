"""
Fan-out query engine for VoterDB.

Executes one logical query against a single partition, or against every
partition, and merges the results into one answer.

Execution model:
    - count_across_all, count_by_tenant and aggregate_across_all run one task
      per partition, bounded by a semaphore of min(max_workers, #partitions)
    - find_across_all pages through partitions in ascending key order until
      the global limit is reached
    - find_one_across_all and find_by_id_across_all probe partitions one at a
      time in ascending key order and stop at the first hit

Invariants:
    - Partial results are never returned; the first partition failure
      cancels pending work and propagates
    - Merged results are always ordered by ascending TenantKey, whatever
      order the partitions answered in
    - Single-partition calls with an unknown key raise UnknownTenantError
      before any round-trip

How to change safely:
    - Keep the merge order deterministic; callers page on it
    - Any new concurrent operation must go through _run_all() so failure
      handling stays identical
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .normalizer import actual, flatten_document
from .partition.base import PartitionHandle, SortSpec
from .tenancy.registry import TenantPartitionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Member:
    """A member document together with the partition it came from.

    Attributes:
        tenant_key: Partition the document lives in
        doc_id: Document id, unique only within its partition
        attributes: Raw document content (either encoding)
    """

    tenant_key: int
    doc_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, tenant_key: int, doc: Mapping[str, Any]) -> Member:
        return cls(tenant_key=tenant_key, doc_id=str(doc.get("_id")), attributes=dict(doc))

    def value(self, name: str) -> Any:
        """Logical (unwrapped) value of an attribute, None when absent."""
        return actual(self.attributes.get(name))

    def has(self, name: str) -> bool:
        return name in self.attributes

    def to_dict(self, flatten: bool = True) -> Dict[str, Any]:
        """Convert to dictionary representation.

        Args:
            flatten: Unwrap legacy-wrapped attributes
        """
        body = flatten_document(self.attributes) if flatten else copy.deepcopy(self.attributes)
        body["tenant_key"] = self.tenant_key
        return body


class CancellationToken:
    """Shared flag telling in-flight fan-out tasks to stop early."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()


class FanoutQueryEngine:
    """Runs queries against one or all partitions.

    Example:
        >>> engine = FanoutQueryEngine(registry, max_workers=8)
        >>> await engine.count_across_all({"gender": "Male"})
        8
        >>> await engine.count_by_tenant({"gender": "Male"})
        {101: 3, 102: 5}
    """

    def __init__(
        self,
        registry: TenantPartitionRegistry,
        max_workers: int = 8,
        partition_sample: int = 500,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Tenant registry providing partition handles
            max_workers: Upper bound on concurrently queried partitions
            partition_sample: Documents fetched per partition per round-trip
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if partition_sample < 1:
            raise ValueError("partition_sample must be at least 1")
        self.registry = registry
        self.max_workers = max_workers
        self.partition_sample = partition_sample

    # =========================================================================
    # Single partition
    # =========================================================================

    async def count_in(self, tenant_key: int, filter_: Optional[Mapping[str, Any]] = None) -> int:
        return await self.registry.resolve(tenant_key).count(filter_)

    async def find_in(
        self,
        tenant_key: int,
        filter_: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[SortSpec] = None,
    ) -> List[Member]:
        handle = self.registry.resolve(tenant_key)
        docs = await handle.find(filter_, limit=limit, skip=skip, sort=sort)
        return [Member.from_document(tenant_key, doc) for doc in docs]

    async def find_one_in(
        self,
        tenant_key: int,
        filter_: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Member]:
        doc = await self.registry.resolve(tenant_key).find_one(filter_)
        return Member.from_document(tenant_key, doc) if doc is not None else None

    async def aggregate_in(
        self,
        tenant_key: int,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        return await self.registry.resolve(tenant_key).aggregate(pipeline)

    # =========================================================================
    # All partitions
    # =========================================================================

    async def _run_all(
        self,
        operation: str,
        call: Callable[[PartitionHandle], Awaitable[T]],
    ) -> Dict[int, T]:
        """Run call against every partition concurrently.

        Returns:
            Results keyed by tenant key, in ascending key order

        Raises:
            The first partition failure (lowest key among those that failed
            before cancellation took effect)
        """
        partitions = list(self.registry.partitions())
        if not partitions:
            return {}

        token = CancellationToken()
        semaphore = asyncio.Semaphore(min(self.max_workers, len(partitions)))

        async def run_one(handle: PartitionHandle) -> T:
            async with semaphore:
                token.raise_if_cancelled()
                try:
                    return await call(handle)
                except Exception:
                    # Set before the semaphore is released so queued tasks stop
                    token.cancel()
                    raise

        tasks = {asyncio.create_task(run_one(handle)): key for key, handle in partitions}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            token.cancel()
            for task in tasks:
                task.cancel()
            raise

        failures = sorted(
            ((tasks[task], task.exception()) for task in done
             if not task.cancelled() and task.exception() is not None),
            key=lambda failure: failure[0],
        )

        if failures:
            token.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            failed_key, error = failures[0]
            logger.error(
                f"Fan-out {operation} failed on tenant {failed_key}: {error}",
                extra={
                    "operation": operation,
                    "tenant_key": failed_key,
                    "cancelled": len(pending),
                },
            )
            raise error

        results = {tasks[task]: task.result() for task in done}
        return {key: results[key] for key, _ in partitions}

    async def count_across_all(self, filter_: Optional[Mapping[str, Any]] = None) -> int:
        """Total number of matching documents across every partition."""
        per_tenant = await self.count_by_tenant(filter_)
        return sum(per_tenant.values())

    async def count_by_tenant(self, filter_: Optional[Mapping[str, Any]] = None) -> Dict[int, int]:
        """Matching document count per partition, ascending key order."""
        return await self._run_all("count", lambda handle: handle.count(filter_))

    async def aggregate_across_all(
        self,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Run a pipeline in every partition and concatenate the results.

        Per-partition results are not re-grouped; a $group stage yields one
        group set per partition.
        """
        per_tenant = await self._run_all("aggregate", lambda handle: handle.aggregate(pipeline))
        merged: List[Dict[str, Any]] = []
        for rows in per_tenant.values():
            merged.extend(rows)
        return merged

    async def find_across_all(
        self,
        filter_: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[SortSpec] = None,
    ) -> List[Member]:
        """Find matching documents across partitions.

        Partitions are read in ascending key order, each in pages of at most
        partition_sample documents, and concatenated. skip applies to that
        partition-grouped sequence; sort applies within each partition.
        limit=None scans everything.
        """
        if limit is not None and limit <= 0:
            return []

        found: List[Member] = []
        to_skip = max(skip, 0)

        for key, handle in self.registry.partitions():
            offset = 0
            if to_skip:
                available = await handle.count(filter_)
                if available <= to_skip:
                    to_skip -= available
                    continue
                offset, to_skip = to_skip, 0

            while True:
                remaining = None if limit is None else limit - len(found)
                page_size = (
                    self.partition_sample
                    if remaining is None
                    else min(remaining, self.partition_sample)
                )
                docs = await handle.find(filter_, limit=page_size, skip=offset, sort=sort)
                found.extend(Member.from_document(key, doc) for doc in docs)
                offset += len(docs)

                if limit is not None and len(found) >= limit:
                    return found
                if len(docs) < page_size:
                    break

        return found

    async def find_one_across_all(
        self,
        filter_: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Tuple[Member, int]]:
        """First matching document, probing partitions in ascending key order."""
        for key, handle in self.registry.partitions():
            doc = await handle.find_one(filter_)
            if doc is not None:
                return Member.from_document(key, doc), key
        return None

    async def find_by_id_across_all(self, doc_id: str) -> Optional[Tuple[Member, int]]:
        """Locate a document by id when its partition is unknown.

        Ids are only unique per partition; the lowest key holding the id wins.
        """
        for key, handle in self.registry.partitions():
            doc = await handle.get(doc_id)
            if doc is not None:
                return Member.from_document(key, doc), key
        return None
