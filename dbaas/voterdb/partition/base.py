"""
Base protocol and types for the partition abstraction.

This module defines the PartitionHandle protocol that every backend must
implement, along with the UpdateOp type used for batched writes.

A partition is one physical collection of Member documents for one
TenantKey. Document ids are unique only within their partition.

Invariants:
    - Every operation is a round-trip and may raise PartitionTransportError
    - Filters and pipelines have identical semantics in every backend
      (both delegate to partition.query)
    - modified counts only include documents whose content actually changed
    - bulk_update applies ops in order; a failure leaves earlier ops of
      previous batches committed

How to change safely:
    - Protocol changes require updating all implementations
    - Keep memory and sqlite backends behaviourally identical
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
    TYPE_CHECKING,
)
import logging

from ..errors import PartitionTransportError

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)

SortSpec = Sequence[Tuple[str, int]]


def partition_name(tenant_key: int) -> str:
    """Deterministic partition name for a tenant key."""
    return f"voters_{tenant_key}"


@dataclass
class UpdateOp:
    """A single-document update within a batch.

    Attributes:
        doc_id: Target document id
        set_fields: Attributes to set (flat values)
        unset_fields: Attributes to remove
        guard: Optional filter the document must still match; the update is
            skipped when it no longer does (conditional update)
    """
    doc_id: str
    set_fields: Dict[str, Any] = field(default_factory=dict)
    unset_fields: Tuple[str, ...] = ()
    guard: Optional[Dict[str, Any]] = None


def apply_update(
    doc: Dict[str, Any],
    set_fields: Mapping[str, Any],
    unset_fields: Sequence[str],
) -> bool:
    """Apply $set/$unset to a document in place.

    Returns:
        True if the document content changed
    """
    changed = False
    for key, value in set_fields.items():
        if key not in doc or doc[key] != value or type(doc[key]) is not type(value):
            doc[key] = value
            changed = True
    for key in unset_fields:
        if key in doc:
            del doc[key]
            changed = True
    return changed


@runtime_checkable
class PartitionHandle(Protocol):
    """Protocol for partition backends.

    Example:
        >>> partition = InMemoryPartition(111)
        >>> await partition.connect()
        >>> ids = await partition.insert_many([{"gender": "Male"}])
        >>> await partition.count({"gender": "Male"})
        1
    """

    tenant_key: int
    name: str

    @abstractmethod
    async def connect(self) -> None:
        """Open the partition (create storage if needed).

        Raises:
            PartitionTransportError: If the partition cannot be opened
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def count(self, filter_: Optional[Mapping[str, Any]] = None) -> int:
        """Count documents matching a filter."""
        ...

    @abstractmethod
    async def find(
        self,
        filter_: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Find documents matching a filter.

        Without sort, documents come back in insertion order.
        """
        ...

    @abstractmethod
    async def find_one(self, filter_: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Return the first matching document, or None."""
        ...

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document by id, or None."""
        ...

    @abstractmethod
    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Run an aggregation pipeline over this partition."""
        ...

    @abstractmethod
    async def insert_many(self, docs: Sequence[Mapping[str, Any]]) -> List[str]:
        """Insert documents, assigning ids where missing.

        Returns:
            Ids of the inserted documents in input order
        """
        ...

    @abstractmethod
    async def update_one(
        self,
        doc_id: str,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> Optional[Dict[str, Any]]:
        """Update one document.

        Returns:
            The updated document, or None if not found
        """
        ...

    @abstractmethod
    async def update_many(
        self,
        filter_: Optional[Mapping[str, Any]],
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Sequence[str] = (),
    ) -> int:
        """Update every matching document.

        Returns:
            Number of documents modified
        """
        ...

    @abstractmethod
    async def bulk_update(self, ops: Sequence[UpdateOp]) -> int:
        """Apply a batch of single-document updates in order.

        Returns:
            Number of documents modified
        """
        ...

    @abstractmethod
    def iterate(self, batch_size: int = 500) -> AsyncIterator[Dict[str, Any]]:
        """Stream every document, reading batch_size documents per round-trip."""
        ...


def create_partition(tenant_key: int, config: "StorageConfig") -> PartitionHandle:
    """Factory function to create a partition handle from configuration.

    Args:
        tenant_key: Constituency key
        config: Storage configuration

    Returns:
        Appropriate PartitionHandle implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryPartition
    from .sqlite import SqlitePartition

    if config.backend == StorageBackend.MEMORY:
        return InMemoryPartition(tenant_key)
    elif config.backend == StorageBackend.SQLITE:
        return SqlitePartition(
            tenant_key,
            data_dir=config.data_dir,
            db_pattern=config.partition_db_pattern,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            indexed_fields=config.indexed_fields,
            scan_batch_size=config.scan_batch_size,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {config.backend}")


__all__ = [
    "PartitionHandle",
    "PartitionTransportError",
    "SortSpec",
    "UpdateOp",
    "apply_update",
    "create_partition",
    "partition_name",
]
