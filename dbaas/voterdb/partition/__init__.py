"""
Partition abstraction for VoterDB.

This module provides a pluggable partition backend interface supporting:
- SQLite (one database file per constituency)
- In-memory (for testing)

Each partition holds the Member documents of exactly one TenantKey.
There are no cross-partition foreign keys and no cross-partition transactions.

Invariants:
    - Partition names follow voters_<tenant_key>
    - Filters match unwrapped values, so both attribute encodings match
    - Transport failures surface as PartitionTransportError

How to change safely:
    - New backends must implement the PartitionHandle protocol
    - Run the shared backend tests against every implementation
"""

from .base import (
    PartitionHandle,
    PartitionTransportError,
    UpdateOp,
    apply_update,
    create_partition,
    partition_name,
)
from .memory import InMemoryPartition
from .query import QueryError, matches, run_pipeline
from .sqlite import SqlitePartition

__all__ = [
    # Protocol and types
    "PartitionHandle",
    "UpdateOp",
    "PartitionTransportError",
    "QueryError",
    # Helpers
    "apply_update",
    "matches",
    "run_pipeline",
    "partition_name",
    # Factory
    "create_partition",
    # Implementations
    "InMemoryPartition",
    "SqlitePartition",
]
