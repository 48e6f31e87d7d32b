"""
VoterDB - Constituency-partitioned member store with online schema evolution.

This package implements the data layer behind the voter management backend:
- One physical partition of Member documents per constituency (TenantKey)
- A router resolving numeric keys or constituency aliases to partitions
- A fan-out query engine merging results across every partition
- Field metadata stored globally, plus schema-evolution operations that
  rewrite documents across all partitions in batches

Architecture:
    ┌─────────────┐     ┌───────────────┐     ┌──────────────────────┐
    │  HTTP layer │────▶│ MemberService │────▶│ FieldSchemaRegistry  │
    │ (external)  │     │   (facade)    │     │  (schema evolution)  │
    └─────────────┘     └───────┬───────┘     └──────────┬───────────┘
                                │                        │
                                ▼                        ▼
                        ┌───────────────┐       ┌─────────────────┐
                        │  ShardRouter  │       │ FanoutQuery     │
                        └───────┬───────┘       │ Engine          │
                                │               └────────┬────────┘
                                ▼                        │
                   ┌──────────────────────────┐          │
                   │ TenantPartitionRegistry  │◀─────────┘
                   └────────────┬─────────────┘
                                │
              ┌─────────────────┼─────────────────┐
              ▼                 ▼                 ▼
         voters_101        voters_102   ...  voters_126

Invariants:
    - The tenant set is fixed at startup and never changes while serving
    - Readers see the same logical value for flat and legacy-wrapped attributes
    - Schema-evolution writers only produce the flat encoding
    - Fan-out errors abort the whole call; there is no silent partial result

How to change safely:
    - Route every attribute read through normalizer.unwrap()
    - Keep merge order by ascending TenantKey, never completion order
    - Batched writes must report counts so partial completion is visible
"""

from ._version import __version__

__all__ = ["__version__"]
