"""
Tenancy module for VoterDB.

This module maps constituencies to partitions:
- TenantPartitionRegistry: fixed TenantKey -> partition handle map
- ShardRouter: numeric key or alias -> partition handle

Invariants:
    - The tenant set is fixed at construction
    - Alias rules live only in ShardRouter
"""

from .registry import TenantPartitionRegistry
from .router import ShardRouter

__all__ = [
    "TenantPartitionRegistry",
    "ShardRouter",
]
