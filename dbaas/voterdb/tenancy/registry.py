"""
Tenant Partition Registry for VoterDB.

The TenantPartitionRegistry is the central authority for which partitions
exist. It provides:
- Resolution of a TenantKey to its resident partition handle
- The full, ordered, fixed set of tenant keys
- Lifecycle (connect/close) of every partition handle

Invariants:
    - The tenant set comes from injected configuration, never a global
    - The registry is immutable after construction; no tenant can be added
      or removed while serving
    - resolve() never fails for a configured key and always fails with
      UnknownTenantError for any other value
    - all_tenant_keys() is ascending and duplicate-free

How to change safely:
    - Changing the tenant set means a new deployment with a new TenantConfig
    - Never reach into _partitions from outside; use resolve()/partitions()

Example:
    >>> registry = TenantPartitionRegistry(TenantConfig(tenant_keys=(101, 102)), InMemoryPartition)
    >>> await registry.connect()
    >>> registry.resolve(101).name
    'voters_101'
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Optional, Tuple

from ..config import TenantConfig
from ..errors import UnknownTenantError
from ..partition.base import PartitionHandle

logger = logging.getLogger(__name__)

PartitionFactory = Callable[[int], PartitionHandle]


class TenantPartitionRegistry:
    """Maps each known TenantKey to its partition handle.

    Attributes:
        config: The tenant configuration the registry was built from
    """

    def __init__(self, config: TenantConfig, partition_factory: PartitionFactory) -> None:
        """Build one partition handle per configured tenant key.

        Args:
            config: Fixed tenant configuration
            partition_factory: Callable creating a handle for a tenant key

        Raises:
            ValueError: If the configuration is invalid
        """
        config.validate()
        self.config = config
        self._keys: Tuple[int, ...] = tuple(sorted(config.tenant_keys))
        self._partitions: Mapping[int, PartitionHandle] = MappingProxyType(
            {key: partition_factory(key) for key in self._keys}
        )
        self._names: Mapping[int, str] = MappingProxyType(dict(config.names))
        self._connected = False
        logger.debug(f"Tenant registry built with {len(self._keys)} partitions")

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open every partition.

        Raises:
            PartitionTransportError: If any partition cannot be opened
        """
        for key in self._keys:
            await self._partitions[key].connect()
        self._connected = True
        logger.info(
            f"Connected {len(self._keys)} partitions",
            extra={"tenant_keys": list(self._keys)},
        )

    async def close(self) -> None:
        """Close every partition."""
        for key in self._keys:
            await self._partitions[key].close()
        self._connected = False

    @staticmethod
    def _coerce(tenant_key: Any) -> Optional[int]:
        if isinstance(tenant_key, bool) or not isinstance(tenant_key, int):
            return None
        return tenant_key

    def contains(self, tenant_key: Any) -> bool:
        """Whether tenant_key is one of the configured keys."""
        key = self._coerce(tenant_key)
        return key is not None and key in self._partitions

    def resolve(self, tenant_key: Any) -> PartitionHandle:
        """Get the partition handle for a tenant key.

        Args:
            tenant_key: Integer TenantKey

        Returns:
            The resident PartitionHandle

        Raises:
            UnknownTenantError: If the key is outside the configured set
        """
        key = self._coerce(tenant_key)
        if key is None or key not in self._partitions:
            raise UnknownTenantError(tenant_key)
        return self._partitions[key]

    def all_tenant_keys(self) -> Tuple[int, ...]:
        """Every configured tenant key in ascending order."""
        return self._keys

    def partitions(self) -> Iterator[Tuple[int, PartitionHandle]]:
        """Iterate (key, handle) pairs in ascending key order."""
        for key in self._keys:
            yield key, self._partitions[key]

    def display_name(self, tenant_key: int) -> Optional[str]:
        """Configured display name for a tenant key, if any."""
        return self._names.get(tenant_key)

    def key_for_name(self, name: str) -> Optional[int]:
        """Find a tenant key by configured display name (case-insensitive)."""
        lowered = name.strip().lower()
        for key, display in self._names.items():
            if display.lower() == lowered:
                return key
        return None

    def __len__(self) -> int:
        return len(self._keys)

    def to_dict(self) -> dict:
        """Convert registry to a JSON-serializable description."""
        return {
            "tenants": [
                {"key": key, "name": self._names.get(key), "partition": self._partitions[key].name}
                for key in self._keys
            ]
        }
