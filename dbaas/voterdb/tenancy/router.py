"""
Shard router for VoterDB.

Resolves a constituency identifier (numeric TenantKey or alias) to the
partition that holds its members. Centralizing this keeps alias rules
identical for every caller.

Resolution order:
    1. int, or a string of digits -> numeric key, checked against the registry
    2. configured display name (case-insensitive)
    3. one representative probe across partitions: a document whose
       aci_name or ac_name equals the alias, case-insensitively

Invariants:
    - Numeric identifiers never trigger a document probe
    - Alias matches are exact (the alias is regex-escaped and anchored)
    - An alias that matches nothing raises AmbiguousOrUnknownTenantError

Known gap:
    The probe uses whichever representative document it finds first. A
    concurrent deletion of that document can make the same alias resolve
    on one call and fail on the next.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Optional

from ..errors import AmbiguousOrUnknownTenantError
from ..normalizer import actual
from ..partition.base import PartitionHandle
from .registry import TenantPartitionRegistry

if TYPE_CHECKING:
    from ..fanout import FanoutQueryEngine

logger = logging.getLogger(__name__)


class ShardRouter:
    """Resolves identifiers to partition handles.

    Example:
        >>> router = ShardRouter(registry, engine)
        >>> await router.route(111)
        <InMemoryPartition voters_111>
        >>> await router.resolve_key("Dharapuram")
        101
    """

    def __init__(
        self,
        registry: TenantPartitionRegistry,
        engine: "FanoutQueryEngine",
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.alias_fields = registry.config.alias_fields
        self.key_fields = registry.config.key_fields

    async def route(self, identifier: Any) -> PartitionHandle:
        """Resolve an identifier to its partition handle.

        Raises:
            UnknownTenantError: Numeric key outside the tenant set
            AmbiguousOrUnknownTenantError: Alias matched no constituency
        """
        return self.registry.resolve(await self.resolve_key(identifier))

    async def resolve_key(self, identifier: Any) -> int:
        """Resolve an identifier to its TenantKey."""
        numeric = self._numeric(identifier)
        if numeric is not None:
            # Raises UnknownTenantError for keys outside the set
            self.registry.resolve(numeric)
            return numeric

        if not isinstance(identifier, str) or not identifier.strip():
            raise AmbiguousOrUnknownTenantError(identifier, "empty identifier")

        alias = identifier.strip()
        configured = self.registry.key_for_name(alias)
        if configured is not None:
            return configured

        return await self._probe_alias(alias)

    @staticmethod
    def _numeric(identifier: Any) -> Optional[int]:
        if isinstance(identifier, bool):
            return None
        if isinstance(identifier, int):
            return identifier
        if isinstance(identifier, str) and identifier.strip().isdigit():
            return int(identifier.strip())
        return None

    async def _probe_alias(self, alias: str) -> int:
        pattern = re.compile(f"^{re.escape(alias)}$", re.IGNORECASE)
        filter_ = {"$or": [{field: pattern} for field in self.alias_fields]}

        hit = await self.engine.find_one_across_all(filter_)
        if hit is None:
            raise AmbiguousOrUnknownTenantError(alias)

        member, found_in = hit
        for key_field in self.key_fields:
            candidate = self._numeric(actual(member.attributes.get(key_field)))
            if candidate is None:
                candidate = self._float_key(actual(member.attributes.get(key_field)))
            if candidate is not None and candidate > 0:
                if not self.registry.contains(candidate):
                    raise AmbiguousOrUnknownTenantError(
                        alias, f"document names tenant {candidate}, which is not configured"
                    )
                logger.debug(f"Resolved alias '{alias}' to tenant {candidate}")
                return candidate

        # Fall back to the partition the representative document lives in
        logger.debug(f"Resolved alias '{alias}' to tenant {found_in} by partition")
        return found_in

    @staticmethod
    def _float_key(value: Any) -> Optional[int]:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None
