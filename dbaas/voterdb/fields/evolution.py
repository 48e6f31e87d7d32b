"""
Online schema evolution for member attributes.

The FieldSchemaRegistry keeps field descriptors in the metadata store and
applies the matching document changes to every partition:
- add_field: persist a descriptor and backfill its default
- rename_field: rename or merge an attribute everywhere
- delete_field: drop the descriptor and unset the attribute everywhere
- set_visibility / update_field: descriptor edits (with backfill)
- convert_all_legacy_to_flat: rewrite legacy-wrapped values as flat values
- discover_fields: infer the attribute catalogue from a sample

Descriptor lifecycle::

    absent --add_field/set_visibility--> present(visible|hidden)
    present --rename_field--> present under the new name (or merged away)
    present --delete_field--> absent

Invariants:
    - Document writes run partition by partition in ascending key order, in
      ordered batches; batches already written stay written if a later one
      fails (PartialMigrationError carries the counts)
    - Every value copied between attributes goes through unwrap(), so both
      encodings behave identically
    - A unique-key conflict on the descriptor during rename never aborts the
      document rename; it is logged and resolved as a merge
    - Writers only produce the flat encoding

How to change safely:
    - Keep the protected-name lists in fields.types in sync with the admin UI
    - New document-mutating operations must report per-tenant counts and
      raise PartialMigrationError on a mid-way transport failure
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from ..config import MigrationConfig
from ..errors import (
    CriticalFieldProtectedError,
    DuplicateFieldError,
    InvalidFieldNameError,
    InvalidRequestError,
    NotFoundError,
    PartialMigrationError,
    PartitionTransportError,
)
from ..fanout import FanoutQueryEngine
from ..normalizer import (
    SYSTEM_FIELDS,
    FieldObservation,
    ValueKind,
    actual,
    has_meaningful_value,
    infer_kind,
    legacy_attributes,
)
from ..partition.base import UpdateOp
from ..tenancy.registry import TenantPartitionRegistry
from .store import DuplicateFieldNameError
from .types import (
    VISIBILITY_PROTECTED_FIELDS,
    FieldDescriptor,
    FieldType,
    field_type_for_value,
    is_rename_protected,
    is_valid_field_name,
)

logger = logging.getLogger(__name__)

SAMPLE_VALUES_PER_FIELD = 3
SAMPLE_DISPLAY_LENGTH = 50

_UPDATABLE_ATTRIBUTES = ("type", "required", "default", "label", "description", "visible")


def _exists(name: str) -> Dict[str, Any]:
    return {name: {"$exists": True}}


def _missing(name: str) -> Dict[str, Any]:
    return {name: {"$exists": False}}


def _normalize_default(default: Any) -> Any:
    if isinstance(default, str) and default == "":
        return None
    return default


def _parse_type(value: Union[str, FieldType]) -> FieldType:
    try:
        return FieldType.from_str(value)
    except ValueError as e:
        raise InvalidRequestError(str(e), errors=[{"field": "type", "message": str(e)}]) from e


# =============================================================================
# Reports
# =============================================================================


@dataclass
class AddFieldReport:
    """Outcome of add_field."""

    descriptor: FieldDescriptor
    backfilled: int = 0
    total_members: int = 0
    per_tenant: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.descriptor.to_dict(),
            "backfilled": self.backfilled,
            "total_members": self.total_members,
            "per_tenant": dict(self.per_tenant),
            "message": (
                f'Field "{self.descriptor.name}" has been added to all {self.total_members} '
                f"members. {self.backfilled} members were updated."
            ),
        }


class RenameOutcome(Enum):
    """How a rename request was resolved."""

    RENAMED = "renamed"
    MERGED = "merged"
    REJECTED = "rejected"


@dataclass
class RenameResult:
    """Outcome of rename_field.

    Attributes:
        outcome: RENAMED, MERGED or REJECTED
        renamed_count: Documents rewritten
        merged_count: Documents whose empty destination took the source value
        members_with_field: Documents carrying the old attribute beforehand
        reason: Why the rename was rejected (REJECTED only)
    """

    outcome: RenameOutcome
    old_name: str
    new_name: str
    renamed_count: int = 0
    merged_count: int = 0
    members_with_field: int = 0
    total_members: int = 0
    reason: Optional[str] = None
    per_tenant: Dict[int, int] = field(default_factory=dict)

    @property
    def merged(self) -> bool:
        return self.outcome is RenameOutcome.MERGED

    def to_dict(self) -> Dict[str, Any]:
        if self.outcome is RenameOutcome.REJECTED:
            message = f'Field "{self.old_name}" was not renamed: {self.reason}'
        elif self.merged:
            message = (
                f'Field "{self.old_name}" has been merged into "{self.new_name}" '
                f"in {self.renamed_count} member documents."
            )
        else:
            message = (
                f'Field "{self.old_name}" has been renamed to "{self.new_name}" '
                f"in {self.renamed_count} member documents."
            )
        return {
            "outcome": self.outcome.value,
            "message": message,
            "old_field_name": self.old_name,
            "new_field_name": self.new_name,
            "members_affected": self.renamed_count,
            "merged": self.merged,
            "merged_count": self.merged_count,
            "members_with_field": self.members_with_field,
            "members_without_field": max(self.total_members - self.members_with_field, 0),
            "total_members": self.total_members,
            "reason": self.reason,
            "per_tenant": dict(self.per_tenant),
        }


@dataclass
class DeleteFieldReport:
    """Outcome of delete_field."""

    name: str
    members_affected: int = 0
    was_in_schema: bool = False
    per_tenant: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.name,
            "members_affected": self.members_affected,
            "was_in_schema": self.was_in_schema,
            "per_tenant": dict(self.per_tenant),
        }


@dataclass
class UpdateFieldReport:
    """Outcome of update_field."""

    descriptor: FieldDescriptor
    backfilled: int = 0
    per_tenant: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.descriptor.to_dict(),
            "backfilled": self.backfilled,
            "per_tenant": dict(self.per_tenant),
        }


@dataclass
class FlattenCounts:
    """Flatten counters for one partition."""

    flattened_fields: int = 0
    members_updated: int = 0
    members_checked: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "flattened_fields": self.flattened_fields,
            "members_updated": self.members_updated,
            "members_checked": self.members_checked,
        }


@dataclass
class FlattenReport:
    """Outcome of convert_all_legacy_to_flat."""

    flattened_fields: int = 0
    members_updated: int = 0
    members_checked: int = 0
    per_tenant: Dict[int, FlattenCounts] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": (
                f"Flattened {self.flattened_fields} legacy field instances across "
                f"{self.members_updated} member documents"
            ),
            "flattened_fields": self.flattened_fields,
            "members_updated": self.members_updated,
            "members_checked": self.members_checked,
            "per_tenant": {key: counts.to_dict() for key, counts in self.per_tenant.items()},
        }


@dataclass
class DiscoveredField:
    """One attribute found while sampling documents."""

    name: str
    type: ValueKind
    visible: bool = True
    samples: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "visible": self.visible, "samples": list(self.samples)}


@dataclass
class DiscoveryReport:
    """Outcome of discover_fields."""

    tenant_key: int
    fields: List[DiscoveredField] = field(default_factory=list)
    total_members: int = 0
    samples_analyzed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_key": self.tenant_key,
            "fields": {f.name: f.to_dict() for f in self.fields},
            "total_members": self.total_members,
            "samples_analyzed": self.samples_analyzed,
        }


def _display_value(value: Any) -> Any:
    """Render a sample value the way the admin UI lists it."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    if isinstance(value, (dict, list)):
        rendered = json.dumps(value, default=str, separators=(",", ":"))
        if len(rendered) > SAMPLE_DISPLAY_LENGTH:
            rendered = rendered[:SAMPLE_DISPLAY_LENGTH] + "..."
        return rendered
    if isinstance(value, str) and len(value) > SAMPLE_DISPLAY_LENGTH:
        return value[:SAMPLE_DISPLAY_LENGTH] + "..."
    return value


# =============================================================================
# Registry
# =============================================================================


class FieldSchemaRegistry:
    """Descriptor metadata plus cross-partition document evolution.

    Example:
        >>> schema = FieldSchemaRegistry(registry, engine, InMemoryFieldStore())
        >>> report = await schema.add_field("flag", "Boolean", default=False)
        >>> report.backfilled
        6
        >>> result = await schema.rename_field("mobile", "phone")
        >>> result.outcome
        <RenameOutcome.MERGED: 'merged'>
    """

    def __init__(
        self,
        registry: TenantPartitionRegistry,
        engine: FanoutQueryEngine,
        store: Any,
        config: Optional[MigrationConfig] = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.store = store
        self.config = config or MigrationConfig()

    # -------------------------------------------------------------------------
    # Descriptors
    # -------------------------------------------------------------------------

    async def list_descriptors(self) -> List[FieldDescriptor]:
        """Every descriptor, sorted by name."""
        return await self.store.list_all()

    async def get_descriptor(self, name: str) -> Optional[FieldDescriptor]:
        return await self.store.get(name)

    async def add_field(
        self,
        name: str,
        type: Union[str, FieldType] = FieldType.STRING,
        required: bool = False,
        default: Any = None,
        label: Optional[str] = None,
        description: Optional[str] = None,
        visible: bool = True,
    ) -> AddFieldReport:
        """Create a descriptor and backfill its default into every partition.

        Documents that already carry the attribute are left untouched. An
        empty-string default is stored and backfilled as null.

        Raises:
            InvalidFieldNameError: Bad name format
            DuplicateFieldError: A descriptor with this name exists
            PartialMigrationError: A partition failed during backfill
        """
        if not is_valid_field_name(name):
            raise InvalidFieldNameError(name)
        field_type = _parse_type(type)

        if await self.store.get(name) is not None:
            raise DuplicateFieldError(name)

        descriptor = FieldDescriptor(
            name=name,
            type=field_type,
            required=bool(required),
            default=default,
            label=label,
            description=description,
            visible=visible,
        )
        try:
            await self.store.insert(descriptor)
        except DuplicateFieldNameError as e:
            raise DuplicateFieldError(name) from e

        backfill_value = _normalize_default(default)
        report = AddFieldReport(descriptor=descriptor)
        try:
            for key, handle in self.registry.partitions():
                modified = await handle.update_many(_missing(name), {name: backfill_value})
                report.per_tenant[key] = modified
                report.backfilled += modified
                report.total_members += await handle.count({})
                logger.debug(f"Backfilled '{name}' in tenant {key}", extra={"modified": modified})
        except PartitionTransportError as e:
            raise PartialMigrationError("add_field", report, e) from e

        logger.info(
            f"Added field '{name}'",
            extra={
                "field_name": name,
                "field_type": field_type.value,
                "backfilled": report.backfilled,
                "total_members": report.total_members,
            },
        )
        return report

    async def rename_field(self, old_name: str, new_name: str) -> RenameResult:
        """Rename an attribute in metadata and in every document.

        Outcomes:
            RENAMED: the destination was unused; descriptor renamed in place
            MERGED: the destination existed as metadata or on some document;
                the old descriptor is discarded and, per document, a
                meaningful source fills an empty destination, otherwise the
                destination is kept
            REJECTED: nothing to do (same name, or no document carries old)

        Raises:
            InvalidFieldNameError: Bad format of the new name
            CriticalFieldProtectedError: old_name is a protected field
            PartialMigrationError: A partition failed while rewriting documents
        """
        if not isinstance(new_name, str) or not new_name.strip():
            raise InvalidFieldNameError(new_name)
        target = new_name.strip()
        if not is_valid_field_name(target):
            raise InvalidFieldNameError(new_name)
        if is_rename_protected(old_name):
            raise CriticalFieldProtectedError(old_name, "renamed")

        result = RenameResult(outcome=RenameOutcome.RENAMED, old_name=old_name, new_name=target)
        if old_name == target:
            result.outcome = RenameOutcome.REJECTED
            result.reason = "source and destination names are identical"
            return result

        members_with_target = await self.engine.count_across_all(_exists(target))
        result.members_with_field = await self.engine.count_across_all(_exists(old_name))
        result.total_members = await self.engine.count_across_all({})

        if result.members_with_field == 0:
            result.outcome = RenameOutcome.REJECTED
            result.reason = (
                f"field not found in any member document (total members: {result.total_members})"
            )
            return result

        metadata_merged = await self._rename_descriptor(old_name, target)
        if metadata_merged or members_with_target > 0:
            result.outcome = RenameOutcome.MERGED

        batch_size = self.config.rename_batch_size
        try:
            for key, handle in self.registry.partitions():
                docs = await handle.find(_exists(old_name))
                result.per_tenant[key] = 0
                for start in range(0, len(docs), batch_size):
                    batch = docs[start:start + batch_size]
                    ops = [self._rename_op(doc, old_name, target, result) for doc in batch]
                    modified = await handle.bulk_update(ops)
                    result.per_tenant[key] += modified
                    result.renamed_count += modified
                    logger.debug(
                        f"Renamed '{old_name}' -> '{target}' in tenant {key} batch",
                        extra={"batch_start": start, "modified": modified},
                    )
        except PartitionTransportError as e:
            raise PartialMigrationError("rename_field", result, e) from e

        logger.info(
            f"Field '{old_name}' {result.outcome.value} into '{target}'",
            extra={
                "old_field_name": old_name,
                "new_field_name": target,
                "renamed_count": result.renamed_count,
                "merged_count": result.merged_count,
            },
        )
        return result

    async def _rename_descriptor(self, old_name: str, new_name: str) -> bool:
        """Move the descriptor to its new name.

        Returns:
            True if the destination descriptor already existed (merge)
        """
        old_meta = await self.store.get(old_name)
        new_meta = await self.store.get(new_name)

        if new_meta is not None:
            if old_meta is not None:
                await self.store.delete(old_name)
                logger.info(
                    f"Merging: discarded descriptor '{old_name}' since '{new_name}' exists"
                )
            return True

        if old_meta is None:
            return False

        try:
            await self.store.rename(old_name, new_name)
        except DuplicateFieldNameError as e:
            # Another rename created the destination in between
            logger.warning(
                f"Descriptor '{new_name}' appeared during rename of '{old_name}', merging",
                extra={"old_field_name": old_name, "new_field_name": new_name, "error": str(e)},
            )
            await self.store.delete(old_name)
            return True
        return False

    @staticmethod
    def _rename_op(
        doc: Mapping[str, Any],
        old_name: str,
        new_name: str,
        result: RenameResult,
    ) -> UpdateOp:
        source = actual(doc.get(old_name))
        final = source

        if new_name in doc:
            destination = actual(doc[new_name])
            if has_meaningful_value(source) and not has_meaningful_value(destination):
                result.merged_count += 1
            else:
                final = destination

        return UpdateOp(
            doc_id=str(doc["_id"]),
            set_fields={new_name: final},
            unset_fields=(old_name,),
        )

    async def delete_field(self, name: str) -> DeleteFieldReport:
        """Remove the descriptor (if any) and unset the attribute everywhere.

        Raises:
            PartialMigrationError: A partition failed while unsetting
        """
        report = DeleteFieldReport(name=name)
        report.was_in_schema = await self.store.delete(name)

        try:
            for key, handle in self.registry.partitions():
                modified = await handle.update_many(_exists(name), unset_fields=(name,))
                report.per_tenant[key] = modified
                report.members_affected += modified
        except PartitionTransportError as e:
            raise PartialMigrationError("delete_field", report, e) from e

        logger.info(
            f"Deleted field '{name}'",
            extra={
                "field_name": name,
                "members_affected": report.members_affected,
                "was_in_schema": report.was_in_schema,
            },
        )
        return report

    async def set_visibility(self, name: str, visible: bool) -> FieldDescriptor:
        """Show or hide a field, creating its descriptor if needed.

        A field without a descriptor gets one synthesized from a sample of
        documents carrying it, typed by the most specific kind observed.

        Raises:
            InvalidRequestError: visible is not a bool
            CriticalFieldProtectedError: _id, createdAt or updatedAt
            NotFoundError: No descriptor and no document carries the field
        """
        if not isinstance(visible, bool):
            raise InvalidRequestError("Visible parameter must be a boolean value")
        if name in VISIBILITY_PROTECTED_FIELDS:
            raise CriticalFieldProtectedError(name, "hidden or shown")

        descriptor = await self.store.get(name)
        if descriptor is not None:
            updated = descriptor.with_changes(visible=visible)
            await self.store.update(updated)
            logger.info(f"Field '{name}' visibility set to {visible}")
            return updated

        samples = await self.engine.find_across_all(
            _exists(name), limit=self.config.visibility_sample_size
        )
        if not samples:
            raise NotFoundError(
                f'Field "{name}" not found in schema or member documents', "field", name
            )

        observation = FieldObservation()
        values = [observation.observe(member.attributes[name]).actual_value for member in samples]
        representative = next(
            (value for value in values if infer_kind(value) is observation.kind), None
        )
        descriptor = FieldDescriptor(
            name=name,
            type=field_type_for_value(representative),
            required=False,
            visible=visible,
        )
        try:
            await self.store.insert(descriptor)
        except DuplicateFieldNameError:
            existing = await self.store.get(name)
            descriptor = existing.with_changes(visible=visible)
            await self.store.update(descriptor)

        logger.info(
            f"Created descriptor for '{name}' from {len(samples)} samples",
            extra={"field_name": name, "field_type": descriptor.type.value, "visible": visible},
        )
        return descriptor

    async def update_field(self, name: str, patch: Mapping[str, Any]) -> UpdateFieldReport:
        """Apply a partial descriptor update.

        A non-empty new default is backfilled into documents missing the
        attribute; existing values are never overwritten.

        Raises:
            NotFoundError: No descriptor with this name
            InvalidRequestError: Unknown type or visible not a bool
            PartialMigrationError: A partition failed during backfill
        """
        descriptor = await self.store.get(name)
        if descriptor is None:
            raise NotFoundError(f'Field "{name}" not found', "field", name)

        changes: Dict[str, Any] = {
            key: patch[key] for key in _UPDATABLE_ATTRIBUTES if key in patch and patch[key] is not None
        }
        if "default" in patch:
            changes["default"] = patch["default"]
        if "type" in changes:
            changes["type"] = _parse_type(changes["type"])
        if "visible" in changes and not isinstance(changes["visible"], bool):
            raise InvalidRequestError("Visible parameter must be a boolean value")

        updated = descriptor.with_changes(**changes)
        await self.store.update(updated)
        report = UpdateFieldReport(descriptor=updated)

        default = patch.get("default")
        if default is not None and _normalize_default(default) is not None:
            try:
                for key, handle in self.registry.partitions():
                    modified = await handle.update_many(_missing(name), {name: default})
                    report.per_tenant[key] = modified
                    report.backfilled += modified
            except PartitionTransportError as e:
                raise PartialMigrationError("update_field", report, e) from e

        logger.info(
            f"Updated field '{name}'",
            extra={"field_name": name, "changes": sorted(changes), "backfilled": report.backfilled},
        )
        return report

    # -------------------------------------------------------------------------
    # Whole-collection passes
    # -------------------------------------------------------------------------

    async def convert_all_legacy_to_flat(self) -> FlattenReport:
        """Rewrite every legacy-wrapped attribute in every partition as flat.

        Each partition is streamed; updates are accumulated and flushed every
        flatten_batch_size documents. Every update is conditional on the
        attribute still holding the same logical value, so a concurrent
        writer is never overwritten with a stale value.

        Raises:
            PartialMigrationError: A partition failed mid-way
        """
        batch_size = self.config.flatten_batch_size
        report = FlattenReport()
        try:
            for key, handle in self.registry.partitions():
                counts = report.per_tenant.setdefault(key, FlattenCounts())
                ops: List[UpdateOp] = []
                batch_index = 0

                async for doc in handle.iterate(batch_size):
                    counts.members_checked += 1
                    report.members_checked += 1
                    flattened = legacy_attributes(doc)
                    if not flattened:
                        continue
                    counts.flattened_fields += len(flattened)
                    report.flattened_fields += len(flattened)
                    guard = {
                        attr: {"$exists": True, "$eq": value} for attr, value in flattened.items()
                    }
                    ops.append(UpdateOp(doc_id=str(doc["_id"]), set_fields=flattened, guard=guard))

                    if len(ops) >= batch_size:
                        await self._flush_flatten(key, handle, ops, batch_index, counts, report)
                        ops = []
                        batch_index += 1

                if ops:
                    await self._flush_flatten(key, handle, ops, batch_index, counts, report)
        except PartitionTransportError as e:
            raise PartialMigrationError("convert_all_legacy_to_flat", report, e) from e

        logger.info(
            "Flattened legacy field values",
            extra={
                "flattened_fields": report.flattened_fields,
                "members_updated": report.members_updated,
                "members_checked": report.members_checked,
            },
        )
        return report

    @staticmethod
    async def _flush_flatten(
        key: int,
        handle: Any,
        ops: List[UpdateOp],
        batch_index: int,
        counts: FlattenCounts,
        report: FlattenReport,
    ) -> None:
        modified = await handle.bulk_update(ops)
        counts.members_updated += modified
        report.members_updated += modified
        logger.debug(f"Tenant {key} batch {batch_index} flattened {modified} members")

    async def discover_fields(self, sample_size: Optional[int] = None) -> DiscoveryReport:
        """Infer the attribute catalogue from a sample of one partition.

        Per attribute: the most specific kind observed, up to three distinct
        display samples, and visibility taken from the legacy wrapper, else
        the descriptor, else True.
        """
        limit = sample_size if sample_size and sample_size > 0 else self.config.discovery_sample_size
        tenant_key = self.config.discovery_tenant or self.registry.all_tenant_keys()[0]
        handle = self.registry.resolve(tenant_key)

        report = DiscoveryReport(tenant_key=tenant_key)
        report.total_members = await handle.count({})
        docs = await handle.find({}, limit=limit)
        report.samples_analyzed = len(docs)
        if not docs:
            return report

        observations: Dict[str, FieldObservation] = {}
        samples: Dict[str, List[Dict[str, Any]]] = {}
        for doc in docs:
            for attr, raw in doc.items():
                if attr in SYSTEM_FIELDS:
                    continue
                observation = observations.setdefault(attr, FieldObservation())
                value = observation.observe(raw).actual_value
                collected = samples.setdefault(attr, [])
                if len(collected) >= SAMPLE_VALUES_PER_FIELD:
                    continue
                display = _display_value(value)
                if all(str(s["value"]) != str(display) for s in collected):
                    collected.append({"value": display, "type": infer_kind(value).value})

        descriptors = {d.name: d for d in await self.store.list_all()}
        for attr in sorted(observations):
            observation = observations[attr]
            if observation.legacy_visible is not None:
                visible = observation.legacy_visible
            elif attr in descriptors:
                visible = descriptors[attr].visible
            else:
                visible = True
            report.fields.append(
                DiscoveredField(
                    name=attr,
                    type=observation.kind or ValueKind.NULL,
                    visible=visible,
                    samples=samples[attr],
                )
            )
        return report
