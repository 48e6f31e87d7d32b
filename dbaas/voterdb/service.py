"""
Member service facade for VoterDB.

MemberService is the surface consumed by the (external) HTTP layer. It
validates requests, routes them through the tenancy, fan-out and schema
components, and returns JSON-serializable dictionaries.

Invariants:
    - Member results are always flattened; callers never see the legacy
      {value, visible} encoding
    - Datetimes leave this module as ISO-8601 strings
    - Request validation failures surface as InvalidRequestError, never as
      a raw pydantic ValidationError
    - Writes through update_member_by_id only use the flat encoding

How to change safely:
    - Keep method names aligned with the routes that call them
    - Add request fields to the pydantic models, not ad hoc dict checks
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ._version import __version__
from .errors import InvalidRequestError, NotFoundError, PartitionTransportError
from .fanout import FanoutQueryEngine, Member
from .fields.evolution import FieldSchemaRegistry
from .normalizer import actual
from .tenancy import ShardRouter, TenantPartitionRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Request Models
# =============================================================================


class AddFieldRequest(BaseModel):
    """Create a field descriptor."""
    name: str = Field(..., min_length=1, description="Field name")
    type: str = Field(..., min_length=1, description="Declared type (String, Number, ...)")
    required: bool = Field(False, description="Required on ingestion")
    default: Any = Field(None, description="Default backfilled into members missing the field")
    label: Optional[str] = Field(None, description="Display label")
    description: Optional[str] = Field(None, description="Help text")
    visible: bool = Field(True, description="Shown in the frontend")


class UpdateFieldRequest(BaseModel):
    """Partial descriptor update; only provided keys change."""
    type: Optional[str] = None
    required: Optional[bool] = None
    default: Any = None
    label: Optional[str] = None
    description: Optional[str] = None
    visible: Optional[bool] = None


class PageRequest(BaseModel):
    """Pagination for member listings."""
    page: int = Field(1, ge=1, description="1-based page number")
    limit: int = Field(50, ge=1, le=1000, description="Members per page")
    sort: Optional[Dict[str, int]] = Field(None, description="Sort spec, e.g. {'age': -1}")


def _validate(model: type[BaseModel], data: Any) -> BaseModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidRequestError(
            "; ".join(f"{err['field']}: {err['message']}" for err in errors), errors=errors
        ) from e


def to_jsonable(value: Any) -> Any:
    """Convert datetimes (recursively) to ISO strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class MemberService:
    """Facade over routing, fan-out queries and schema evolution.

    Example:
        >>> service = await build_service(config)
        >>> await service.count_members(None, {"gender": "Male"})
        {'count': 8, 'tenant_key': None, 'per_tenant': {101: 3, 102: 5}}
    """

    def __init__(
        self,
        registry: TenantPartitionRegistry,
        router: ShardRouter,
        engine: FanoutQueryEngine,
        schema: FieldSchemaRegistry,
    ) -> None:
        self.registry = registry
        self.router = router
        self.engine = engine
        self.schema = schema

    # =========================================================================
    # Tenants
    # =========================================================================

    async def resolve_tenant(self, identifier: Any) -> Dict[str, Any]:
        """Resolve a numeric key or constituency name."""
        key = await self.router.resolve_key(identifier)
        return {
            "tenant_key": key,
            "name": self.registry.display_name(key),
            "partition": self.registry.resolve(key).name,
        }

    async def _tenant_key(self, tenant: Any) -> Optional[int]:
        if tenant is None or (isinstance(tenant, str) and not tenant.strip()):
            return None
        return await self.router.resolve_key(tenant)

    # =========================================================================
    # Members
    # =========================================================================

    async def count_members(
        self,
        tenant: Any = None,
        filter_: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        key = await self._tenant_key(tenant)
        if key is not None:
            return {"count": await self.engine.count_in(key, filter_), "tenant_key": key}

        per_tenant = await self.engine.count_by_tenant(filter_)
        return {
            "count": sum(per_tenant.values()),
            "tenant_key": None,
            "per_tenant": per_tenant,
        }

    async def find_members(
        self,
        tenant: Any = None,
        filter_: Optional[Mapping[str, Any]] = None,
        page: Union[PageRequest, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """List members of one constituency, or of all of them.

        Cross-tenant listings are grouped by ascending tenant key; sort
        applies within each partition.
        """
        request = _validate(PageRequest, page)
        skip = (request.page - 1) * request.limit
        sort = list(request.sort.items()) if request.sort else None

        key = await self._tenant_key(tenant)
        if key is not None:
            total = await self.engine.count_in(key, filter_)
            members = await self.engine.find_in(
                key, filter_, limit=request.limit, skip=skip, sort=sort
            )
        else:
            total = await self.engine.count_across_all(filter_)
            members = await self.engine.find_across_all(
                filter_, limit=request.limit, skip=skip, sort=sort
            )

        return {
            "members": [self._member(m) for m in members],
            "pagination": {
                "page": request.page,
                "limit": request.limit,
                "total": total,
                "pages": (total + request.limit - 1) // request.limit,
            },
        }

    async def find_member_by_id(self, member_id: str) -> Dict[str, Any]:
        """Get one member by id from whichever partition holds it.

        Raises:
            NotFoundError: No partition holds the id
        """
        hit = await self.engine.find_by_id_across_all(str(member_id))
        if hit is None:
            raise NotFoundError("Member not found", "member", str(member_id))
        member, _ = hit
        return self._member(member)

    async def update_member_by_id(self, member_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply a patch to one member in flat encoding.

        _id and __v are ignored. A string name updates name.english and
        keeps the other translations.

        Raises:
            InvalidRequestError: patch is not an object
            NotFoundError: No partition holds the id
        """
        if not isinstance(patch, Mapping):
            raise InvalidRequestError("Update body must be an object")

        hit = await self.engine.find_by_id_across_all(str(member_id))
        if hit is None:
            raise NotFoundError("Member not found", "member", str(member_id))
        current, tenant_key = hit

        changes: Dict[str, Any] = {}
        for attr, raw in patch.items():
            if attr in ("_id", "__v"):
                continue
            if attr == "name" and isinstance(raw, str):
                existing = current.value("name")
                name = dict(existing) if isinstance(existing, Mapping) else {}
                name["english"] = raw
                changes["name"] = name
                continue
            changes[attr] = actual(raw)
        changes["updatedAt"] = datetime.now(timezone.utc)

        handle = self.registry.resolve(tenant_key)
        updated = await handle.update_one(current.doc_id, changes)
        if updated is None:
            raise NotFoundError("Member not found", "member", str(member_id))

        logger.info(
            "Updated member",
            extra={"tenant_key": tenant_key, "member_id": current.doc_id, "fields": sorted(changes)},
        )
        return {
            "message": "Member updated successfully",
            "member": self._member(Member.from_document(tenant_key, updated)),
        }

    @staticmethod
    def _member(member: Member) -> Dict[str, Any]:
        return to_jsonable(member.to_dict(flatten=True))

    # =========================================================================
    # Fields
    # =========================================================================

    async def add_field(self, descriptor: Union[AddFieldRequest, Mapping[str, Any]]) -> Dict[str, Any]:
        request = _validate(AddFieldRequest, descriptor)
        report = await self.schema.add_field(
            request.name,
            request.type,
            required=request.required,
            default=request.default,
            label=request.label,
            description=request.description,
            visible=request.visible,
        )
        return to_jsonable(report.to_dict())

    async def rename_field(self, old_name: str, new_name: str) -> Dict[str, Any]:
        result = await self.schema.rename_field(old_name, new_name)
        return to_jsonable(result.to_dict())

    async def delete_field(self, name: str) -> Dict[str, Any]:
        report = await self.schema.delete_field(name)
        return report.to_dict()

    async def set_field_visibility(self, name: str, visible: bool) -> Dict[str, Any]:
        descriptor = await self.schema.set_visibility(name, visible)
        return {
            "message": f'Field "{name}" visibility updated to {"visible" if visible else "hidden"}',
            "field": {
                "name": descriptor.name,
                "type": descriptor.type.value,
                "visible": descriptor.visible,
            },
        }

    async def update_field(
        self,
        name: str,
        patch: Union[UpdateFieldRequest, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        request = _validate(UpdateFieldRequest, patch)
        report = await self.schema.update_field(name, request.model_dump(exclude_unset=True))
        return to_jsonable(report.to_dict())

    async def list_field_descriptors(self) -> Dict[str, Any]:
        descriptors = await self.schema.list_descriptors()
        return to_jsonable({"fields": [d.to_dict() for d in descriptors]})

    async def discover_fields_from_sample(self, sample_size: Optional[int] = None) -> Dict[str, Any]:
        report = await self.schema.discover_fields(sample_size)
        return to_jsonable(report.to_dict())

    async def flatten_legacy_fields(self) -> Dict[str, Any]:
        report = await self.schema.convert_all_legacy_to_flat()
        return report.to_dict()

    # =========================================================================
    # Health
    # =========================================================================

    async def health(self) -> Dict[str, Any]:
        """Report whether every partition answers a count."""
        status: Dict[str, Any] = {
            "version": __version__,
            "tenants": len(self.registry),
            "connected": self.registry.connected,
        }
        try:
            per_tenant = await self.engine.count_by_tenant({})
        except PartitionTransportError as e:
            logger.warning(f"Health check failed: {e}", extra={"tenant_key": e.tenant_key})
            status.update(status="degraded", error=e.to_dict())
            return status

        status.update(status="healthy", total_members=sum(per_tenant.values()))
        return status
