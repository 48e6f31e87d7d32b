"""
Core type definitions for member field metadata.

This module defines the metadata kept for each logical member attribute:
- FieldType: Declared type of a field
- FieldDescriptor: Name, type, required flag, default, label, description
  and visibility of one field

Descriptors are global (not per tenant) and stored separately from the
partitions, one per logical field name.

Invariants:
    - Field names match ^[A-Za-z_][A-Za-z0-9_]*$
    - There is at most one descriptor per name
    - Protected names can never be renamed

How to change safely:
    - Add new FieldType values at the end
    - Keep to_dict()/from_dict() symmetric; the metadata store relies on it

Example:
    >>> from dbaas.voterdb.fields.types import FieldDescriptor, FieldType
    >>> score = FieldDescriptor(name="score", type=FieldType.NUMBER, default=0)
    >>> score.to_dict()["type"]
    'Number'
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..normalizer import ValueKind, infer_kind, looks_like_date

FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Compared case-insensitively
RENAME_PROTECTED_FIELDS = ("_id", "name", "voterID", "voterId", "createdAt", "updatedAt")

VISIBILITY_PROTECTED_FIELDS = ("_id", "createdAt", "updatedAt")


class FieldType(Enum):
    """Declared field types.

    Values match the type names exposed to the admin UI.
    """

    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    DATE = "Date"
    OBJECT = "Object"
    ARRAY = "Array"

    @classmethod
    def from_str(cls, value: str) -> FieldType:
        """Convert string representation to FieldType.

        Matching is case-insensitive.

        Raises:
            ValueError: If value is not a valid field type
        """
        if isinstance(value, FieldType):
            return value
        for kind in cls:
            if isinstance(value, str) and kind.value.lower() == value.lower():
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")


def is_valid_field_name(name: Any) -> bool:
    """Whether name is a syntactically valid field name."""
    return isinstance(name, str) and FIELD_NAME_PATTERN.match(name) is not None


def is_rename_protected(name: str) -> bool:
    """Whether a field is one of the critical fields that cannot be renamed."""
    lowered = name.lower()
    return any(protected.lower() == lowered for protected in RENAME_PROTECTED_FIELDS)


def now_ms() -> int:
    return int(time.time() * 1000)


def field_type_for_kind(kind: ValueKind) -> FieldType:
    """Map an inferred kind to a declarable FieldType (Null becomes String)."""
    if kind is ValueKind.NULL:
        return FieldType.STRING
    return FieldType.from_str(kind.value)


def field_type_for_value(value: Any) -> FieldType:
    """Map a sample value to the FieldType declared for a synthesized descriptor.

    Null maps to String; ISO-looking date strings map to Date.
    """
    kind = infer_kind(value)
    if kind is ValueKind.STRING and looks_like_date(value):
        return FieldType.DATE
    return field_type_for_kind(kind)


@dataclass(frozen=True)
class FieldDescriptor:
    """Metadata describing one logical member attribute.

    Attributes:
        name: Attribute name, unique across the metadata store
        type: Declared type
        required: Whether the field is required on ingestion
        default: Default value backfilled into documents missing the field
        label: Human-readable label
        description: Human-readable description
        visible: Whether the field is shown in the frontend
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    default: Any = None
    label: str | None = None
    description: str | None = None
    visible: bool = True
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        """Validate descriptor."""
        if not is_valid_field_name(self.name):
            raise ValueError(f"Invalid field name: {self.name!r}")
        if not isinstance(self.type, FieldType):
            object.__setattr__(self, "type", FieldType.from_str(self.type))

    def with_changes(self, **changes: Any) -> FieldDescriptor:
        """Copy with changes applied and updated_at refreshed."""
        changes.setdefault("updated_at", now_ms())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "type": self.type.value,
            "required": self.required,
            "default": self.default,
            "label": self.label,
            "description": self.description,
            "visible": self.visible,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDescriptor:
        """Create from dictionary representation."""
        now = now_ms()
        visible = data.get("visible")
        return cls(
            name=data["name"],
            type=FieldType.from_str(data.get("type", "String")),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            label=data.get("label"),
            description=data.get("description"),
            visible=True if visible is None else bool(visible),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or now,
        )
