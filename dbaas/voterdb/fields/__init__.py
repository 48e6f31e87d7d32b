"""
Field metadata for VoterDB.

This module contains:
- FieldType / FieldDescriptor: metadata per logical attribute
- InMemoryFieldStore / SqliteFieldStore: the voter_fields collection

Schema evolution over member documents lives in fields.evolution and is
imported from there directly.
"""

from .store import (
    DuplicateFieldNameError,
    InMemoryFieldStore,
    MetadataStoreError,
    SqliteFieldStore,
)
from .types import (
    FIELD_NAME_PATTERN,
    RENAME_PROTECTED_FIELDS,
    VISIBILITY_PROTECTED_FIELDS,
    FieldDescriptor,
    FieldType,
    field_type_for_kind,
    field_type_for_value,
    is_rename_protected,
    is_valid_field_name,
)

__all__ = [
    "FIELD_NAME_PATTERN",
    "RENAME_PROTECTED_FIELDS",
    "VISIBILITY_PROTECTED_FIELDS",
    "FieldDescriptor",
    "FieldType",
    "field_type_for_kind",
    "field_type_for_value",
    "is_rename_protected",
    "is_valid_field_name",
    "DuplicateFieldNameError",
    "InMemoryFieldStore",
    "MetadataStoreError",
    "SqliteFieldStore",
]
