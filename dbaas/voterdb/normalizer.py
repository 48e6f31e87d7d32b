"""
Legacy value normalization for member attributes.

Member attributes exist in two historical encodings:
- Flat: ``attribute: <scalar | object | null>``
- Legacy-wrapped: ``attribute: {"value": <...>, "visible": <bool>}`` (visible optional)

This module is the single point of truth for telling them apart. Every read,
filter, type-inference and rename/merge path routes values through unwrap().

Invariants:
    - unwrap() is pure and total; it never raises
    - A dict is legacy-wrapped only if its keys are exactly {"value"} or
      {"value", "visible"}; a dict with any other key is a flat object
    - unwrap(unwrap(v).actual_value) is idempotent for any v
    - System attributes (_id, __v, createdAt, updatedAt) are never unwrapped

How to change safely:
    - Never widen the legacy-wrapped shape; flat objects with a "value" key
      plus other keys are real data
    - Keep ValueKind closed; add a kind only together with a FieldType
    - This module imports nothing else from the package
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, NamedTuple

SYSTEM_FIELDS = frozenset({"_id", "__v", "createdAt", "updatedAt"})

_LEGACY_KEYS = frozenset({"value", "visible"})


class Unwrapped(NamedTuple):
    """Result of unwrapping a raw attribute value.

    Attributes:
        actual_value: The logical value, identical for both encodings
        was_legacy_wrapped: Whether the raw value used the {value, visible} shape
        legacy_visible: The wrapper's visible flag, None if absent or not a bool
    """

    actual_value: Any
    was_legacy_wrapped: bool
    legacy_visible: bool | None


class ValueKind(Enum):
    """Closed set of value variants stored in member attributes."""

    NULL = "Null"
    BOOLEAN = "Boolean"
    NUMBER = "Number"
    STRING = "String"
    DATE = "Date"
    ARRAY = "Array"
    OBJECT = "Object"


# Higher rank wins when two observations disagree
_KIND_RANK = {
    ValueKind.NULL: 0,
    ValueKind.STRING: 1,
    ValueKind.NUMBER: 1,
    ValueKind.BOOLEAN: 1,
    ValueKind.DATE: 1,
    ValueKind.ARRAY: 1,
    ValueKind.OBJECT: 1,
}


def is_legacy_wrapped(raw: Any) -> bool:
    """Whether a raw value uses the legacy {value, visible} encoding."""
    if not isinstance(raw, dict) or "value" not in raw:
        return False
    return set(raw.keys()) <= _LEGACY_KEYS


def unwrap(raw: Any) -> Unwrapped:
    """Decode a raw attribute value into its logical value.

    Args:
        raw: Value as stored in a member document (may be None)

    Returns:
        Unwrapped(actual_value, was_legacy_wrapped, legacy_visible)

    Example:
        >>> unwrap({"value": "Male", "visible": True})
        Unwrapped(actual_value='Male', was_legacy_wrapped=True, legacy_visible=True)
        >>> unwrap("Male")
        Unwrapped(actual_value='Male', was_legacy_wrapped=False, legacy_visible=None)
    """
    if is_legacy_wrapped(raw):
        visible = raw.get("visible")
        return Unwrapped(raw["value"], True, visible if isinstance(visible, bool) else None)
    return Unwrapped(raw, False, None)


def actual(raw: Any) -> Any:
    """Shorthand for unwrap(raw).actual_value."""
    return unwrap(raw).actual_value


def flatten_document(doc: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of a member document with every attribute unwrapped.

    System attributes are copied unchanged.
    """
    flat: dict[str, Any] = {}
    for key, raw in doc.items():
        flat[key] = raw if key in SYSTEM_FIELDS else unwrap(raw).actual_value
    return flat


def legacy_attributes(doc: Mapping[str, Any]) -> dict[str, Any]:
    """Get the flattened values of every legacy-wrapped attribute in a document."""
    flattened = {}
    for key, raw in doc.items():
        if key in SYSTEM_FIELDS:
            continue
        unwrapped = unwrap(raw)
        if unwrapped.was_legacy_wrapped:
            flattened[key] = unwrapped.actual_value
    return flattened


def has_meaningful_value(value: Any) -> bool:
    """Whether a value carries content worth keeping during a merge.

    None and blank strings are not meaningful; everything else is,
    including False, 0 and empty containers.
    """
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    return True


def infer_kind(value: Any) -> ValueKind:
    """Infer the value variant of an (already unwrapped) value."""
    if value is None:
        return ValueKind.NULL
    # bool is a subclass of int
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (datetime, date)):
        return ValueKind.DATE
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.OBJECT


def prefer_kind(current: ValueKind | None, observed: ValueKind) -> ValueKind:
    """Keep the most specific kind seen so far.

    The first concrete observation wins; NULL only survives while nothing
    concrete has been seen.
    """
    if current is None:
        return observed
    if _KIND_RANK[observed] > _KIND_RANK[current]:
        return observed
    return current


def looks_like_date(value: str) -> bool:
    """Whether a string parses as an ISO date and contains a dash."""
    if "-" not in value:
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


@dataclass
class FieldObservation:
    """Running type/visibility observation for one attribute during sampling."""

    kind: ValueKind | None = None
    legacy_visible: bool | None = None

    def observe(self, raw: Any) -> Unwrapped:
        unwrapped = unwrap(raw)
        self.kind = prefer_kind(self.kind, infer_kind(unwrapped.actual_value))
        if self.legacy_visible is None and unwrapped.legacy_visible is not None:
            self.legacy_visible = unwrapped.legacy_visible
        return unwrapped
