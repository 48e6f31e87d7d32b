"""
Unit tests for legacy value normalization.

Tests cover:
- Legacy-wrapped detection
- Unwrapping and idempotency
- Document flattening
- Meaningful-value checks
- Kind inference and preference
"""

from datetime import datetime

import pytest

from dbaas.voterdb.normalizer import (
    FieldObservation,
    Unwrapped,
    ValueKind,
    flatten_document,
    has_meaningful_value,
    infer_kind,
    is_legacy_wrapped,
    legacy_attributes,
    looks_like_date,
    prefer_kind,
    unwrap,
)


class TestUnwrap:
    """Tests for unwrap()."""

    def test_wrapped_value_with_visible(self):
        assert unwrap({"value": "Male", "visible": True}) == Unwrapped("Male", True, True)

    def test_wrapped_value_without_visible(self):
        assert unwrap({"value": 42}) == Unwrapped(42, True, None)

    def test_flat_scalar_passes_through(self):
        assert unwrap("Male") == Unwrapped("Male", False, None)

    def test_none_passes_through(self):
        assert unwrap(None) == Unwrapped(None, False, None)

    def test_object_with_extra_keys_is_flat(self):
        raw = {"value": "x", "visible": True, "source": "import"}
        result = unwrap(raw)
        assert result.was_legacy_wrapped is False
        assert result.actual_value == raw

    def test_object_without_value_key_is_flat(self):
        assert is_legacy_wrapped({"visible": True}) is False

    def test_non_bool_visible_is_still_wrapped(self):
        raw = {"value": "Male", "visible": "true"}
        assert is_legacy_wrapped(raw) is True
        assert unwrap(raw) == Unwrapped("Male", True, None)
        assert flatten_document({"_id": "a", "gender": raw}) == {"_id": "a", "gender": "Male"}
        assert legacy_attributes({"gender": raw}) == {"gender": "Male"}

    def test_wrapped_null_value(self):
        assert unwrap({"value": None, "visible": False}) == Unwrapped(None, True, False)

    def test_lists_are_flat(self):
        assert unwrap(["value"]).was_legacy_wrapped is False

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "Male",
            0,
            False,
            {"value": "Male", "visible": True},
            {"value": {"value": "nested"}},
            {"english": "Arun"},
            [1, 2],
        ],
    )
    def test_unwrap_is_idempotent(self, raw):
        once = unwrap(raw).actual_value
        assert unwrap(once).actual_value == unwrap(unwrap(once).actual_value).actual_value


class TestFlattenDocument:
    """Tests for document-level helpers."""

    def test_both_encodings_read_the_same(self):
        wrapped = flatten_document({"_id": "a", "gender": {"value": "Male", "visible": True}})
        flat = flatten_document({"_id": "a", "gender": "Male"})
        assert wrapped == flat == {"_id": "a", "gender": "Male"}

    def test_system_fields_untouched(self):
        doc = {"_id": {"value": "weird"}, "createdAt": 1, "gender": {"value": "F"}}
        flat = flatten_document(doc)
        assert flat["_id"] == {"value": "weird"}
        assert flat["gender"] == "F"

    def test_flatten_returns_copy(self):
        doc = {"gender": {"value": "Male"}}
        flatten_document(doc)
        assert doc == {"gender": {"value": "Male"}}

    def test_legacy_attributes(self):
        doc = {"_id": "x", "a": {"value": 1, "visible": True}, "b": 2, "c": {"value": None}}
        assert legacy_attributes(doc) == {"a": 1, "c": None}


class TestMeaningfulValue:
    """Tests for has_meaningful_value()."""

    @pytest.mark.parametrize("value", [None, "", "   ", "\t\n"])
    def test_empty_values(self, value):
        assert has_meaningful_value(value) is False

    @pytest.mark.parametrize("value", ["x", 0, False, [], {}, " a "])
    def test_meaningful_values(self, value):
        assert has_meaningful_value(value) is True


class TestKindInference:
    """Tests for infer_kind() and prefer_kind()."""

    @pytest.mark.parametrize(
        "value,kind",
        [
            (None, ValueKind.NULL),
            (True, ValueKind.BOOLEAN),
            (3, ValueKind.NUMBER),
            (2.5, ValueKind.NUMBER),
            ("x", ValueKind.STRING),
            (datetime(2024, 1, 2), ValueKind.DATE),
            ([1], ValueKind.ARRAY),
            ({"a": 1}, ValueKind.OBJECT),
        ],
    )
    def test_infer_kind(self, value, kind):
        assert infer_kind(value) is kind

    def test_null_is_replaced_by_concrete(self):
        assert prefer_kind(ValueKind.NULL, ValueKind.STRING) is ValueKind.STRING

    def test_first_concrete_kind_wins(self):
        assert prefer_kind(ValueKind.NUMBER, ValueKind.STRING) is ValueKind.NUMBER

    def test_null_never_replaces_concrete(self):
        assert prefer_kind(ValueKind.BOOLEAN, ValueKind.NULL) is ValueKind.BOOLEAN

    def test_observation_tracks_visibility(self):
        observation = FieldObservation()
        observation.observe(None)
        observation.observe({"value": "x", "visible": False})
        observation.observe({"value": "y", "visible": True})
        assert observation.kind is ValueKind.STRING
        assert observation.legacy_visible is False

    def test_looks_like_date(self):
        assert looks_like_date("2024-01-31")
        assert looks_like_date("2024-01-31T10:00:00Z")
        assert not looks_like_date("20240131")
        assert not looks_like_date("not-a-date")
