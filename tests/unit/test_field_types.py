"""
Unit tests for field metadata types.

Tests cover:
- FieldType parsing
- Field name validation
- Protected names
- FieldDescriptor validation and serialization
- Type mapping for synthesized descriptors
"""

from datetime import datetime

import pytest

from dbaas.voterdb.fields.types import (
    FieldDescriptor,
    FieldType,
    field_type_for_value,
    is_rename_protected,
    is_valid_field_name,
)


class TestFieldType:
    """Tests for FieldType."""

    @pytest.mark.parametrize("raw", ["Number", "number", "NUMBER", FieldType.NUMBER])
    def test_from_str_case_insensitive(self, raw):
        assert FieldType.from_str(raw) is FieldType.NUMBER

    def test_from_str_invalid(self):
        with pytest.raises(ValueError, match="Invalid field type"):
            FieldType.from_str("Decimal")


class TestFieldNames:
    """Tests for name validation and protection."""

    @pytest.mark.parametrize("name", ["score", "_hidden", "booth_2", "A"])
    def test_valid_names(self, name):
        assert is_valid_field_name(name)

    @pytest.mark.parametrize("name", ["", "2nd", "has space", "dash-ed", "dot.ted", None, 5])
    def test_invalid_names(self, name):
        assert not is_valid_field_name(name)

    @pytest.mark.parametrize("name", ["_id", "name", "NAME", "voterID", "voterid", "createdAt", "updatedat"])
    def test_rename_protected(self, name):
        assert is_rename_protected(name)

    def test_not_protected(self):
        assert not is_rename_protected("mobile")


class TestFieldDescriptor:
    """Tests for FieldDescriptor."""

    def test_defaults(self):
        descriptor = FieldDescriptor(name="score")
        assert descriptor.type is FieldType.STRING
        assert descriptor.visible is True
        assert descriptor.required is False

    def test_type_coerced_from_string(self):
        assert FieldDescriptor(name="score", type="number").type is FieldType.NUMBER

    def test_invalid_name_rejected(self):
        with pytest.raises(ValueError):
            FieldDescriptor(name="bad name")

    def test_round_trip_dict(self):
        descriptor = FieldDescriptor(
            name="flag", type=FieldType.BOOLEAN, default=False, label="Flag", visible=False
        )
        restored = FieldDescriptor.from_dict(descriptor.to_dict())
        assert restored == descriptor

    def test_from_dict_defaults_visible(self):
        assert FieldDescriptor.from_dict({"name": "x", "visible": None}).visible is True

    def test_with_changes_refreshes_updated_at(self):
        descriptor = FieldDescriptor(name="x", updated_at=1)
        changed = descriptor.with_changes(visible=False)
        assert changed.visible is False
        assert changed.updated_at > 1
        assert descriptor.visible is True


class TestTypeMapping:
    """Tests for field_type_for_value()."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, FieldType.STRING),
            ("Male", FieldType.STRING),
            ("2024-02-01", FieldType.DATE),
            (datetime(2024, 2, 1), FieldType.DATE),
            (3, FieldType.NUMBER),
            (True, FieldType.BOOLEAN),
            ([1], FieldType.ARRAY),
            ({"english": "x"}, FieldType.OBJECT),
        ],
    )
    def test_field_type_for_value(self, value, expected):
        assert field_type_for_value(value) is expected
