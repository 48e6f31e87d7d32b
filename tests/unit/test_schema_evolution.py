"""
Unit tests for online schema evolution.

Tests cover:
- add_field with default backfill
- rename_field outcomes (renamed, merged, rejected) and validation
- Descriptor conflicts during rename
- delete_field, set_visibility, update_field
- Legacy-to-flat conversion
- Field discovery
- Partial failures during batched writes
"""

import logging

import pytest

from dbaas.voterdb.errors import (
    CriticalFieldProtectedError,
    DuplicateFieldError,
    InvalidFieldNameError,
    InvalidRequestError,
    NotFoundError,
    PartialMigrationError,
)
from dbaas.voterdb.fields.evolution import FieldSchemaRegistry, RenameOutcome
from dbaas.voterdb.fields.store import DuplicateFieldNameError, InMemoryFieldStore
from dbaas.voterdb.fields.types import FieldDescriptor, FieldType
from dbaas.voterdb.normalizer import ValueKind, is_legacy_wrapped


class RacingFieldStore(InMemoryFieldStore):
    """Store whose rename loses a race against a concurrent insert."""

    async def rename(self, old_name, new_name):
        raise DuplicateFieldNameError(new_name)


async def _set(registry, tenant_key, doc_id, **fields):
    await registry.resolve(tenant_key).update_one(doc_id, fields)


class TestAddField:
    """Tests for add_field()."""

    @pytest.mark.asyncio
    async def test_backfills_missing_members(self, schema, engine):
        report = await schema.add_field("flag", "Boolean", default=False)

        assert report.backfilled == 6
        assert report.total_members == 8
        assert report.per_tenant == {101: 2, 102: 4}
        assert report.descriptor.type is FieldType.BOOLEAN
        assert await engine.count_across_all({"flag": True}) == 2
        assert await engine.count_across_all({"flag": False}) == 6

    @pytest.mark.asyncio
    async def test_existing_values_untouched(self, schema, registry):
        await _set(registry, 102, "n3", score=7)
        await schema.add_field("score", "Number", default=0)

        assert (await registry.resolve(102).get("n3"))["score"] == 7
        assert (await registry.resolve(101).get("m1"))["score"] == 0

    @pytest.mark.asyncio
    async def test_empty_string_default_backfills_null(self, schema, registry):
        report = await schema.add_field("booth", "String", default="")
        assert report.backfilled == 8
        doc = await registry.resolve(101).get("m2")
        assert "booth" in doc and doc["booth"] is None

    @pytest.mark.asyncio
    async def test_descriptor_persisted(self, schema):
        await schema.add_field("booth", "string", label="Booth", visible=False)
        descriptor = await schema.get_descriptor("booth")
        assert descriptor.label == "Booth"
        assert descriptor.visible is False
        assert [d.name for d in await schema.list_descriptors()] == ["booth"]

    @pytest.mark.asyncio
    async def test_duplicate(self, schema):
        await schema.add_field("booth", "String")
        with pytest.raises(DuplicateFieldError):
            await schema.add_field("booth", "Number")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["2nd", "has space", "", "dash-ed"])
    async def test_invalid_name(self, schema, name):
        with pytest.raises(InvalidFieldNameError):
            await schema.add_field(name, "String")

    @pytest.mark.asyncio
    async def test_invalid_type(self, schema):
        with pytest.raises(InvalidRequestError):
            await schema.add_field("booth", "Decimal")
        assert await schema.get_descriptor("booth") is None

    @pytest.mark.asyncio
    async def test_report_message(self, schema):
        report = await schema.add_field("flag", "Boolean", default=False)
        body = report.to_dict()
        assert body["message"] == (
            'Field "flag" has been added to all 8 members. 6 members were updated.'
        )
        assert body["field"]["type"] == "Boolean"


class TestRenameField:
    """Tests for rename_field()."""

    @pytest.mark.asyncio
    async def test_plain_rename(self, schema, field_store, engine):
        await field_store.insert(FieldDescriptor(name="aci_name", label="Constituency"))

        result = await schema.rename_field("aci_name", "constituency")

        assert result.outcome is RenameOutcome.RENAMED
        assert result.renamed_count == 3
        assert result.members_with_field == 3
        assert result.total_members == 8
        assert result.per_tenant == {101: 3, 102: 0}
        assert await engine.count_across_all({"aci_name": {"$exists": True}}) == 0
        assert await engine.count_across_all({"constituency": "Dharapuram"}) == 3
        assert (await field_store.get("constituency")).label == "Constituency"
        assert await field_store.get("aci_name") is None

    @pytest.mark.asyncio
    async def test_rename_unwraps_legacy_values(self, schema, registry):
        await schema.rename_field("age", "years")
        doc = await registry.resolve(101).get("m3")
        assert doc["years"] == 51
        assert "age" not in doc

    @pytest.mark.asyncio
    async def test_merge_into_document_values(self, schema, registry):
        await _set(registry, 101, "m1", mobile="999", phone="")
        await _set(registry, 102, "n1", mobile="888", phone="777")
        await _set(registry, 102, "n2", mobile={"value": "555", "visible": True})

        result = await schema.rename_field("mobile", "phone")

        assert result.outcome is RenameOutcome.MERGED
        assert result.merged
        assert result.renamed_count == 3
        assert result.merged_count == 1
        assert result.per_tenant == {101: 1, 102: 2}

        m1 = await registry.resolve(101).get("m1")
        n1 = await registry.resolve(102).get("n1")
        n2 = await registry.resolve(102).get("n2")
        # Empty destination takes the source; a meaningful destination wins
        assert m1["phone"] == "999"
        assert n1["phone"] == "777"
        assert n2["phone"] == "555"
        assert all("mobile" not in doc for doc in (m1, n1, n2))

    @pytest.mark.asyncio
    async def test_empty_destination_kept_when_source_empty(self, schema, registry):
        await _set(registry, 101, "m1", mobile=None, phone="")
        await _set(registry, 102, "n1", mobile="  ", phone=None)

        result = await schema.rename_field("mobile", "phone")

        assert result.merged_count == 0
        m1 = await registry.resolve(101).get("m1")
        n1 = await registry.resolve(102).get("n1")
        assert m1["phone"] == ""
        assert n1["phone"] is None
        assert "mobile" not in m1 and "mobile" not in n1

    @pytest.mark.asyncio
    async def test_merge_when_destination_only_in_metadata(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="aci_name"))
        await field_store.insert(FieldDescriptor(name="constituency", label="Kept"))

        result = await schema.rename_field("aci_name", "constituency")

        assert result.outcome is RenameOutcome.MERGED
        assert result.renamed_count == 3
        assert result.merged_count == 0
        assert await field_store.get("aci_name") is None
        assert (await field_store.get("constituency")).label == "Kept"

    @pytest.mark.asyncio
    async def test_descriptor_conflict_becomes_merge(self, registry, engine, caplog):
        store = RacingFieldStore()
        await store.insert(FieldDescriptor(name="aci_name"))
        schema = FieldSchemaRegistry(registry, engine, store)

        with caplog.at_level(logging.WARNING, logger="dbaas.voterdb.fields.evolution"):
            result = await schema.rename_field("aci_name", "constituency")

        assert result.outcome is RenameOutcome.MERGED
        assert result.renamed_count == 3
        assert await store.get("aci_name") is None
        assert any("appeared during rename" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_destination_name_is_stripped(self, schema, engine):
        result = await schema.rename_field("aci_name", "  constituency ")
        assert result.new_name == "constituency"
        assert await engine.count_across_all({"constituency": {"$exists": True}}) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("old_name", ["_id", "name", "voterID", "createdAt", "updatedAt"])
    async def test_protected_source(self, schema, old_name):
        with pytest.raises(CriticalFieldProtectedError):
            await schema.rename_field(old_name, "other")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("new_name", ["", "   ", "bad name", "9lives", None])
    async def test_invalid_destination(self, schema, new_name):
        with pytest.raises(InvalidFieldNameError):
            await schema.rename_field("gender", new_name)

    @pytest.mark.asyncio
    async def test_same_name_rejected(self, schema, registry):
        before = registry.resolve(101).call_count
        result = await schema.rename_field("gender", "gender")
        assert result.outcome is RenameOutcome.REJECTED
        assert registry.resolve(101).call_count == before

    @pytest.mark.asyncio
    async def test_missing_field_rejected(self, schema):
        result = await schema.rename_field("nickname", "alias")
        body = result.to_dict()
        assert result.outcome is RenameOutcome.REJECTED
        assert body["members_with_field"] == 0
        assert body["total_members"] == 8
        assert "total members: 8" in body["message"]

    @pytest.mark.asyncio
    async def test_report_counts_members_without_field(self, schema):
        result = await schema.rename_field("flag", "flagged")
        body = result.to_dict()
        assert body["members_with_field"] == 2
        assert body["members_without_field"] == 6
        assert body["outcome"] == "renamed"


class TestDeleteField:
    """Tests for delete_field()."""

    @pytest.mark.asyncio
    async def test_unsets_everywhere(self, schema, engine):
        report = await schema.delete_field("flag")
        assert report.members_affected == 2
        assert report.per_tenant == {101: 1, 102: 1}
        assert report.was_in_schema is False
        assert await engine.count_across_all({"flag": {"$exists": True}}) == 0

    @pytest.mark.asyncio
    async def test_removes_descriptor(self, schema, field_store):
        await schema.add_field("booth", "String", default="A")
        report = await schema.delete_field("booth")
        assert report.was_in_schema is True
        assert report.members_affected == 8
        assert await field_store.get("booth") is None

    @pytest.mark.asyncio
    async def test_unknown_field_is_noop(self, schema):
        report = await schema.delete_field("nickname")
        assert report.members_affected == 0
        assert report.was_in_schema is False


class TestSetVisibility:
    """Tests for set_visibility()."""

    @pytest.mark.asyncio
    async def test_existing_descriptor(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="gender", label="Gender"))
        descriptor = await schema.set_visibility("gender", False)
        assert descriptor.visible is False
        stored = await field_store.get("gender")
        assert stored.visible is False
        assert stored.label == "Gender"

    @pytest.mark.asyncio
    async def test_synthesizes_descriptor_from_samples(self, schema, field_store):
        descriptor = await schema.set_visibility("age", False)
        assert descriptor.type is FieldType.NUMBER
        assert descriptor.visible is False
        assert descriptor.required is False
        assert await field_store.get("age") == descriptor

    @pytest.mark.asyncio
    async def test_synthesized_string(self, schema):
        descriptor = await schema.set_visibility("gender", True)
        assert descriptor.type is FieldType.STRING

    @pytest.mark.asyncio
    async def test_unknown_field(self, schema):
        with pytest.raises(NotFoundError):
            await schema.set_visibility("nickname", True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["_id", "createdAt", "updatedAt"])
    async def test_protected(self, schema, name):
        with pytest.raises(CriticalFieldProtectedError):
            await schema.set_visibility(name, False)

    @pytest.mark.asyncio
    async def test_visible_must_be_bool(self, schema):
        with pytest.raises(InvalidRequestError):
            await schema.set_visibility("gender", "yes")


class TestUpdateField:
    """Tests for update_field()."""

    @pytest.mark.asyncio
    async def test_patch_descriptor(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="booth"))
        report = await schema.update_field("booth", {"type": "number", "label": "Booth No"})
        assert report.descriptor.type is FieldType.NUMBER
        assert report.descriptor.label == "Booth No"
        assert report.backfilled == 0
        assert (await field_store.get("booth")).type is FieldType.NUMBER

    @pytest.mark.asyncio
    async def test_default_backfills_missing_only(self, schema, field_store, registry):
        await field_store.insert(FieldDescriptor(name="district"))
        await _set(registry, 101, "m1", district="Erode")

        report = await schema.update_field("district", {"default": "Tiruppur"})

        assert report.backfilled == 7
        assert report.per_tenant == {101: 2, 102: 5}
        assert (await registry.resolve(101).get("m1"))["district"] == "Erode"
        assert (await registry.resolve(102).get("n5"))["district"] == "Tiruppur"
        assert (await field_store.get("district")).default == "Tiruppur"

    @pytest.mark.asyncio
    async def test_empty_default_not_backfilled(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="district", default="X"))
        report = await schema.update_field("district", {"default": ""})
        assert report.backfilled == 0
        assert report.descriptor.default == ""

    @pytest.mark.asyncio
    async def test_missing_descriptor(self, schema):
        with pytest.raises(NotFoundError):
            await schema.update_field("booth", {"label": "x"})

    @pytest.mark.asyncio
    async def test_invalid_patch(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="booth"))
        with pytest.raises(InvalidRequestError):
            await schema.update_field("booth", {"type": "Decimal"})
        with pytest.raises(InvalidRequestError):
            await schema.update_field("booth", {"visible": "no"})


class TestFlatten:
    """Tests for convert_all_legacy_to_flat()."""

    @pytest.mark.asyncio
    async def test_flattens_every_partition(self, schema, registry):
        report = await schema.convert_all_legacy_to_flat()

        assert report.flattened_fields == 3
        assert report.members_updated == 3
        assert report.members_checked == 8
        assert report.per_tenant[101].flattened_fields == 2
        assert report.per_tenant[102].members_updated == 1

        for _, handle in registry.partitions():
            for doc in handle.all_documents():
                assert not any(is_legacy_wrapped(v) for k, v in doc.items() if k != "name")
        assert (await registry.resolve(101).get("m1"))["gender"] == "Male"
        assert (await registry.resolve(101).get("m3"))["age"] == 51

    @pytest.mark.asyncio
    async def test_flattens_wrapper_with_non_bool_visible(self, schema, registry):
        await registry.resolve(102).update_one("n4", {"gender": {"value": "Male", "visible": "yes"}})
        report = await schema.convert_all_legacy_to_flat()
        assert report.flattened_fields == 4
        assert (await registry.resolve(102).get("n4"))["gender"] == "Male"

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(self, schema):
        await schema.convert_all_legacy_to_flat()
        report = await schema.convert_all_legacy_to_flat()
        assert report.flattened_fields == 0
        assert report.members_updated == 0

    @pytest.mark.asyncio
    async def test_counts_unchanged(self, schema, engine):
        before = await engine.count_across_all({"gender": "Male"})
        await schema.convert_all_legacy_to_flat()
        assert await engine.count_across_all({"gender": "Male"}) == before

    @pytest.mark.asyncio
    async def test_report_dict(self, schema):
        body = (await schema.convert_all_legacy_to_flat()).to_dict()
        assert body["message"] == (
            "Flattened 3 legacy field instances across 3 member documents"
        )
        assert body["per_tenant"][102] == {
            "flattened_fields": 1,
            "members_updated": 1,
            "members_checked": 5,
        }


class TestDiscoverFields:
    """Tests for discover_fields()."""

    @pytest.mark.asyncio
    async def test_catalogue_from_first_partition(self, schema):
        report = await schema.discover_fields()

        assert report.tenant_key == 101
        assert report.total_members == 3
        assert report.samples_analyzed == 3
        assert [f.name for f in report.fields] == [
            "aci_id", "aci_name", "age", "flag", "gender", "name",
        ]

    @pytest.mark.asyncio
    async def test_types_visibility_and_samples(self, schema, field_store):
        await field_store.insert(FieldDescriptor(name="flag", visible=False))
        fields = {f.name: f for f in (await schema.discover_fields()).fields}

        assert fields["age"].type is ValueKind.NUMBER
        # Legacy wrapper visibility wins
        assert fields["age"].visible is False
        assert fields["gender"].visible is True
        # Descriptor visibility otherwise
        assert fields["flag"].visible is False
        assert fields["aci_name"].visible is True
        assert fields["name"].type is ValueKind.OBJECT

        assert fields["gender"].samples == [
            {"value": "Male", "type": "String"},
            {"value": "Female", "type": "String"},
        ]
        assert fields["aci_id"].samples == [{"value": 101, "type": "Number"}]

    @pytest.mark.asyncio
    async def test_object_samples_truncated(self, schema):
        fields = {f.name: f for f in (await schema.discover_fields()).fields}
        for sample in fields["name"].samples:
            assert isinstance(sample["value"], str)
            assert len(sample["value"]) <= 53

    @pytest.mark.asyncio
    async def test_sample_size(self, schema):
        report = await schema.discover_fields(sample_size=1)
        assert report.samples_analyzed == 1
        assert report.total_members == 3


class TestPartialMigration:
    """Tests for failures part-way through batched writes."""

    @pytest.mark.asyncio
    async def test_rename_keeps_committed_batches(self, schema, registry):
        for doc_id in ("n1", "n2", "n3", "n4", "n5"):
            await _set(registry, 102, doc_id, mobile=doc_id)
        registry.resolve(102).inject_failure(operation="bulk_update", after=1)

        with pytest.raises(PartialMigrationError) as exc_info:
            await schema.rename_field("mobile", "phone")

        error = exc_info.value
        assert error.operation == "rename_field"
        assert error.report.renamed_count == 2
        assert error.details["partial"]["members_affected"] == 2

        registry.resolve(102).clear_failure()
        docs = registry.resolve(102).all_documents()
        assert sum("phone" in doc for doc in docs) == 2
        assert sum("mobile" in doc for doc in docs) == 3

    @pytest.mark.asyncio
    async def test_add_field_reports_finished_partitions(self, schema, registry):
        registry.resolve(102).inject_failure(operation="update_many")

        with pytest.raises(PartialMigrationError) as exc_info:
            await schema.add_field("flag2", "Boolean", default=False)

        assert exc_info.value.report.per_tenant == {101: 3}
        assert exc_info.value.code == "PARTIAL_MIGRATION"

    @pytest.mark.asyncio
    async def test_flatten_reports_progress(self, schema, registry):
        registry.resolve(102).inject_failure(operation="bulk_update")

        with pytest.raises(PartialMigrationError) as exc_info:
            await schema.convert_all_legacy_to_flat()

        report = exc_info.value.report
        assert report.per_tenant[101].members_updated == 2
        assert report.members_updated == 2
