"""
Unit tests for the field metadata stores.

Both backends run the same tests:
- Insert with unique names
- Update, rename, delete
- Sorted listing
"""

import pytest

from dbaas.voterdb.fields.store import (
    DuplicateFieldNameError,
    InMemoryFieldStore,
    MetadataStoreError,
    SqliteFieldStore,
)
from dbaas.voterdb.fields.types import FieldDescriptor, FieldType


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Each test runs against both backends."""
    if request.param == "memory":
        s = InMemoryFieldStore()
    else:
        s = SqliteFieldStore(str(tmp_path / "voter_fields.db"))
    await s.initialize()
    yield s
    await s.close()


class TestFieldStore:
    """Tests shared by every field store backend."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        await store.insert(FieldDescriptor(name="score", type=FieldType.NUMBER, default=0))
        descriptor = await store.get("score")
        assert descriptor.type is FieldType.NUMBER
        assert descriptor.default == 0
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, store):
        await store.insert(FieldDescriptor(name="score"))
        with pytest.raises(DuplicateFieldNameError) as exc_info:
            await store.insert(FieldDescriptor(name="score"))
        assert exc_info.value.code == "DUPLICATE_KEY"

    @pytest.mark.asyncio
    async def test_list_sorted(self, store):
        for name in ("zeta", "alpha", "mid"):
            await store.insert(FieldDescriptor(name=name))
        assert [d.name for d in await store.list_all()] == ["alpha", "mid", "zeta"]

    @pytest.mark.asyncio
    async def test_update(self, store):
        descriptor = await store.insert(FieldDescriptor(name="score"))
        await store.update(descriptor.with_changes(visible=False, label="Score"))
        stored = await store.get("score")
        assert stored.visible is False
        assert stored.label == "Score"
        assert await store.update(FieldDescriptor(name="missing")) is None

    @pytest.mark.asyncio
    async def test_rename(self, store):
        await store.insert(FieldDescriptor(name="mobile", label="Mobile"))
        renamed = await store.rename("mobile", "phone")
        assert renamed.name == "phone"
        assert (await store.get("phone")).label == "Mobile"
        assert await store.get("mobile") is None
        assert await store.rename("missing", "other") is None

    @pytest.mark.asyncio
    async def test_rename_onto_existing(self, store):
        await store.insert(FieldDescriptor(name="mobile"))
        await store.insert(FieldDescriptor(name="phone"))
        with pytest.raises(DuplicateFieldNameError):
            await store.rename("mobile", "phone")
        assert await store.get("mobile") is not None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.insert(FieldDescriptor(name="score"))
        assert await store.delete("score") is True
        assert await store.delete("score") is False


class TestSqliteFieldStoreErrors:
    """SQLite-specific failure handling."""

    @pytest.mark.asyncio
    async def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        store = SqliteFieldStore(str(blocker / "nested" / "voter_fields.db"))
        with pytest.raises(MetadataStoreError):
            await store.initialize()
