"""
Shared fixtures for VoterDB tests.

Most tests run against two in-memory constituencies (101 and 102) holding
3 and 5 members respectively, mixing flat and legacy-wrapped attributes.
"""

import pytest

from dbaas.voterdb.config import MigrationConfig, TenantConfig
from dbaas.voterdb.fanout import FanoutQueryEngine
from dbaas.voterdb.fields.evolution import FieldSchemaRegistry
from dbaas.voterdb.fields.store import InMemoryFieldStore
from dbaas.voterdb.partition.memory import InMemoryPartition
from dbaas.voterdb.service import MemberService
from dbaas.voterdb.tenancy import ShardRouter, TenantPartitionRegistry

TENANT_101_MEMBERS = [
    {"_id": "m1", "name": {"english": "Arun", "tamil": "அருண்"}, "gender": {"value": "Male", "visible": True},
     "age": 34, "aci_id": 101, "aci_name": "Dharapuram", "flag": True},
    {"_id": "m2", "name": {"english": "Banu"}, "gender": "Female", "age": 29,
     "aci_id": 101, "aci_name": "Dharapuram"},
    {"_id": "m3", "name": {"english": "Chitra"}, "gender": "Female", "age": {"value": 51, "visible": False},
     "aci_id": 101, "aci_name": "Dharapuram"},
]

TENANT_102_MEMBERS = [
    {"_id": "n1", "name": {"english": "Dinesh"}, "gender": "Male", "age": 40,
     "aci_id": 102, "ac_name": "Kangayam", "flag": True},
    {"_id": "n2", "name": {"english": "Ezhil"}, "gender": {"value": "Male"}, "age": 22,
     "aci_id": 102, "ac_name": "Kangayam"},
    {"_id": "n3", "name": {"english": "Fathima"}, "gender": "Female", "age": 63,
     "aci_id": 102, "ac_name": "Kangayam"},
    {"_id": "n4", "name": {"english": "Gopal"}, "gender": "Male", "age": 45,
     "aci_id": 102, "ac_name": "Kangayam"},
    {"_id": "n5", "name": {"english": "Hema"}, "gender": "Female", "age": 38,
     "aci_id": 102, "ac_name": "Kangayam"},
]


@pytest.fixture
def tenant_config():
    """Two constituencies, 101 named in configuration."""
    return TenantConfig(tenant_keys=(102, 101), names={101: "Dharapuram"})


@pytest.fixture
async def registry(tenant_config):
    """Connected registry over seeded in-memory partitions."""
    reg = TenantPartitionRegistry(tenant_config, InMemoryPartition)
    await reg.connect()
    await reg.resolve(101).insert_many(TENANT_101_MEMBERS)
    await reg.resolve(102).insert_many(TENANT_102_MEMBERS)
    yield reg
    await reg.close()


@pytest.fixture
def engine(registry):
    return FanoutQueryEngine(registry, max_workers=4, partition_sample=2)


@pytest.fixture
def field_store():
    return InMemoryFieldStore()


@pytest.fixture
def schema(registry, engine, field_store):
    return FieldSchemaRegistry(
        registry,
        engine,
        field_store,
        MigrationConfig(rename_batch_size=2, flatten_batch_size=2, visibility_sample_size=5),
    )


@pytest.fixture
def router(registry, engine):
    return ShardRouter(registry, engine)


@pytest.fixture
def service(registry, router, engine, schema):
    return MemberService(registry, router, engine, schema)
