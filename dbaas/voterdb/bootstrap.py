"""
VoterDB bootstrap - wires the data layer together.

This module builds a ready-to-use MemberService from configuration:
- Tenant registry with one partition per configured TenantKey
- Fan-out engine and shard router over that registry
- Field metadata store and schema registry

The HTTP layer that consumes MemberService lives elsewhere; there is no
command-line entry point.

Invariants:
    - Every partition is connected before the service is returned
    - The metadata store is initialized before the service is returned
    - Logging is configured once per process, by the caller

How to change safely:
    - Add new components here, not in MemberService.__init__
    - Keep close() in reverse order of construction
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import json_log_formatter

from .config import ServerConfig, StorageBackend
from .fanout import FanoutQueryEngine
from .fields.evolution import FieldSchemaRegistry
from .fields.store import InMemoryFieldStore, SqliteFieldStore
from .partition.base import create_partition
from .service import MemberService
from .tenancy import ShardRouter, TenantPartitionRegistry

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def create_field_store(config: ServerConfig):
    """Create the field metadata store matching the storage backend."""
    if config.storage.backend == StorageBackend.MEMORY:
        return InMemoryFieldStore()
    return SqliteFieldStore(
        config.storage.metadata_db_path,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )


async def build_service(config: Optional[ServerConfig] = None) -> MemberService:
    """Build and connect every component.

    Args:
        config: Optional configuration (loaded from env if not provided)

    Returns:
        Connected MemberService

    Raises:
        ValueError: If configuration is invalid
        PartitionTransportError: If a partition cannot be opened
    """
    config = config or ServerConfig.from_env()
    config.validate()
    config.log_config()

    if config.storage.backend == StorageBackend.SQLITE:
        Path(config.storage.data_dir).mkdir(parents=True, exist_ok=True)

    registry = TenantPartitionRegistry(
        config.tenants,
        lambda tenant_key: create_partition(tenant_key, config.storage),
    )
    await registry.connect()

    engine = FanoutQueryEngine(
        registry,
        max_workers=config.fanout.max_workers,
        partition_sample=config.fanout.partition_sample,
    )
    router = ShardRouter(registry, engine)

    store = create_field_store(config)
    await store.initialize()
    schema = FieldSchemaRegistry(registry, engine, store, config.migration)

    logger.info(
        "VoterDB service ready",
        extra={"tenant_count": len(registry), "storage_backend": config.storage.backend.value},
    )
    return MemberService(registry, router, engine, schema)


async def close_service(service: MemberService) -> None:
    """Release the metadata store and every partition."""
    await service.schema.store.close()
    await service.registry.close()
    logger.info("VoterDB service closed")
