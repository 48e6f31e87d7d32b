"""
Configuration management for VoterDB.

All configuration is done via environment variables, with one exception: the
tenant map may be supplied as a YAML file (TENANT_CONFIG_FILE) because it
carries a display name per constituency.

Invariants:
    - All settings have sensible defaults for local development
    - The tenant set is immutable once loaded; it is injected into the
      registry, never read from a global
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Tenant keys are fixed per deployment; changing them is a
      re-partitioning, which this system does not do automatically
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TENANT_KEYS: tuple[int, ...] = (
    101, 102, 108, 109, 110, 111, 112, 113, 114, 115, 116,
    117, 118, 119, 120, 121, 122, 123, 124, 125, 126,
)


class StorageBackend(Enum):
    """Supported partition storage backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _parse_tenant_keys(raw: str) -> tuple[int, ...]:
    keys = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            keys.append(int(part))
        except ValueError:
            raise ValueError(f"Invalid tenant key '{part}' in TENANT_KEYS")
    return tuple(keys)


@dataclass(frozen=True)
class TenantConfig:
    """Fixed tenant (constituency) configuration.

    Attributes:
        tenant_keys: Every known TenantKey, one partition each
        names: Optional display name per key, used as routing aliases
        alias_fields: Document attributes probed when resolving an alias
        key_fields: Document attributes holding the tenant key of a member
    """

    tenant_keys: tuple[int, ...] = DEFAULT_TENANT_KEYS
    names: Mapping[int, str] = field(default_factory=dict)
    alias_fields: tuple[str, ...] = ("aci_name", "ac_name")
    key_fields: tuple[str, ...] = ("aci_id", "aci_num")

    @classmethod
    def from_yaml(cls, path: str | Path) -> TenantConfig:
        """Load the tenant map from a YAML file.

        Expected format::

            tenants:
              - key: 101
                name: Dharapuram
              - key: 102
                name: Kangayam
            alias_fields: [aci_name, ac_name]

        Raises:
            ValueError: If the file is malformed
        """
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TenantConfig:
        """Create from dictionary representation."""
        tenants = data.get("tenants")
        if not isinstance(tenants, list) or not tenants:
            raise ValueError("Tenant configuration requires a non-empty 'tenants' list")

        keys = []
        names = {}
        for entry in tenants:
            if isinstance(entry, Mapping):
                key = entry.get("key")
                name = entry.get("name")
            else:
                key, name = entry, None
            if isinstance(key, bool) or not isinstance(key, int):
                raise ValueError(f"Tenant key must be an integer, got {key!r}")
            keys.append(key)
            if name:
                names[key] = str(name)

        kwargs: dict[str, Any] = {"tenant_keys": tuple(keys), "names": names}
        if data.get("alias_fields"):
            kwargs["alias_fields"] = tuple(data["alias_fields"])
        if data.get("key_fields"):
            kwargs["key_fields"] = tuple(data["key_fields"])
        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> TenantConfig:
        """Load configuration from environment variables."""
        config_file = os.getenv("TENANT_CONFIG_FILE")
        if config_file:
            return cls.from_yaml(config_file)
        raw = os.getenv("TENANT_KEYS")
        if raw:
            return cls(tenant_keys=_parse_tenant_keys(raw))
        return cls()

    def validate(self) -> None:
        if not self.tenant_keys:
            raise ValueError("At least one tenant key is required")
        for key in self.tenant_keys:
            if isinstance(key, bool) or not isinstance(key, int) or key <= 0:
                raise ValueError(f"Tenant keys must be positive integers, got {key!r}")
        if len(set(self.tenant_keys)) != len(self.tenant_keys):
            raise ValueError("Tenant keys must be unique")
        unknown = set(self.names) - set(self.tenant_keys)
        if unknown:
            raise ValueError(f"Names given for unknown tenant keys: {sorted(unknown)}")


@dataclass(frozen=True)
class StorageConfig:
    """Partition storage configuration.

    Attributes:
        backend: Partition backend (memory or sqlite)
        data_dir: Directory for SQLite databases
        partition_db_pattern: Pattern for partition database files
        metadata_db_name: File name of the field metadata database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        indexed_fields: Attributes given an expression index in each partition
        scan_batch_size: Rows read per batch by SQLite partition scans and updates
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "/var/lib/voterdb"
    partition_db_pattern: str = "voters_{tenant_key}.db"
    metadata_db_name: str = "voter_fields.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    indexed_fields: tuple[str, ...] = ("aci_id", "aci_num", "aci_name", "ac_name")
    scan_batch_size: int = 500

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/voterdb"),
            partition_db_pattern=os.getenv("PARTITION_DB_PATTERN", "voters_{tenant_key}.db"),
            metadata_db_name=os.getenv("METADATA_DB_NAME", "voter_fields.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            indexed_fields=tuple(
                name.strip()
                for name in os.getenv(
                    "PARTITION_INDEXED_FIELDS", "aci_id,aci_num,aci_name,ac_name"
                ).split(",")
                if name.strip()
            ),
            scan_batch_size=int(os.getenv("PARTITION_SCAN_BATCH_SIZE", "500")),
        )

    @property
    def metadata_db_path(self) -> str:
        return str(Path(self.data_dir) / self.metadata_db_name)


@dataclass(frozen=True)
class FanoutConfig:
    """Fan-out query configuration.

    Attributes:
        max_workers: Maximum partitions queried concurrently
            (capped at the number of partitions)
        partition_sample: Maximum documents fetched per partition per
            round-trip by find_across_all
    """

    max_workers: int = 8
    partition_sample: int = 500

    @classmethod
    def from_env(cls) -> FanoutConfig:
        """Load configuration from environment variables."""
        return cls(
            max_workers=int(os.getenv("FANOUT_MAX_WORKERS", "8")),
            partition_sample=int(os.getenv("FANOUT_PARTITION_SAMPLE", "500")),
        )


@dataclass(frozen=True)
class MigrationConfig:
    """Schema-evolution configuration.

    Attributes:
        rename_batch_size: Documents rewritten per batch during rename
        flatten_batch_size: Documents per batch when flattening legacy values
        discovery_sample_size: Default documents sampled by field discovery
        discovery_tenant: Partition sampled by field discovery
            (first configured key when unset)
        visibility_sample_size: Documents sampled to infer the type of a
            field that has no descriptor yet
    """

    rename_batch_size: int = 100
    flatten_batch_size: int = 500
    discovery_sample_size: int = 50
    discovery_tenant: int | None = None
    visibility_sample_size: int = 20

    @classmethod
    def from_env(cls) -> MigrationConfig:
        """Load configuration from environment variables."""
        discovery_tenant = os.getenv("DISCOVERY_TENANT")
        return cls(
            rename_batch_size=int(os.getenv("RENAME_BATCH_SIZE", "100")),
            flatten_batch_size=int(os.getenv("FLATTEN_BATCH_SIZE", "500")),
            discovery_sample_size=int(os.getenv("DISCOVERY_SAMPLE_SIZE", "50")),
            discovery_tenant=int(discovery_tenant) if discovery_tenant else None,
            visibility_sample_size=int(os.getenv("VISIBILITY_SAMPLE_SIZE", "20")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        tenants: Fixed tenant set
        storage: Partition and metadata storage
        fanout: Fan-out query tuning
        migration: Schema-evolution batch sizes and sampling
        observability: Logging configuration
    """

    tenants: TenantConfig = field(default_factory=TenantConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    fanout: FanoutConfig = field(default_factory=FanoutConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            tenants=TenantConfig.from_env(),
            storage=StorageConfig.from_env(),
            fanout=FanoutConfig.from_env(),
            migration=MigrationConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        self.tenants.validate()

        if self.fanout.max_workers < 1:
            raise ValueError("FANOUT_MAX_WORKERS must be at least 1")
        if self.fanout.partition_sample < 1:
            raise ValueError("FANOUT_PARTITION_SAMPLE must be at least 1")
        if self.migration.rename_batch_size < 1 or self.migration.flatten_batch_size < 1:
            raise ValueError("Batch sizes must be at least 1")
        if self.storage.scan_batch_size < 1:
            raise ValueError("PARTITION_SCAN_BATCH_SIZE must be at least 1")

        discovery = self.migration.discovery_tenant
        if discovery is not None and discovery not in self.tenants.tenant_keys:
            raise ValueError(f"DISCOVERY_TENANT {discovery} is not a configured tenant key")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if self.storage.backend == StorageBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "VoterDB configuration loaded",
            extra={
                "tenant_count": len(self.tenants.tenant_keys),
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StorageBackend.SQLITE
                else None,
                "fanout_max_workers": self.fanout.max_workers,
                "rename_batch_size": self.migration.rename_batch_size,
                "flatten_batch_size": self.migration.flatten_batch_size,
                "log_level": self.observability.log_level,
            },
        )
