"""Configuration management for the lakehouse CDC worker."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceConfig(BaseSettings):
    """Source database replication configuration."""

    model_config = SettingsConfigDict(env_prefix="SOURCE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "cdcdb"
    slot_name: str = "lakehouse_cdc"
    output_plugin: str = "wal2json"
    create_slot: bool = True
    ddl_message_prefix: str = "lakehouse_cdc.ddl"
    keepalive_interval: float = 10.0
    connect_retries: int = 3
    connect_retry_delay: float = 1.0

    def dsn(self) -> str:
        """Build a libpq connection string."""
        return (
            f"host={self.host} port={self.port} dbname={self.db} "
            f"user={self.user} password={self.password}"
        )


class CatalogConfig(BaseSettings):
    """Iceberg REST catalog configuration."""

    model_config = SettingsConfigDict(env_prefix="ICEBERG_")

    catalog_name: str = "lakehouse"
    uri: str = "http://localhost:8181"
    warehouse: str = "s3://warehouse/"
    namespace: str = "cdc"
    s3_endpoint: str = "http://localhost:9000"
    s3_access_key: str = "minioadmin"
    s3_secret_key: str = "minioadmin"
    token: Optional[str] = None

    def properties(self) -> Dict[str, str]:
        """Catalog properties as understood by pyiceberg.load_catalog."""
        props = {
            "type": "rest",
            "uri": self.uri,
            "warehouse": self.warehouse,
            "s3.endpoint": self.s3_endpoint,
            "s3.access-key-id": self.s3_access_key,
            "s3.secret-access-key": self.s3_secret_key,
            "s3.path-style-access": "true",
        }
        if self.token:
            props["token"] = self.token
        return props


class StorageConfig(BaseSettings):
    """Object storage configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    backend: str = "minio"
    endpoint: str = "localhost:9000"
    access_key: str = "minioadmin"
    secret_key: str = "minioadmin"
    secure: bool = False
    bucket: str = "warehouse"
    prefix: str = "cdc"
    local_root: str = "./lakehouse-data"


class BatchConfig(BaseSettings):
    """Batch trigger thresholds."""

    model_config = SettingsConfigDict(env_prefix="BATCH_")

    max_rows: int = 1000
    max_bytes: int = 16 * 1024 * 1024
    max_wait_seconds: float = 5.0


class BufferConfig(BaseSettings):
    """Per-table and per-pipeline buffer bounds."""

    model_config = SettingsConfigDict(env_prefix="BUFFER_")

    table_capacity: int = 10000
    total_capacity: Optional[int] = 50000


class RetryConfig(BaseSettings):
    """Backoff policy for retryable failures."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    # Attempts including the first try: 3 means one try and two retries.
    max_attempts: int = 3
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    commit_conflict_retries: int = 5


class StateConfig(BaseSettings):
    """Where checkpoints, schema versions and dead letters are persisted."""

    model_config = SettingsConfigDict(env_prefix="STATE_")

    backend: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "cdcdb"
    schema_name: str = "lakehouse_cdc"
    sqlite_path: str = "./lakehouse-cdc-state.db"
    dead_letter_retention_hours: int = 168


class ObservabilityConfig(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(env_prefix="")

    metrics_port: int = Field(default=8000, alias="METRICS_PORT")
    health_check_port: int = Field(default=8001, alias="HEALTH_CHECK_PORT")


class ApplicationConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"
    poll_interval_seconds: float = 0.5


class Settings(BaseSettings):
    """Main settings container."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    source: SourceConfig = Field(default_factory=SourceConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    app: ApplicationConfig = Field(default_factory=ApplicationConfig)


class PipelineConfig(BaseModel):
    """Definition of one pipeline, as handed over by the management API."""

    pipeline_id: str
    tables: Dict[str, str] = Field(default_factory=dict)
    source: SourceConfig = Field(default_factory=SourceConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    namespace: Optional[str] = None
    initial_position: Optional[str] = None
    merge_on_read: bool = False

    @field_validator("pipeline_id")
    @classmethod
    def _check_pipeline_id(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("pipeline_id must be non-empty and contain no '/'")
        return value

    @field_validator("initial_position")
    @classmethod
    def _check_initial_position(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            from lakehouse_cdc.cdc.models import ReplicationPosition

            ReplicationPosition.parse(value)
        return value

    def destination_for(self, source_table: str, default_namespace: str) -> str:
        """
        Map a source table to its destination table identifier.

        Args:
            source_table: Qualified source table (schema.table)
            default_namespace: Namespace used when the table is not mapped

        Returns:
            Destination identifier (namespace.table)
        """
        if source_table in self.tables:
            return self.tables[source_table]
        namespace = self.namespace or default_namespace
        return f"{namespace}.{source_table.split('.')[-1]}"

    @classmethod
    def from_file(cls, path: str) -> "PipelineConfig":
        """Load a pipeline definition from a JSON file."""
        return cls.model_validate(json.loads(Path(path).read_text()))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
