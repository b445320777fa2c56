"""Wiring of pipeline supervisors from worker settings."""

from datetime import timedelta
from typing import Optional

from lakehouse_cdc.cdc.postgres.connection import PostgresConnectionManager
from lakehouse_cdc.cdc.postgres.reader import PostgresReplicationReader
from lakehouse_cdc.common.config import PipelineConfig, Settings, get_settings
from lakehouse_cdc.common.errors import SourceNotReady
from lakehouse_cdc.iceberg.catalog import PyIcebergCatalog, TableCatalog
from lakehouse_cdc.iceberg.schema_mapper import SchemaRegistry
from lakehouse_cdc.iceberg.storage import ObjectStore, build_object_store
from lakehouse_cdc.observability.logging_config import get_logger
from lakehouse_cdc.observability.metrics import MetricsExporter
from lakehouse_cdc.pipeline.supervisor import PipelineSupervisor
from lakehouse_cdc.state.checkpoint import CheckpointManager, StateStore, build_state_store
from lakehouse_cdc.state.dead_letter import DeadLetterQueue

logger = get_logger(__name__)


class SupervisorFactory:
    """
    Builds supervisors that share the worker's catalog, storage and state store.

    Each pipeline still gets its own change stream, buffer and writer.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        catalog: Optional[TableCatalog] = None,
        object_store: Optional[ObjectStore] = None,
        state_store: Optional[StateStore] = None,
        metrics: Optional[MetricsExporter] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or PyIcebergCatalog(self.settings.catalog)
        self.object_store = object_store or build_object_store(self.settings.storage)
        self.state_store = state_store or build_state_store(self.settings.state)
        self.metrics = metrics or MetricsExporter()
        self.checkpoints = CheckpointManager(self.state_store)
        self.schemas = SchemaRegistry(self.state_store)
        self.dead_letters = DeadLetterQueue(
            self.state_store, retention=timedelta(hours=self.settings.state.dead_letter_retention_hours)
        )
        self._prepared = False

    def preflight(self, config: PipelineConfig) -> None:
        """
        Check a pipeline's source and prepare shared storage before it starts.

        Raises:
            SourceNotReady: If the source database does not decode WAL logically
            TransientIOError: If the source or the object store is unreachable
        """
        source = config.source
        with PostgresConnectionManager.from_config(source) as connections:
            if not connections.check_cdc_enabled():
                raise SourceNotReady(
                    f"wal_level of {source.host}:{source.port}/{source.db} is not logical", stage="reader"
                )
        if not self._prepared:
            self.object_store.prepare()
            self._prepared = True
        logger.info(f"Preflight of {config.pipeline_id} passed", extra={"pipeline": config.pipeline_id})

    def __call__(self, config: PipelineConfig) -> PipelineSupervisor:
        stream = PostgresReplicationReader(config.source, sorted(config.tables))
        return PipelineSupervisor(
            config,
            stream,
            self.catalog,
            self.object_store,
            self.checkpoints,
            self.schemas,
            default_namespace=self.settings.catalog.namespace,
            storage_prefix=self.settings.storage.prefix,
            poll_interval=self.settings.app.poll_interval_seconds,
            metrics=self.metrics,
            dead_letters=self.dead_letters,
        )

    def close(self) -> None:
        self.state_store.close()
