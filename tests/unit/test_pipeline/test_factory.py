"""Unit tests for supervisor wiring."""

from unittest.mock import MagicMock, patch

import pytest

from lakehouse_cdc.cdc.postgres.reader import PostgresReplicationReader
from lakehouse_cdc.common.config import PipelineConfig, Settings, SourceConfig
from lakehouse_cdc.common.errors import SourceNotReady
from lakehouse_cdc.iceberg.storage import ObjectStore
from lakehouse_cdc.pipeline.factory import SupervisorFactory
from lakehouse_cdc.pipeline.registry import PipelineRegistry
from lakehouse_cdc.pipeline.state import PipelineStatus

CONNECT = "lakehouse_cdc.cdc.postgres.connection.psycopg2.connect"


def _wal_level(connect, level):
    conn = connect.return_value
    conn.closed = 0
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.description = [("wal_level",)]
    cursor.fetchall.return_value = [{"wal_level": level}]
    return conn


@pytest.mark.unit
class TestSupervisorFactory:
    """Test supervisors built from worker settings."""

    def test_builds_supervisor_with_reader(self, catalog, object_store, state_store, metrics):
        """Test each pipeline gets a replication reader over its mapped tables."""
        factory = SupervisorFactory(
            settings=Settings(),
            catalog=catalog,
            object_store=object_store,
            state_store=state_store,
            metrics=metrics,
        )
        config = PipelineConfig(
            pipeline_id="orders",
            tables={"public.orders": "analytics.orders", "public.customers": "analytics.customers"},
            source=SourceConfig(slot_name="orders_slot"),
        )

        supervisor = factory(config)

        assert isinstance(supervisor.stream, PostgresReplicationReader)
        assert supervisor.stream.tables == ["public.customers", "public.orders"]
        assert supervisor.catalog is catalog
        assert supervisor.status_value == PipelineStatus.IDLE
        assert not supervisor.stream.is_open

    def test_registry_uses_factory(self, catalog, object_store, state_store, metrics):
        """Test pipelines created in the registry share the factory's state."""
        factory = SupervisorFactory(
            settings=Settings(),
            catalog=catalog,
            object_store=object_store,
            state_store=state_store,
            metrics=metrics,
        )
        registry = PipelineRegistry(factory)

        first = registry.create(PipelineConfig(pipeline_id="orders"))
        second = registry.create(PipelineConfig(pipeline_id="customers"))

        assert first.checkpoints is second.checkpoints
        assert first.buffer is not second.buffer

    def test_supervisors_share_dead_letter_queue(self, catalog, object_store, state_store, metrics):
        """Test every supervisor records failures into the factory's state store."""
        factory = SupervisorFactory(
            settings=Settings(),
            catalog=catalog,
            object_store=object_store,
            state_store=state_store,
            metrics=metrics,
        )

        supervisor = factory(PipelineConfig(pipeline_id="orders"))

        assert supervisor.dead_letters is factory.dead_letters
        assert factory.dead_letters.store is state_store


@pytest.mark.unit
class TestPreflight:
    """Test source and storage checks run before pipelines start."""

    def _factory(self, catalog, state_store, metrics):
        store = MagicMock(spec=ObjectStore)
        factory = SupervisorFactory(
            settings=Settings(),
            catalog=catalog,
            object_store=store,
            state_store=state_store,
            metrics=metrics,
        )
        return factory, store

    def test_source_without_logical_decoding_rejected(self, catalog, state_store, metrics):
        """Test a source with wal_level below logical is refused before storage is touched."""
        factory, store = self._factory(catalog, state_store, metrics)

        with patch(CONNECT) as connect:
            conn = _wal_level(connect, "replica")
            with pytest.raises(SourceNotReady):
                factory.preflight(PipelineConfig(pipeline_id="orders"))

        store.prepare.assert_not_called()
        conn.close.assert_called_once()

    def test_ready_source_prepares_storage_once(self, catalog, state_store, metrics):
        """Test storage is prepared on the first passing check only."""
        factory, store = self._factory(catalog, state_store, metrics)

        with patch(CONNECT) as connect:
            _wal_level(connect, "logical")
            factory.preflight(PipelineConfig(pipeline_id="orders"))
            factory.preflight(PipelineConfig(pipeline_id="customers"))

        store.prepare.assert_called_once()
