"""
Pytest configuration and shared fixtures for lakehouse CDC tests.
"""

import pytest

from lakehouse_cdc.common.config import BatchConfig, BufferConfig, PipelineConfig, RetryConfig
from lakehouse_cdc.iceberg.schema_mapper import SchemaRegistry
from lakehouse_cdc.iceberg.storage import LocalObjectStore
from lakehouse_cdc.observability.metrics import MetricsExporter
from lakehouse_cdc.pipeline.supervisor import PipelineSupervisor
from lakehouse_cdc.state.checkpoint import CheckpointManager, SQLiteStateStore
from lakehouse_cdc.state.dead_letter import DeadLetterQueue
from tests.fixtures.fakes import InMemoryCatalog, ListChangeStream, ManualClock


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return ManualClock()


@pytest.fixture
def state_store(tmp_path):
    """SQLite state store in a temporary directory."""
    store = SQLiteStateStore(str(tmp_path / "state" / "lakehouse-cdc.db"))
    yield store
    store.close()


@pytest.fixture
def dead_letters(state_store):
    """Dead-letter queue over the test state store."""
    return DeadLetterQueue(state_store)


@pytest.fixture
def object_store(tmp_path):
    """Filesystem object store in a temporary directory."""
    return LocalObjectStore(str(tmp_path / "warehouse"))


@pytest.fixture
def catalog():
    """In-memory table catalog."""
    return InMemoryCatalog()


@pytest.fixture
def metrics():
    """Metrics exporter that never starts its HTTP server."""
    return MetricsExporter(port=9999)


@pytest.fixture
def make_config():
    """Build pipeline definitions with small, test-friendly limits."""

    def _make(
        pipeline_id="orders-pipeline",
        tables=None,
        max_rows=100,
        max_wait_seconds=60.0,
        table_capacity=1000,
        max_attempts=3,
        **kwargs,
    ):
        return PipelineConfig(
            pipeline_id=pipeline_id,
            tables=tables if tables is not None else {"public.orders": "analytics.orders"},
            batch=BatchConfig(max_rows=max_rows, max_wait_seconds=max_wait_seconds),
            buffer=BufferConfig(table_capacity=table_capacity, total_capacity=None),
            retry=RetryConfig(max_attempts=max_attempts, initial_interval=1.0, max_interval=10.0, jitter=False),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_supervisor(catalog, object_store, state_store, dead_letters, clock, metrics, make_config):
    """
    Build a supervisor over a list of events.

    All supervisors built by one test share the catalog, the object store
    and the state store, so a second supervisor behaves like a restarted
    worker.
    """

    def _make(events, config=None, stream=None, **config_kwargs):
        config = config or make_config(**config_kwargs)
        stream = stream or ListChangeStream(events)
        return PipelineSupervisor(
            config,
            stream,
            catalog,
            object_store,
            CheckpointManager(state_store),
            SchemaRegistry(state_store),
            default_namespace="cdc",
            storage_prefix="cdc",
            poll_interval=0.01,
            clock=clock,
            rng=lambda: 0.5,
            metrics=metrics,
            dead_letters=dead_letters,
        )

    return _make
