"""Prometheus metrics exporters."""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from lakehouse_cdc.common.config import get_settings

# CDC Pipeline Metrics
cdc_events_total = Counter(
    "cdc_events_total",
    "Total number of CDC events read from the source",
    ["pipeline", "operation", "table"],
)

cdc_errors_total = Counter(
    "cdc_errors_total",
    "Total number of CDC processing errors",
    ["pipeline", "error_type"],
)

cdc_retries_total = Counter(
    "cdc_retries_total",
    "Total number of scheduled retries after retryable errors",
    ["pipeline", "stage"],
)

cdc_lag_bytes = Gauge(
    "cdc_lag_bytes",
    "WAL bytes between the source head and the acknowledged position",
    ["pipeline"],
)

cdc_buffer_depth = Gauge(
    "cdc_buffer_depth",
    "Events queued in the pipeline buffer",
    ["pipeline", "table"],
)

cdc_batch_size = Histogram(
    "cdc_batch_size",
    "Source events per assembled batch",
    ["pipeline"],
    buckets=[1, 10, 50, 100, 500, 1000, 5000, 10000],
)

cdc_checkpoint_lsn = Gauge(
    "cdc_checkpoint_lsn",
    "LSN of the last committed checkpoint",
    ["pipeline", "table"],
)

# Iceberg Metrics
iceberg_commits_total = Counter(
    "iceberg_commits_total",
    "Total number of Iceberg snapshots committed",
    ["pipeline", "table"],
)

iceberg_commit_conflicts_total = Counter(
    "iceberg_commit_conflicts_total",
    "Total number of optimistic concurrency conflicts",
    ["pipeline", "table"],
)

iceberg_commit_duration_seconds = Histogram(
    "iceberg_commit_duration_seconds",
    "Time taken to write and commit one batch",
    ["pipeline"],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
)

iceberg_files_written_total = Counter(
    "iceberg_files_written_total",
    "Total number of data files uploaded",
    ["pipeline", "table"],
)

iceberg_bytes_written_total = Counter(
    "iceberg_bytes_written_total",
    "Total bytes of data files uploaded",
    ["pipeline", "table"],
)

iceberg_snapshot_id = Gauge(
    "iceberg_snapshot_id",
    "Current Iceberg table snapshot ID",
    ["table_identifier"],
)

# Health Metrics
pipeline_state = Gauge(
    "pipeline_state",
    "Pipeline state (1=running, 0=idle, 2=paused, -1=failed)",
    ["pipeline"],
)

_STATE_VALUES = {"running": 1, "idle": 0, "paused": 2, "failed": -1}


class MetricsExporter:
    """Prometheus metrics exporter."""

    def __init__(self, port: Optional[int] = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            port: Port to expose metrics on (default from config)
        """
        self.settings = get_settings()
        self.port = port or self.settings.observability.metrics_port
        self._server_started = False

    def start(self) -> None:
        """Start metrics HTTP server."""
        if not self._server_started:
            start_http_server(self.port)
            self._server_started = True

    def record_cdc_event(self, pipeline: str, operation: str, table: str) -> None:
        """
        Record a change event read from the source.

        Args:
            pipeline: Pipeline id
            operation: Operation type (insert/update/delete/ddl)
            table: Destination table
        """
        cdc_events_total.labels(pipeline=pipeline, operation=operation, table=table).inc()

    def record_cdc_error(self, pipeline: str, error_type: str) -> None:
        cdc_errors_total.labels(pipeline=pipeline, error_type=error_type).inc()

    def record_retry(self, pipeline: str, stage: str) -> None:
        cdc_retries_total.labels(pipeline=pipeline, stage=stage).inc()

    def update_cdc_lag(self, pipeline: str, lag_bytes: int) -> None:
        """
        Update CDC lag metric.

        Args:
            pipeline: Pipeline id
            lag_bytes: Current lag in WAL bytes
        """
        cdc_lag_bytes.labels(pipeline=pipeline).set(lag_bytes)

    def update_buffer_depth(self, pipeline: str, table: str, depth: int) -> None:
        cdc_buffer_depth.labels(pipeline=pipeline, table=table).set(depth)

    def record_batch(self, pipeline: str, source_events: int) -> None:
        cdc_batch_size.labels(pipeline=pipeline).observe(source_events)

    def update_checkpoint(self, pipeline: str, table: str, lsn: int) -> None:
        cdc_checkpoint_lsn.labels(pipeline=pipeline, table=table).set(lsn)

    def record_iceberg_commit(
        self, pipeline: str, table: str, snapshot_id: int, duration: float
    ) -> None:
        """
        Record a successful Iceberg commit.

        Args:
            pipeline: Pipeline id
            table: Table identifier
            snapshot_id: New snapshot ID
            duration: Write and commit duration in seconds
        """
        iceberg_commits_total.labels(pipeline=pipeline, table=table).inc()
        iceberg_commit_duration_seconds.labels(pipeline=pipeline).observe(duration)
        iceberg_snapshot_id.labels(table_identifier=table).set(snapshot_id)

    def record_commit_conflict(self, pipeline: str, table: str) -> None:
        iceberg_commit_conflicts_total.labels(pipeline=pipeline, table=table).inc()

    def record_file_written(self, pipeline: str, table: str, size_bytes: int) -> None:
        """
        Record a data file upload.

        Args:
            pipeline: Pipeline id
            table: Table identifier
            size_bytes: File size
        """
        iceberg_files_written_total.labels(pipeline=pipeline, table=table).inc()
        iceberg_bytes_written_total.labels(pipeline=pipeline, table=table).inc(size_bytes)

    def update_pipeline_state(self, pipeline: str, status: str) -> None:
        """
        Update pipeline state metric.

        Args:
            pipeline: Pipeline id
            status: Pipeline status (idle/running/paused/failed)
        """
        pipeline_state.labels(pipeline=pipeline).set(_STATE_VALUES.get(status, 0))
