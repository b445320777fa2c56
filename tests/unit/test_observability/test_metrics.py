"""Unit tests for the Prometheus metrics exporter."""

import pytest
from prometheus_client import REGISTRY

from lakehouse_cdc.observability.metrics import MetricsExporter


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.unit
class TestMetricsExporter:
    """Test metric updates against the default registry."""

    def test_record_cdc_event(self):
        """Test events are counted per pipeline, operation and table."""
        labels = {"pipeline": "metrics-events", "operation": "insert", "table": "analytics.orders"}
        before = _sample("cdc_events_total", **labels)

        MetricsExporter(port=9999).record_cdc_event("metrics-events", "insert", "analytics.orders")

        assert _sample("cdc_events_total", **labels) == before + 1

    def test_pipeline_state_values(self):
        """Test pipeline status maps to the documented gauge values."""
        exporter = MetricsExporter(port=9999)

        exporter.update_pipeline_state("metrics-state", "failed")
        assert _sample("pipeline_state", pipeline="metrics-state") == -1

        exporter.update_pipeline_state("metrics-state", "paused")
        assert _sample("pipeline_state", pipeline="metrics-state") == 2

    def test_file_written_counts_bytes(self):
        """Test uploaded files and bytes are both counted."""
        labels = {"pipeline": "metrics-files", "table": "analytics.orders"}

        MetricsExporter(port=9999).record_file_written("metrics-files", "analytics.orders", 2048)

        assert _sample("iceberg_files_written_total", **labels) == 1
        assert _sample("iceberg_bytes_written_total", **labels) == 2048

    def test_commit_updates_snapshot_gauge(self):
        """Test commits record the new snapshot id."""
        MetricsExporter(port=9999).record_iceberg_commit("metrics-commit", "analytics.metrics_commit", 42, 0.2)

        assert _sample("iceberg_snapshot_id", table_identifier="analytics.metrics_commit") == 42
        assert _sample("iceberg_commits_total", pipeline="metrics-commit", table="analytics.metrics_commit") == 1

    def test_lag_and_checkpoint_gauges(self):
        """Test gauges hold the last value set."""
        exporter = MetricsExporter(port=9999)

        exporter.update_cdc_lag("metrics-lag", 1024)
        exporter.update_checkpoint("metrics-lag", "analytics.orders", 4096)

        assert _sample("cdc_lag_bytes", pipeline="metrics-lag") == 1024
        assert _sample("cdc_checkpoint_lsn", pipeline="metrics-lag", table="analytics.orders") == 4096
