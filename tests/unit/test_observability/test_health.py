"""Unit tests for health checks."""

from unittest.mock import MagicMock

import pytest
import requests

from lakehouse_cdc.observability.health import HealthChecker, HealthCheckServer, HealthStatus


def _registry(*statuses):
    registry = MagicMock()
    registry.list_status.return_value = [
        {"pipeline_id": f"p{i}", "status": status, "last_error": None} for i, status in enumerate(statuses)
    ]
    return registry


@pytest.mark.unit
class TestHealthChecker:
    """Test health aggregation."""

    def test_no_components_is_healthy(self):
        """Test an empty checker reports healthy."""
        assert HealthChecker().get_overall_health() == HealthStatus.HEALTHY

    def test_component_updates(self):
        """Test registered components can be updated."""
        checker = HealthChecker()
        checker.register_component("state-store")

        checker.update_component_health("state-store", HealthStatus.DEGRADED, "slow")

        component = checker.get_component_health("state-store")
        assert component.status == HealthStatus.DEGRADED
        assert component.message == "slow"
        assert checker.get_overall_health() == HealthStatus.DEGRADED

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            (("running", "running"), HealthStatus.HEALTHY),
            (("running", "paused"), HealthStatus.DEGRADED),
            (("running", "failed"), HealthStatus.UNHEALTHY),
        ],
    )
    def test_pipelines_drive_overall_health(self, statuses, expected):
        """Test pipeline status maps to component health."""
        checker = HealthChecker(_registry(*statuses))

        assert checker.get_overall_health() == expected

    def test_report_lists_pipelines(self):
        """Test the report names each pipeline component."""
        registry = MagicMock()
        registry.list_status.return_value = [
            {"pipeline_id": "orders", "status": "failed", "last_error": "SchemaError: narrowing"}
        ]

        report = HealthChecker(registry).get_health_report()

        assert report["status"] == "unhealthy"
        assert report["components"][0]["name"] == "pipeline:orders"
        assert report["components"][0]["message"] == "SchemaError: narrowing"


@pytest.mark.unit
class TestHealthCheckServer:
    """Test the HTTP endpoints."""

    @pytest.fixture
    def server(self):
        server = HealthCheckServer(HealthChecker(_registry("running", "failed")), port=0)
        server.start()
        yield server
        server.stop()

    def _url(self, server, path):
        return f"http://127.0.0.1:{server.server.server_address[1]}{path}"

    def test_health_endpoint(self, server):
        """Test an unhealthy worker answers 503 with its report."""
        response = requests.get(self._url(server, "/health"), timeout=5)

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_liveness_and_readiness(self, server):
        """Test liveness always passes and readiness follows health."""
        assert requests.get(self._url(server, "/health/live"), timeout=5).json() == {"alive": True}
        assert requests.get(self._url(server, "/health/ready"), timeout=5).status_code == 503

    def test_unknown_path(self, server):
        """Test other paths are not found."""
        assert requests.get(self._url(server, "/metrics"), timeout=5).status_code == 404
