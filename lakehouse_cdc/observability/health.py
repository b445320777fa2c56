"""Worker health derived from pipeline status, served over HTTP."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Lock, Thread
from typing import Any, Dict, List, Optional, Tuple

from lakehouse_cdc.common.config import get_settings


class HealthStatus(str, Enum):
    """Health status enum."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}

# Pipeline status -> component health
PIPELINE_HEALTH = {
    "running": HealthStatus.HEALTHY,
    "paused": HealthStatus.DEGRADED,
    "idle": HealthStatus.DEGRADED,
    "failed": HealthStatus.UNHEALTHY,
}


@dataclass
class ComponentHealth:
    """Last known health of one worker component or pipeline."""

    name: str
    status: HealthStatus
    message: str = ""
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "checked_at": self.checked_at.isoformat(),
        }


class HealthChecker:
    """
    Aggregate health of the worker.

    Static components (state store, catalog) are registered and updated by
    their owners. Pipelines are read from the registry on every check, so a
    pipeline that fails shows up without anyone pushing an update.
    """

    def __init__(self, registry: Optional[Any] = None) -> None:
        """
        Initialize health checker.

        Args:
            registry: Pipeline registry exposing ``list_status()``
        """
        self.registry = registry
        self._components: Dict[str, ComponentHealth] = {}
        self._lock = Lock()

    def register_component(self, name: str) -> None:
        self.update_component_health(name, HealthStatus.HEALTHY, "Component registered")

    def update_component_health(self, name: str, status: HealthStatus, message: str = "") -> None:
        """
        Record the health of a static component.

        Args:
            name: Component name
            status: New health status
            message: Human readable detail
        """
        with self._lock:
            self._components[name] = ComponentHealth(name=name, status=status, message=message)

    def get_component_health(self, name: str) -> Optional[ComponentHealth]:
        with self._lock:
            return self._components.get(name)

    def _pipeline_components(self) -> List[ComponentHealth]:
        if self.registry is None:
            return []
        return [
            ComponentHealth(
                name=f"pipeline:{status['pipeline_id']}",
                status=PIPELINE_HEALTH.get(status["status"], HealthStatus.DEGRADED),
                message=status.get("last_error") or status["status"],
            )
            for status in self.registry.list_status()
        ]

    def components(self) -> List[ComponentHealth]:
        """Static components followed by one entry per registered pipeline."""
        with self._lock:
            static = list(self._components.values())
        return static + self._pipeline_components()

    def get_overall_health(self) -> HealthStatus:
        """
        Get overall worker health: the worst status of any component.

        Returns:
            Overall health status, healthy when nothing is registered
        """
        return self._worst(self.components())

    @staticmethod
    def _worst(components: List[ComponentHealth]) -> HealthStatus:
        return max((c.status for c in components), key=lambda s: s.severity, default=HealthStatus.HEALTHY)

    def get_health_report(self) -> Dict[str, Any]:
        """
        Get full health report.

        Returns:
            Overall status, timestamp and per-component details
        """
        components = self.components()
        return {
            "status": self._worst(components).value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": [c.to_dict() for c in components],
        }


class HealthCheckHandler(BaseHTTPRequestHandler):
    """Serves ``/health``, ``/health/ready`` and ``/health/live``."""

    health_checker: HealthChecker

    def _health(self) -> Tuple[int, Dict[str, Any]]:
        report = self.health_checker.get_health_report()
        return (200 if report["status"] == HealthStatus.HEALTHY.value else 503), report

    def _ready(self) -> Tuple[int, Dict[str, Any]]:
        ready = self.health_checker.get_overall_health() != HealthStatus.UNHEALTHY
        return (200 if ready else 503), {"ready": ready}

    def _live(self) -> Tuple[int, Dict[str, Any]]:
        return 200, {"alive": True}

    def do_GET(self) -> None:
        routes = {
            "/health": self._health,
            "/health/ready": self._ready,
            "/health/live": self._live,
        }
        route = routes.get(self.path)
        if route is None:
            self.send_response(404)
            self.end_headers()
            return

        status_code, body = route()
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body).encode())

    def log_message(self, format: str, *args) -> None:  # type: ignore
        """Suppress default logging."""


class HealthCheckServer:
    """Background HTTP server for the health endpoints."""

    def __init__(self, health_checker: HealthChecker, port: Optional[int] = None) -> None:
        """
        Initialize health check server.

        Args:
            health_checker: Checker answering the requests
            port: Port to listen on, 0 for an ephemeral port (default from config)
        """
        if port is None:
            port = get_settings().observability.health_check_port
        self.health_checker = health_checker

        # One handler class per server
        handler = type("BoundHealthCheckHandler", (HealthCheckHandler,), {"health_checker": health_checker})
        self.server = HTTPServer(("0.0.0.0", port), handler)
        self.port = self.server.server_address[1]
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        self._thread = Thread(target=self.server.serve_forever, name="health-server", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and release the socket."""
        self.server.shutdown()
        self.server.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
