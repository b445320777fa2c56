"""Run command for hosting pipelines in this worker."""

import signal
import threading
from typing import Any, Tuple

import click
from rich.console import Console
from rich.markup import escape

from lakehouse_cdc.common.config import PipelineConfig, get_settings
from lakehouse_cdc.common.errors import CDCError
from lakehouse_cdc.observability.health import HealthChecker, HealthCheckServer
from lakehouse_cdc.observability.logging_config import get_logger, setup_logging
from lakehouse_cdc.observability.metrics import MetricsExporter
from lakehouse_cdc.pipeline.factory import SupervisorFactory
from lakehouse_cdc.pipeline.registry import PipelineRegistry

console = Console()
logger = get_logger(__name__)


@click.command()
@click.option(
    "--config",
    "-c",
    "config_paths",
    multiple=True,
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Pipeline definition (JSON); repeat for several pipelines",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option("--no-metrics", is_flag=True, default=False, help="Do not expose Prometheus metrics")
@click.option("--no-health", is_flag=True, default=False, help="Do not serve health endpoints")
def run(config_paths: Tuple[str, ...], log_level: str, no_metrics: bool, no_health: bool) -> None:
    """
    Run one or more pipelines until interrupted.

    SIGINT and SIGTERM stop every pipeline; committed positions are kept and
    the next run resumes from them.
    """
    setup_logging(log_level)
    settings = get_settings()

    try:
        configs = [PipelineConfig.from_file(path) for path in config_paths]
    except (OSError, ValueError) as e:
        console.print(f"[red]✗ Invalid pipeline definition: {escape(str(e))}[/red]")
        raise click.Abort()

    metrics = MetricsExporter()
    if not no_metrics:
        metrics.start()

    factory = SupervisorFactory(settings=settings, metrics=metrics)
    registry = PipelineRegistry(factory)
    checker = HealthChecker(registry)
    server = None
    if not no_health:
        server = HealthCheckServer(checker)
        server.start()

    stop_requested = threading.Event()

    def _request_stop(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, stopping pipelines")
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        for config in configs:
            try:
                factory.preflight(config)
            except CDCError as e:
                console.print(f"[red]✗ Pipeline {config.pipeline_id} cannot start: {escape(str(e))}[/red]")
                raise click.Abort()
            registry.create(config)
            registry.start(config.pipeline_id)
            console.print(f"[green]✓ Started pipeline {config.pipeline_id}[/green]")

        while not stop_requested.wait(settings.app.poll_interval_seconds):
            statuses = registry.list_status()
            if statuses and all(s["status"] in ("idle", "failed") for s in statuses):
                break
    finally:
        registry.stop_all()
        if server is not None:
            server.stop()
        factory.close()

    failed = [s for s in registry.list_status() if s["status"] == "failed"]
    for status in failed:
        console.print(f"[red]✗ Pipeline {status['pipeline_id']} failed: {escape(str(status['last_error']))}[/red]")
    if failed:
        raise click.Abort()
    console.print("[green]✓ All pipelines stopped[/green]")
