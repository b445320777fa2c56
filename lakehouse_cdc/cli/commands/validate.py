"""Validate command for pipeline definitions."""

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lakehouse_cdc.common.config import PipelineConfig, get_settings

console = Console()


@click.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Pipeline definition (JSON)",
)
def validate_config(config_path: str) -> None:
    """Check a pipeline definition and show its table mapping."""
    try:
        config = PipelineConfig.from_file(config_path)
    except ValidationError as e:
        console.print(f"[red]✗ Invalid pipeline definition:[/red]\n{escape(str(e))}")
        raise click.Abort()
    except ValueError as e:
        console.print(f"[red]✗ Failed to parse {config_path}: {escape(str(e))}[/red]")
        raise click.Abort()

    namespace = get_settings().catalog.namespace
    table = Table(title=f"Pipeline {config.pipeline_id}", show_header=True, header_style="bold magenta")
    table.add_column("Source table")
    table.add_column("Destination table")
    for source_table in sorted(config.tables):
        table.add_row(source_table, config.destination_for(source_table, namespace))

    console.print(table)
    console.print(f"[green]✓ {config_path} is valid[/green]")
