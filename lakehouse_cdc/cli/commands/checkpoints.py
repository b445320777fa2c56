"""Checkpoints command for inspecting committed positions."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lakehouse_cdc.common.config import get_settings
from lakehouse_cdc.common.errors import CDCError
from lakehouse_cdc.state.checkpoint import build_state_store

console = Console()


@click.command()
@click.option("--pipeline", "-p", required=True, help="Pipeline id")
def checkpoints(pipeline: str) -> None:
    """Show the committed position of every table of a pipeline."""
    store = build_state_store(get_settings().state)
    try:
        rows = store.load_checkpoints(pipeline)
    except CDCError as e:
        console.print(f"[red]✗ Failed to read checkpoints: {escape(str(e))}[/red]")
        raise click.Abort()
    finally:
        store.close()

    if not rows:
        console.print(f"[yellow]No checkpoints for pipeline {pipeline}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Table")
    table.add_column("Position")
    table.add_column("Committed at")
    for checkpoint in sorted(rows, key=lambda c: c.destination_table):
        committed_at = checkpoint.committed_at.isoformat() if checkpoint.committed_at else "-"
        table.add_row(checkpoint.destination_table, str(checkpoint.committed_position), committed_at)

    console.print(table)
