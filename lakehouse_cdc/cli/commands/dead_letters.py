"""Dead-letters command for inspecting changes that failed a pipeline."""

from datetime import timedelta

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lakehouse_cdc.common.config import get_settings
from lakehouse_cdc.common.errors import CDCError
from lakehouse_cdc.state.checkpoint import build_state_store
from lakehouse_cdc.state.dead_letter import DeadLetterQueue

console = Console()


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@click.command(name="dead-letters")
@click.option("--pipeline", "-p", required=True, help="Pipeline id")
@click.option("--limit", "-n", default=20, show_default=True, help="Maximum entries to show")
@click.option("--include-expired", is_flag=True, default=False, help="Also show entries past retention")
@click.option("--purge-expired", is_flag=True, default=False, help="Delete entries past retention first")
@click.option("--payload-chars", default=80, show_default=True, help="Characters of payload to show")
def dead_letters(pipeline: str, limit: int, include_expired: bool, purge_expired: bool, payload_chars: int) -> None:
    """List changes that made a pipeline fail, newest first."""
    settings = get_settings()
    store = build_state_store(settings.state)
    queue = DeadLetterQueue(store, retention=timedelta(hours=settings.state.dead_letter_retention_hours))
    try:
        if purge_expired:
            removed = queue.purge_expired()
            console.print(f"[yellow]Purged {removed} expired dead letters[/yellow]")
        entries = queue.entries(pipeline, include_expired=include_expired, limit=limit)
    except CDCError as e:
        console.print(f"[red]✗ Failed to read dead letters: {escape(str(e))}[/red]")
        raise click.Abort()
    finally:
        store.close()

    if not entries:
        console.print(f"[green]No dead letters for pipeline {pipeline}[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Id", justify="right")
    table.add_column("Created at")
    table.add_column("Error")
    table.add_column("Table")
    table.add_column("Position")
    table.add_column("Attempts", justify="right")
    table.add_column("Payload")
    for entry in entries:
        table.add_row(
            str(entry.id),
            entry.created_at.isoformat() if entry.created_at else "-",
            escape(f"{entry.error_type}: {entry.error_message}"),
            entry.destination_table or entry.source_table or "-",
            str(entry.position) if entry.position else "-",
            str(entry.attempts),
            escape(_preview(entry.payload, payload_chars)),
        )

    console.print(table)
