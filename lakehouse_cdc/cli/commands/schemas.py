"""Schemas command for inspecting published schema versions."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from lakehouse_cdc.common.config import get_settings
from lakehouse_cdc.common.errors import CDCError
from lakehouse_cdc.iceberg.schema_mapper import SchemaRegistry
from lakehouse_cdc.state.checkpoint import build_state_store

console = Console()


@click.command()
@click.option("--table", "-t", "table_name", required=True, help="Destination table (namespace.table)")
@click.option("--all-versions", is_flag=True, default=False, help="Show every published version")
def schemas(table_name: str, all_versions: bool) -> None:
    """Show the published schema of a destination table."""
    store = build_state_store(get_settings().state)
    try:
        history = SchemaRegistry(store).history(table_name)
    except CDCError as e:
        console.print(f"[red]✗ Failed to read schemas: {escape(str(e))}[/red]")
        raise click.Abort()
    finally:
        store.close()

    if not history:
        console.print(f"[yellow]No schema published for {table_name}[/yellow]")
        return

    for schema in history if all_versions else history[-1:]:
        table = Table(title=f"{table_name} v{schema.version}", show_header=True, header_style="bold magenta")
        table.add_column("Column")
        table.add_column("Type")
        table.add_column("Nullable")
        table.add_column("Key")
        table.add_column("Deprecated")
        for column in schema.columns:
            table.add_row(
                column.name,
                column.logical_type,
                "yes" if column.nullable else "no",
                "yes" if column.primary_key else "",
                "[yellow]yes[/yellow]" if column.deprecated else "",
            )
        console.print(table)
