"""Main CLI entry point for the lakehouse CDC worker."""

import click
from rich.console import Console

from lakehouse_cdc.cli.commands.checkpoints import checkpoints
from lakehouse_cdc.cli.commands.dead_letters import dead_letters
from lakehouse_cdc.cli.commands.run import run
from lakehouse_cdc.cli.commands.schemas import schemas
from lakehouse_cdc.cli.commands.validate import validate_config

console = Console()


@click.group()
@click.version_option(version="0.1.0", prog_name="lakehouse-cdc")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Lakehouse CDC - stream PostgreSQL changes into Apache Iceberg tables.

    Changes are read from a logical replication slot, batched per table,
    written as Parquet data files and committed through an Iceberg REST
    catalog with exactly-once checkpoints.
    """
    ctx.ensure_object(dict)


# Register commands
cli.add_command(run)
cli.add_command(checkpoints)
cli.add_command(dead_letters)
cli.add_command(schemas)
cli.add_command(validate_config)


if __name__ == "__main__":
    cli()
