"""Output command for showing published outputs."""

import sys

import click
from rich.console import Console
from rich.table import Table

from .common import create_orchestrator
from ..utils.errors import DeploymentError, OutputNotMaterializedError
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.argument('name', required=False)
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def output(ctx, name: str, output_format: str):
    """Show the gateway IP and mount command, or a single output by NAME."""
    try:
        projector = create_orchestrator(ctx).outputs()
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.to_user_message()}")
        sys.exit(1)

    if name:
        if name not in projector:
            console.print(f"[red]Unknown output '{name}'.[/red] Available: {', '.join(projector)}")
            sys.exit(1)
        try:
            value = projector[name]
        except OutputNotMaterializedError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        if output_format == 'json':
            console.print_json(data={name: value})
        else:
            click.echo(value)
        return

    values = projector.available()
    if output_format == 'json':
        console.print_json(data=values)
        return
    _output_table(projector, values)


def _output_table(projector, values: dict):
    """Output in table format."""
    table = Table(show_header=True, header_style="bold", title="Outputs")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Description", style="dim")

    for name in projector:
        value = values.get(name, "[yellow](not materialized)[/yellow]")
        table.add_row(name, value, projector.describe(name))

    console.print(table)
