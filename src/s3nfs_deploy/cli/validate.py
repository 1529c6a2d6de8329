"""Validate command for checking configuration without deploying."""

import sys

import click
from rich.console import Console
from rich.table import Table

from ..config.parser import Config, ConfigValidationError, parse_var_overrides
from ..topology.builder import TopologyBuilder
from ..utils.errors import DeploymentError
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.option('--json-output', is_flag=True, help='Output in JSON format')
@click.pass_context
def validate(ctx, json_output: bool):
    """Validate configuration and the resource graph without calling AWS."""
    try:
        config = Config(
            ctx.obj['config_path'],
            environment=ctx.obj['env'],
            overrides=parse_var_overrides(ctx.obj['variables']),
        ).load()
        resource_graph = TopologyBuilder(
            config.variables,
            config.region,
            project_name=config.project.name,
            environment=config.environment_label,
        ).build()
        resource_graph.validate()
    except ConfigValidationError as e:
        _report_errors(e.errors or [{"loc": [], "msg": e.message}], json_output)
        sys.exit(1)
    except DeploymentError as e:
        _report_errors([{"loc": [], "msg": e.to_user_message()}], json_output)
        sys.exit(1)

    if json_output:
        console.print_json(data={"valid": True, "resources": resource_graph.ids(),
                                 "config": config.to_dict()})
        return

    console.print(f"[green]✓ Configuration is valid[/green] "
                  f"({config.project.name}/{config.environment_label}, {config.region})")
    console.print(f"  {len(resource_graph)} resources in the topology")


def _report_errors(errors, json_output: bool):
    if json_output:
        console.print_json(data={"valid": False, "errors": errors})
        return

    table = Table(show_header=True, header_style="bold red", title="Validation Errors")
    table.add_column("Location", style="cyan")
    table.add_column("Message")
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", [])) or "-"
        table.add_row(location, error.get("msg", ""))
    console.print(table)
