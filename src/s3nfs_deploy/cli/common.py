"""Helpers shared by CLI commands."""

import sys

import click
from rich.console import Console

from ..config.parser import Config, ConfigValidationError, parse_var_overrides
from ..orchestrator.orchestrator import DeploymentOrchestrator
from ..utils.errors import DeploymentError

console = Console()


def load_config(ctx: click.Context) -> Config:
    """Load and validate the configuration selected on the command line."""
    try:
        overrides = parse_var_overrides(ctx.obj['variables'])
        return Config(ctx.obj['config_path'], environment=ctx.obj['env'],
                      overrides=overrides).load()
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)
    except DeploymentError as e:
        console.print(f"[red]Error loading configuration:[/red] {e.to_user_message()}")
        sys.exit(1)


def create_orchestrator(ctx: click.Context) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(load_config(ctx))
