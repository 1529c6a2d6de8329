"""Main CLI entry point."""

import sys
from typing import Optional

import click
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from s3nfs_deploy.cli.common import console, create_orchestrator
from s3nfs_deploy.cli.graph import graph
from s3nfs_deploy.cli.output import output
from s3nfs_deploy.cli.validate import validate
from s3nfs_deploy.orchestrator.executor import ApplyResult
from s3nfs_deploy.orchestrator.planner import DeploymentPlan
from s3nfs_deploy.orchestrator.rollback import RollbackStrategy
from s3nfs_deploy.provisioners.base import ChangeType
from s3nfs_deploy.utils.errors import DeploymentError
from s3nfs_deploy.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

CHANGE_STYLES = {
    ChangeType.CREATE: ("+", "green"),
    ChangeType.UPDATE: ("~", "yellow"),
    ChangeType.REPLACE: ("-/+", "magenta"),
    ChangeType.DELETE: ("-", "red"),
}


@click.group()
@click.option('--config', 'config_path', default='s3nfs.yaml', show_default=True,
              help='Path to configuration file')
@click.option('--env', help='Environment name from the environments section')
@click.option('--var', 'variables', multiple=True, metavar='KEY=VALUE',
              help='Override a variable (repeatable)')
@click.option('--log-level', default='info',
              type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, env, variables, log_level):
    """Provision an S3-backed NFS file gateway on AWS."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['env'] = env
    ctx.obj['variables'] = variables
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


cli.add_command(validate)
cli.add_command(output)
cli.add_command(graph)


def render_plan(plan: DeploymentPlan, title: str = "Execution Plan") -> None:
    """Print the per-resource changes of a plan."""
    if not plan.has_changes():
        console.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        return

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("", width=3)
    table.add_column("Resource", style="cyan")
    table.add_column("Type")
    table.add_column("Change")
    table.add_column("Details", style="dim")

    for resource_id in sorted(plan.changes):
        change = plan.changes[resource_id]
        if change.change_type not in CHANGE_STYLES:
            continue
        symbol, color = CHANGE_STYLES[change.change_type]
        resource = change.desired_resource or change.current_resource
        details = ", ".join(change.changed_attributes) or (change.reason or "")
        if change.replacement_order is not None:
            details += f" ({change.replacement_order.value.replace('_', ' ')})"
        table.add_row(f"[{color}]{symbol}[/{color}]", resource_id, resource.type,
                      f"[{color}]{change.change_type.value}[/{color}]", details)

    deposed = sorted(step.resource_id for step in plan.steps.values()
                     if step.deposed and step.step_id.endswith(':leftover'))
    for resource_id in deposed:
        table.add_row("[red]-[/red]", resource_id, "", "[red]delete[/red]", "deposed copy")

    console.print(table)
    summary = plan.get_summary()
    console.print(
        f"\nPlan: [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[magenta]{summary['replace']} to replace[/magenta], "
        f"[red]{summary['delete']} to delete[/red] "
        f"({len(plan.steps)} steps)"
    )


def render_result(result: ApplyResult, operation: str) -> None:
    """Print the outcome of an apply or destroy pass."""
    if result.success:
        console.print(Panel.fit(
            f"[green]✓ {operation} complete[/green]\n\n"
            f"Resources changed: {len(result.succeeded)}",
            title=f"{operation} Complete",
            border_style="green"
        ))
        return

    lines = [
        f"[red]✗ {operation} incomplete[/red]\n",
        f"Succeeded: {len(result.succeeded)}",
        f"Failed: {len(result.failed)}",
        f"Skipped: {len(result.skipped)}",
    ]
    if result.cancelled:
        lines.append("[yellow]Cancelled (timeout or interrupt)[/yellow]")
    console.print(Panel.fit("\n".join(lines), title=f"{operation} Failed", border_style="red"))

    if result.failed:
        console.print("\n[bold]Failed Resources:[/bold]")
        for resource_id, error in sorted(result.failed.items()):
            console.print(f"  [red]✗[/red] {resource_id}: {error}")
    if result.skipped:
        console.print(f"\n[bold]Skipped:[/bold] {', '.join(result.skipped)}")

    if result.rollback is not None:
        rollback = result.rollback
        console.print(f"\n[bold]Rollback:[/bold] destroyed {len(rollback.destroyed)}, "
                      f"restored {len(rollback.restored)}, failed {len(rollback.failed)}")
        for resource_id, error in sorted(rollback.failed.items()):
            console.print(f"  [red]✗[/red] {resource_id}: {error}")


def _run_with_progress(description: str, total: int, run):
    """Run ``run(on_state_change)`` while advancing a progress bar per step."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task(description, total=total)
        return run(lambda state: progress.advance(task_id))


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the changes apply would make."""
    try:
        orchestrator = create_orchestrator(ctx)
        render_plan(orchestrator.plan())
    except DeploymentError as e:
        console.print(f"[red]Planning failed:[/red] {e.to_user_message()}")
        sys.exit(1)


@cli.command()
@click.option('--parallelism', type=click.IntRange(1, 32), help='Maximum concurrent operations')
@click.option('--timeout', 'apply_timeout', type=click.FloatRange(min=1),
              help='Overall apply timeout in seconds')
@click.option('--auto-rollback/--no-auto-rollback', default=None,
              help='Roll back resources created in this pass if any step fails')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def apply(ctx, parallelism: Optional[int], apply_timeout: Optional[float],
          auto_rollback: Optional[bool], yes: bool):
    """Create or update the gateway infrastructure."""
    try:
        orchestrator = create_orchestrator(ctx)
        deployment_plan = orchestrator.plan()
        render_plan(deployment_plan)
        if not deployment_plan.has_changes():
            return

        if not yes and not click.confirm("\nApply these changes?", default=False):
            console.print("[yellow]Apply cancelled[/yellow]")
            return

        strategy = None
        if auto_rollback is not None:
            strategy = RollbackStrategy.AUTOMATIC if auto_rollback else RollbackStrategy.NONE

        result = _run_with_progress(
            "[cyan]Applying...", len(deployment_plan.steps),
            lambda callback: orchestrator.apply(
                deployment_plan,
                parallelism=parallelism,
                apply_timeout=apply_timeout,
                rollback_strategy=strategy,
                on_state_change=callback,
            )
        )
    except DeploymentError as e:
        console.print(f"[red]Apply failed:[/red] {e.to_user_message()}")
        sys.exit(1)

    console.print()
    render_result(result, "Apply")
    if not result.success:
        sys.exit(1)

    outputs = orchestrator.outputs(result.state).available()
    if outputs:
        console.print("\n[bold]Outputs:[/bold]")
        for name, value in outputs.items():
            console.print(f"  {name} = [cyan]{value}[/cyan]")


@cli.command()
@click.option('--parallelism', type=click.IntRange(1, 32), help='Maximum concurrent operations')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, parallelism: Optional[int], yes: bool):
    """Remove all deployed infrastructure."""
    try:
        orchestrator = create_orchestrator(ctx)
        destruction_plan = orchestrator.plan_destruction()
        if not destruction_plan.has_changes():
            console.print("[yellow]No deployed resources found[/yellow]")
            return

        console.print(Panel.fit(
            f"[bold red]⚠ WARNING: This will destroy {len(destruction_plan.steps)} resources[/bold red]\n\n"
            f"Project: {orchestrator.project_name}\n"
            f"Environment: {orchestrator.environment}",
            title="Destruction Plan",
            border_style="red"
        ))
        render_plan(destruction_plan, title="Resources to destroy")

        if not yes and not click.confirm("Are you sure you want to destroy these resources?",
                                         default=False):
            console.print("[yellow]Destruction cancelled[/yellow]")
            return

        result = _run_with_progress(
            "[red]Destroying...", len(destruction_plan.steps),
            lambda callback: orchestrator.destroy(parallelism=parallelism,
                                                  on_state_change=callback)
        )
    except DeploymentError as e:
        console.print(f"[red]Destroy failed:[/red] {e.to_user_message()}")
        sys.exit(1)

    console.print()
    render_result(result, "Destroy")
    if not result.success:
        console.print("\n[yellow]Some resources may need manual cleanup[/yellow]")
        sys.exit(1)


@cli.command()
@click.pass_context
def refresh(ctx):
    """Re-read recorded resources and drop the ones that no longer exist."""
    try:
        orchestrator = create_orchestrator(ctx)
        with console.status("Refreshing state..."):
            state, dropped = orchestrator.refresh()
    except DeploymentError as e:
        console.print(f"[red]Refresh failed:[/red] {e.to_user_message()}")
        sys.exit(1)

    console.print(f"[green]✓[/green] Refreshed {len(state.resources)} resources")
    for resource_id in dropped:
        console.print(f"  [yellow]dropped[/yellow] {resource_id}")


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
