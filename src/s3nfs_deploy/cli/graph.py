"""Graph command for visualizing resource dependencies."""

import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from .common import load_config
from ..orchestrator.dependency_graph import DependencyGraph
from ..topology.builder import TopologyBuilder
from ..utils.errors import DeploymentError
from ..utils.logging import get_logger

logger = get_logger(__name__)
console = Console()


@click.command()
@click.option('--format', 'output_format', type=click.Choice(['tree', 'waves', 'dot']),
              default='tree', help='Output format')
@click.pass_context
def graph(ctx, output_format: str):
    """Visualize the dependency graph of the desired topology."""
    config = load_config(ctx)
    try:
        resource_graph = TopologyBuilder(
            config.variables,
            config.region,
            project_name=config.project.name,
            environment=config.environment_label,
        ).build()
        dep_graph = resource_graph.validate()
    except DeploymentError as e:
        console.print(f"[red]Invalid resource graph:[/red] {e.to_user_message()}")
        sys.exit(1)

    if output_format == 'tree':
        _output_tree(dep_graph)
    elif output_format == 'waves':
        _output_waves(dep_graph)
    else:
        click.echo(_to_dot(dep_graph))


def _output_tree(dep_graph: DependencyGraph):
    """Roots are resources with no dependencies; children depend on their parent."""
    console.print(Panel("Resource Dependency Graph", style="bold blue"))

    tree = Tree("[bold]topology[/bold]")
    roots = sorted(node_id for node_id in dep_graph.nodes if not dep_graph.get_dependencies(node_id))
    for root in roots:
        _add_subtree(tree, dep_graph, root, set())
    console.print(tree)


def _add_subtree(parent: Tree, dep_graph: DependencyGraph, node_id: str, path: set):
    descriptor = dep_graph.get_payload(node_id)
    branch = parent.add(f"[cyan]{node_id}[/cyan] [dim]({descriptor.resource_type})[/dim]")
    for dependent in sorted(dep_graph.get_dependents(node_id)):
        if dependent not in path:
            _add_subtree(branch, dep_graph, dependent, path | {node_id})


def _output_waves(dep_graph: DependencyGraph):
    for number, wave in enumerate(dep_graph.get_deployment_waves(), start=1):
        console.print(f"[bold]Wave {number}:[/bold] {', '.join(wave)}")


def _to_dot(dep_graph: DependencyGraph) -> str:
    lines = ["digraph topology {", "  rankdir=LR;"]
    for node_id in sorted(dep_graph.nodes):
        descriptor = dep_graph.get_payload(node_id)
        lines.append(f'  "{node_id}" [label="{node_id}\\n{descriptor.resource_type}"];')
    for node_id in sorted(dep_graph.nodes):
        for dependency in sorted(dep_graph.get_dependencies(node_id)):
            lines.append(f'  "{node_id}" -> "{dependency}";')
    lines.append("}")
    return "\n".join(lines)
