"""Dependency graph for resource ordering."""

from typing import Any, Dict, Iterable, List, Set, Optional, Tuple
from dataclasses import dataclass, field
from collections import defaultdict, deque

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.utils.errors import DanglingReferenceError, DependencyCycleError


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    node_id: str
    dependencies: Set[str]  # Node IDs this node depends on
    payload: Any = None  # Descriptor, Resource or plan step carried by the node
    dependents: Set[str] = field(default_factory=set)


class DependencyGraph:
    """Directed graph of dependencies between resources.

    An edge ``(a, b)`` means ``a`` depends on ``b``: ``b`` must be fully
    materialized before ``a`` starts, and ``a`` destroyed before ``b``.
    Ordering methods break ties by node ID so results are deterministic.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_resources(cls, resources: Iterable[Resource]) -> "DependencyGraph":
        graph = cls()
        for resource in resources:
            graph.add_resource(resource)
        return graph

    def add_node(self, node_id: str, dependencies: Iterable[str], payload: Any = None) -> None:
        """Add or replace a node.

        Args:
            node_id: Unique node ID
            dependencies: IDs of nodes this node depends on
            payload: Arbitrary object stored with the node
        """
        if node_id in self.nodes:
            for dep_id in self.nodes[node_id].dependencies:
                self._adjacency_list[dep_id].discard(node_id)

        dependencies = set(dependencies)
        self.nodes[node_id] = DependencyNode(
            node_id=node_id,
            dependencies=dependencies,
            payload=payload,
        )
        for dep_id in dependencies:
            self._adjacency_list[dep_id].add(node_id)

    def add_resource(self, resource: Resource) -> None:
        """Add a recorded resource using its stored dependencies."""
        self.add_node(resource.id, resource.dependencies, resource)

    def remove_node(self, node_id: str) -> None:
        """Remove a node and every edge that touches it."""
        node = self.nodes.pop(node_id, None)
        if node is None:
            return
        for dep_id in node.dependencies:
            self._adjacency_list[dep_id].discard(node_id)
        for dependent_id in self._adjacency_list.pop(node_id, set()):
            if dependent_id in self.nodes:
                self.nodes[dependent_id].dependencies.discard(node_id)

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node."""
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def get_dependents(self, node_id: str) -> Set[str]:
        """Get direct dependents of a node."""
        return {dep for dep in self._adjacency_list.get(node_id, set()) if dep in self.nodes}

    def get_all_dependencies(self, node_id: str) -> Set[str]:
        """Get all transitive dependencies of a node."""
        return self._walk(node_id, self.get_dependencies)

    def get_all_dependents(self, node_id: str) -> Set[str]:
        """Get all transitive dependents of a node."""
        return self._walk(node_id, self.get_dependents)

    def _walk(self, start: str, neighbours) -> Set[str]:
        visited = set()
        queue = deque([start])

        while queue:
            current_id = queue.popleft()
            if current_id in visited:
                continue
            visited.add(current_id)
            for next_id in neighbours(current_id):
                if next_id not in visited:
                    queue.append(next_id)

        visited.discard(start)
        return visited

    def get_affected_subgraph(self, changed: Iterable[str]) -> Set[str]:
        """Nodes that must be re-planned when ``changed`` nodes change.

        Returns the changed nodes plus all of their transitive dependents.
        """
        affected = set()
        for node_id in changed:
            if node_id in self.nodes:
                affected.add(node_id)
                affected |= self.get_all_dependents(node_id)
        return affected

    def find_dangling_references(self) -> List[Tuple[str, str]]:
        """Pairs of (node, missing dependency)."""
        return sorted(
            (node_id, dep_id)
            for node_id, node in self.nodes.items()
            for dep_id in node.dependencies
            if dep_id not in self.nodes
        )

    def detect_cycle(self) -> Optional[List[Tuple[str, str]]]:
        """Find a dependency cycle.

        Returns:
            The edges ``(dependent, dependency)`` forming the cycle, or None
        """
        # White (0): unvisited, Gray (1): on the DFS stack, Black (2): done
        color = {node_id: 0 for node_id in self.nodes}
        stack: List[str] = []

        def dfs(node_id: str) -> Optional[List[Tuple[str, str]]]:
            color[node_id] = 1
            stack.append(node_id)

            for dep_id in sorted(self.nodes[node_id].dependencies):
                if dep_id not in self.nodes:
                    continue
                if color[dep_id] == 1:
                    path = stack[stack.index(dep_id):] + [dep_id]
                    return list(zip(path, path[1:]))
                if color[dep_id] == 0:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle

            stack.pop()
            color[node_id] = 2
            return None

        for node_id in sorted(self.nodes):
            if color[node_id] == 0:
                cycle = dfs(node_id)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            DanglingReferenceError: A node depends on an undeclared node
            DependencyCycleError: The graph contains a cycle
        """
        dangling = self.find_dangling_references()
        if dangling:
            node_id, missing = dangling[0]
            raise DanglingReferenceError(node_id, missing)

        cycle = self.detect_cycle()
        if cycle:
            raise DependencyCycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Perform topological sort on the dependency graph.

        Returns:
            List of node IDs in dependency order (dependencies before dependents)

        Raises:
            DependencyError: If graph is invalid
        """
        return [node_id for wave in self.get_deployment_waves() for node_id in wave]

    def get_deployment_waves(self) -> List[List[str]]:
        """Group nodes into parallel waves.

        Nodes in the same wave have no dependencies on each other.

        Raises:
            DependencyError: If graph is invalid
        """
        self.validate()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        current_wave = sorted(node_id for node_id, degree in in_degree.items() if degree == 0)
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []

            for node_id in current_wave:
                for dependent_id in self.get_dependents(node_id):
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_wave.append(dependent_id)

            current_wave = sorted(next_wave)

        return waves

    def get_destruction_order(self) -> List[str]:
        """Get destruction order, the exact reverse of the deployment order."""
        return list(reversed(self.topological_sort()))

    def get_payload(self, node_id: str) -> Any:
        node = self.nodes.get(node_id)
        return node.payload if node else None

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def size(self) -> int:
        return len(self.nodes)
