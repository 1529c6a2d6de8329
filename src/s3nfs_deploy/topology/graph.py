"""The desired resource graph."""

from typing import Dict, Iterable, Iterator, List, Optional

from s3nfs_deploy.topology.descriptors import ResourceDescriptor
from s3nfs_deploy.topology.references import referenced_ids
from s3nfs_deploy.utils.errors import DependencyError


class ResourceGraph:
    """Descriptors keyed by logical ID, with edges from their declared dependencies."""

    def __init__(self, descriptors: Iterable[ResourceDescriptor] = ()):
        self.descriptors: Dict[str, ResourceDescriptor] = {}
        for descriptor in descriptors:
            self.add(descriptor)

    def add(self, descriptor: ResourceDescriptor) -> None:
        if descriptor.logical_id in self.descriptors:
            raise DependencyError(
                f"Duplicate logical ID '{descriptor.logical_id}'",
                resource_id=descriptor.logical_id
            )
        self.descriptors[descriptor.logical_id] = descriptor

    def get(self, logical_id: str) -> Optional[ResourceDescriptor]:
        return self.descriptors.get(logical_id)

    def ids(self) -> List[str]:
        return sorted(self.descriptors)

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.descriptors.values())

    def __len__(self) -> int:
        return len(self.descriptors)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self.descriptors

    def dependency_graph(self):
        # Imported here: the orchestrator package imports this module
        from s3nfs_deploy.orchestrator.dependency_graph import DependencyGraph

        graph = DependencyGraph()
        for descriptor in self.descriptors.values():
            graph.add_node(
                descriptor.logical_id,
                descriptor.declare_dependencies(),
                descriptor
            )
        return graph

    def validate(self):
        """Check the graph invariants and return the dependency graph.

        Raises:
            DanglingReferenceError: A declared dependency does not exist
            DependencyCycleError: The declared dependencies form a cycle
            DependencyError: An attribute references a resource its
                descriptor does not declare
        """
        for descriptor in self.descriptors.values():
            declared = descriptor.declare_dependencies()
            undeclared = referenced_ids(descriptor.attributes) - declared
            if undeclared:
                raise DependencyError(
                    f"Resource '{descriptor.logical_id}' references undeclared "
                    f"dependencies: {', '.join(sorted(undeclared))}",
                    resource_id=descriptor.logical_id
                )

        graph = self.dependency_graph()
        graph.validate()
        return graph
