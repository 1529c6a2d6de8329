"""Deployment planner for creating deployment and destruction plans."""

from typing import Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from s3nfs_deploy.state.models import Resource, State
from s3nfs_deploy.orchestrator.dependency_graph import DependencyGraph
from s3nfs_deploy.provisioners.base import BaseProvisioner, ChangeType
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.utils.errors import ConfigurationError
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


class ReplacementOrder(Enum):
    """How the old and new copy of a replaced resource are sequenced."""
    CREATE_BEFORE_DESTROY = "create_before_destroy"
    DESTROY_BEFORE_CREATE = "destroy_before_create"


@dataclass
class ResourceChange:
    """Represents a change to a resource."""

    resource_id: str
    change_type: ChangeType
    current_resource: Optional[Resource] = None
    desired_resource: Optional[Resource] = None
    changed_attributes: List[str] = field(default_factory=list)
    replacement_order: Optional[ReplacementOrder] = None
    reason: Optional[str] = None


@dataclass
class PlanStep:
    """A single provider operation and the steps it must wait for.

    ``deposed`` steps act on the copy held in ``State.deposed`` rather than
    the current one.
    """

    step_id: str
    resource_id: str
    action: str
    change_type: ChangeType
    depends_on: Set[str] = field(default_factory=set)
    deposed: bool = False

    def __str__(self) -> str:
        return self.step_id


@dataclass
class DeploymentPlan:
    """Explicit steps plus the per-resource changes they were derived from."""

    steps: Dict[str, PlanStep] = field(default_factory=dict)
    changes: Dict[str, ResourceChange] = field(default_factory=dict)
    affected: Set[str] = field(default_factory=set)
    destroy: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_step(self, step: PlanStep) -> PlanStep:
        self.steps[step.step_id] = step
        return step

    def has_changes(self) -> bool:
        return bool(self.steps)

    def get_changes_by_type(self, change_type: ChangeType) -> List[ResourceChange]:
        return [
            change for change in self.changes.values()
            if change.change_type == change_type
        ]

    def get_summary(self) -> Dict[str, int]:
        """Count resources per change type."""
        summary = {change_type.value: 0 for change_type in ChangeType}
        for change in self.changes.values():
            summary[change.change_type.value] += 1
        summary['deposed'] = sum(1 for step in self.steps.values() if step.deposed)
        return summary

    def step_graph(self) -> DependencyGraph:
        graph = DependencyGraph()
        for step in self.steps.values():
            graph.add_node(step.step_id, step.depends_on, step)
        return graph

    def ordered_steps(self) -> List[PlanStep]:
        """Steps in a valid sequential execution order."""
        return [self.steps[step_id] for step_id in self.step_graph().topological_sort()]


def step_id(action: str, resource_id: str, deposed: bool = False) -> str:
    return f"{action}:{resource_id}" + (":deposed" if deposed else "")


class DeploymentPlanner:
    """Computes deployment and destruction plans from desired and recorded state.

    The recorded ``State`` is treated as an immutable snapshot; nothing here
    talks to the provider.
    """

    def __init__(self, provisioners: Dict[str, BaseProvisioner]):
        self.provisioners = provisioners
        self.logger = get_logger(__name__)

    def provisioner_for(self, resource_type: str) -> BaseProvisioner:
        provisioner = self.provisioners.get(resource_type)
        if provisioner is None:
            raise ConfigurationError(
                f"No provisioner registered for resource type '{resource_type}'",
                suggestions=[f"Known types: {', '.join(sorted(self.provisioners))}"]
            )
        return provisioner

    def create_deployment_plan(self, desired: ResourceGraph, current_state: State) -> DeploymentPlan:
        """Create a deployment plan by comparing the desired graph and recorded state.

        Raises:
            DependencyCycleError: The desired graph contains a cycle
            DanglingReferenceError: A descriptor depends on an undeclared one
        """
        self.logger.info("Creating deployment plan...")
        graph = desired.validate()
        for descriptor in desired:
            self.provisioner_for(descriptor.resource_type)

        order = graph.topological_sort()
        changes = self._detect_changes(desired, order, current_state)

        changed = [rid for rid, change in changes.items()
                   if change.change_type != ChangeType.NO_CHANGE]
        affected = graph.get_affected_subgraph(changed)
        self._propagate_replacements(desired, graph, order, affected, changes)
        self._choose_replacement_order(graph, order, changes)

        removed = [resource for resource in current_state.list_resources()
                   if resource.id not in desired]
        for resource in removed:
            changes[resource.id] = ResourceChange(
                resource_id=resource.id,
                change_type=ChangeType.DELETE,
                current_resource=resource,
                reason="Resource no longer in configuration"
            )

        plan = DeploymentPlan(changes=changes, affected=affected)
        self._add_steps(plan, graph, current_state)

        summary = plan.get_summary()
        self.logger.info(
            f"Deployment plan created: {summary['create']} create, "
            f"{summary['update']} update, {summary['replace']} replace, "
            f"{summary['delete']} delete, {len(plan.steps)} steps"
        )
        return plan

    def create_destruction_plan(self, current_state: State) -> DeploymentPlan:
        """Delete everything recorded; each resource waits for its dependents' deletion."""
        self.logger.info("Creating destruction plan...")
        plan = DeploymentPlan(destroy=True)

        for resource in current_state.list_resources():
            plan.changes[resource.id] = ResourceChange(
                resource_id=resource.id,
                change_type=ChangeType.DELETE,
                current_resource=resource,
                reason="Destroy requested"
            )
            plan.add_step(PlanStep(
                step_id=step_id(DELETE, resource.id),
                resource_id=resource.id,
                action=DELETE,
                change_type=ChangeType.DELETE,
            ))

        for resource in current_state.list_resources():
            for dependency in resource.dependencies:
                dep_step = plan.steps.get(step_id(DELETE, dependency))
                if dep_step is not None:
                    dep_step.depends_on.add(step_id(DELETE, resource.id))

        for resource_id, resource in current_state.deposed.items():
            deposed_step = plan.add_step(PlanStep(
                step_id=step_id(DELETE, resource_id, deposed=True),
                resource_id=resource_id,
                action=DELETE,
                change_type=ChangeType.DELETE,
                deposed=True,
            ))
            for dependency in resource.dependencies:
                dep_step = plan.steps.get(step_id(DELETE, dependency))
                if dep_step is not None:
                    dep_step.depends_on.add(deposed_step.step_id)

        # Recorded dependencies come from earlier plans; re-check before running
        plan.step_graph().validate()

        self.logger.info(f"Destruction plan created: {len(plan.steps)} steps")
        return plan

    def _detect_changes(self, desired: ResourceGraph, order: List[str],
                        current_state: State) -> Dict[str, ResourceChange]:
        changes = {}
        for resource_id in order:
            descriptor = desired.get(resource_id)
            desired_resource = descriptor.to_resource()
            current = current_state.get_resource(resource_id)
            provision_plan = self.provisioner_for(descriptor.resource_type).plan(
                desired_resource, current
            )
            changes[resource_id] = ResourceChange(
                resource_id=resource_id,
                change_type=provision_plan.change_type,
                current_resource=current,
                desired_resource=desired_resource,
                changed_attributes=list(provision_plan.changed_attributes),
                reason=self._reason(provision_plan.change_type, current),
            )
        return changes

    @staticmethod
    def _reason(change_type: ChangeType, current: Optional[Resource]) -> str:
        if change_type == ChangeType.CREATE:
            return "Resource does not exist"
        if change_type == ChangeType.REPLACE and current is not None and current.tainted:
            return "Resource is tainted"
        if change_type == ChangeType.REPLACE:
            return "Immutable attributes changed"
        if change_type == ChangeType.UPDATE:
            return "Mutable attributes changed"
        return "No changes detected"

    def _propagate_replacements(self, desired: ResourceGraph, graph: DependencyGraph,
                                order: List[str], affected: Set[str],
                                changes: Dict[str, ResourceChange]) -> None:
        """Re-plan dependents of resources that get a new identity.

        Walks in dependency order so a replacement cascades through the
        affected subgraph. A dependency whose old copy is deleted before its
        new copy exists leaves nothing to point at in between, so references
        to it always replace.
        """
        destroy_first: Set[str] = set()
        for resource_id in order:
            if resource_id not in affected:
                continue
            change = changes[resource_id]
            descriptor = desired.get(resource_id)
            provisioner = self.provisioner_for(descriptor.resource_type)

            if change.current_resource is not None and change.change_type != ChangeType.REPLACE:
                for dependency in sorted(graph.get_dependencies(resource_id)):
                    if changes[dependency].change_type not in (ChangeType.REPLACE, ChangeType.CREATE):
                        continue
                    referencing = descriptor.attributes_referencing(dependency)
                    if not referencing:
                        continue

                    change.changed_attributes = sorted(set(change.changed_attributes) | referencing)
                    retargetable = dependency not in destroy_first
                    if retargetable and provisioner.is_mutable(change.changed_attributes):
                        change.change_type = ChangeType.UPDATE
                        change.reason = f"References replaced resource '{dependency}'"
                    else:
                        change.change_type = ChangeType.REPLACE
                        change.reason = f"Immutable reference to replaced resource '{dependency}'"
                        break

            if change.change_type == ChangeType.REPLACE and (
                not provisioner.allows_overlap
                or destroy_first & graph.get_dependencies(resource_id)
            ):
                destroy_first.add(resource_id)

    def _choose_replacement_order(self, graph: DependencyGraph, order: List[str],
                                  changes: Dict[str, ResourceChange]) -> None:
        """Destroy-before-create for types that forbid overlap.

        A replaced dependent of a destroy-before-create resource must go
        first too: its old copy has to be deleted before the dependency's old
        copy, which in turn precedes both new copies.
        """
        for resource_id in order:
            change = changes[resource_id]
            if change.change_type != ChangeType.REPLACE:
                continue
            provisioner = self.provisioner_for(change.desired_resource.type)
            forced = any(
                changes[dep].replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE
                for dep in graph.get_dependencies(resource_id)
            )
            if provisioner.allows_overlap and not forced:
                change.replacement_order = ReplacementOrder.CREATE_BEFORE_DESTROY
            else:
                change.replacement_order = ReplacementOrder.DESTROY_BEFORE_CREATE

    def _add_steps(self, plan: DeploymentPlan, graph: DependencyGraph, current_state: State) -> None:
        changes = plan.changes

        def materialize_step(resource_id: str) -> Optional[str]:
            change = changes.get(resource_id)
            if change is None:
                return None
            if change.change_type in (ChangeType.CREATE, ChangeType.REPLACE):
                return step_id(CREATE, resource_id)
            if change.change_type == ChangeType.UPDATE:
                return step_id(UPDATE, resource_id)
            return None

        # Forward steps: create / update / replace
        for resource_id, change in changes.items():
            if change.change_type in (ChangeType.NO_CHANGE, ChangeType.DELETE):
                continue
            action = UPDATE if change.change_type == ChangeType.UPDATE else CREATE
            step = plan.add_step(PlanStep(
                step_id=step_id(action, resource_id),
                resource_id=resource_id,
                action=action,
                change_type=change.change_type,
            ))
            for dependency in graph.get_dependencies(resource_id):
                dep_step = materialize_step(dependency)
                if dep_step:
                    step.depends_on.add(dep_step)

            if change.replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE:
                plan.add_step(PlanStep(
                    step_id=step_id(DELETE, resource_id),
                    resource_id=resource_id,
                    action=DELETE,
                    change_type=ChangeType.REPLACE,
                ))
                step.depends_on.add(step_id(DELETE, resource_id))
            elif change.replacement_order == ReplacementOrder.CREATE_BEFORE_DESTROY:
                plan.add_step(PlanStep(
                    step_id=step_id(DELETE, resource_id, deposed=True),
                    resource_id=resource_id,
                    action=DELETE,
                    change_type=ChangeType.REPLACE,
                    depends_on={step.step_id},
                    deposed=True,
                ))

        # Removed resources
        for resource_id, change in changes.items():
            if change.change_type == ChangeType.DELETE:
                plan.add_step(PlanStep(
                    step_id=step_id(DELETE, resource_id),
                    resource_id=resource_id,
                    action=DELETE,
                    change_type=ChangeType.DELETE,
                ))

        # Copies deposed by an interrupted earlier apply
        for resource_id in sorted(current_state.deposed):
            leftover_id = f"{step_id(DELETE, resource_id, deposed=True)}:leftover"
            plan.add_step(PlanStep(
                step_id=leftover_id,
                resource_id=resource_id,
                action=DELETE,
                change_type=ChangeType.DELETE,
                deposed=True,
            ))
            # The slot must be free before a new create deposes the current copy
            change = changes.get(resource_id)
            if change is not None and change.change_type == ChangeType.REPLACE:
                plan.steps[step_id(CREATE, resource_id)].depends_on.add(leftover_id)

        self._order_deletions(plan, current_state, materialize_step)

    def _order_deletions(self, plan: DeploymentPlan, current_state: State, materialize_step) -> None:
        """Old copies are deleted only once nothing recorded still points at them."""
        for resource in current_state.list_resources():
            for dependency in resource.dependencies:
                # Steps that move or drop the dependent's reference
                holders = [
                    holder for holder in (
                        materialize_step(resource.id),
                        step_id(DELETE, resource.id),
                        step_id(DELETE, resource.id, deposed=True),
                    )
                    if holder in plan.steps
                ]

                for target in (step_id(DELETE, dependency),
                               step_id(DELETE, dependency, deposed=True)):
                    step = plan.steps.get(target)
                    if step is None:
                        continue
                    for holder in holders:
                        if holder == target or self._depends_on(plan, holder, target):
                            continue
                        step.depends_on.add(holder)

        # Recorded dependencies may disagree with the desired graph
        plan.step_graph().validate()

    @staticmethod
    def _depends_on(plan: DeploymentPlan, step_a: str, step_b: str) -> bool:
        """Whether ``step_a`` (transitively) waits for ``step_b``."""
        seen = set()
        stack = [step_a]
        while stack:
            current = stack.pop()
            if current == step_b:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(plan.steps[current].depends_on if current in plan.steps else ())
        return False
