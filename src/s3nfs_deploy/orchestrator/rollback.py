"""Rollback of resources created during a failed or cancelled apply."""

from typing import Callable, Dict, Iterable, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from s3nfs_deploy.orchestrator.dependency_graph import DependencyGraph
from s3nfs_deploy.provisioners.base import BaseProvisioner
from s3nfs_deploy.state.models import State
from s3nfs_deploy.utils.errors import DependencyError, DeploymentError, ErrorContext, error_handler
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class RollbackStrategy(Enum):
    """Strategy for rollback."""
    AUTOMATIC = "automatic"  # Roll back on failure as well as cancellation
    NONE = "none"  # Roll back on cancellation only


@dataclass
class RollbackResult:
    """Result of rollback execution."""

    destroyed: List[str] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    failed: Dict[str, DeploymentError] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class RollbackManager:
    """Destroys resources created in the current pass, newest first.

    Resources that existed before the pass are never touched. When a
    replacement is rolled back its deposed predecessor becomes current again.
    """

    def __init__(
        self,
        provisioners: Dict[str, BaseProvisioner],
        on_state_change: Optional[Callable[[State], None]] = None
    ):
        self.provisioners = provisioners
        self.on_state_change = on_state_change
        self.logger = get_logger(__name__)

    @staticmethod
    def should_rollback(strategy: RollbackStrategy, failed: bool, cancelled: bool) -> bool:
        if cancelled:
            return True
        return failed and strategy == RollbackStrategy.AUTOMATIC

    def rollback(self, state: State, created_ids: Iterable[str]) -> RollbackResult:
        """Destroy the given resources in reverse dependency order, mutating ``state``."""
        result = RollbackResult()
        created = {rid for rid in created_ids if state.has_resource(rid)}
        if not created:
            return result

        graph = DependencyGraph()
        for rid in created:
            resource = state.get_resource(rid)
            graph.add_node(rid, set(resource.dependencies) & created, resource)

        self.logger.info(f"Rolling back {len(created)} resources created in this pass")

        for rid in graph.get_destruction_order():
            resource = state.get_resource(rid)
            blocked = sorted(dep for dep in graph.get_dependents(rid) if dep in result.failed)
            if blocked:
                result.failed[rid] = DependencyError(
                    f"Not rolled back: dependents {', '.join(blocked)} still exist",
                    resource_id=rid
                )
                continue

            try:
                self.provisioners[resource.type].destroy(resource)
            except DeploymentError as e:
                self.logger.error(f"Rollback of {rid} failed: {e}", extra={'resource_id': rid})
                result.failed[rid] = e
                continue
            except Exception as e:
                error = error_handler.handle_exception(
                    e, ErrorContext(resource_id=rid, resource_type=resource.type, operation='rollback')
                )
                self.logger.error(f"Rollback of {rid} failed: {error}", extra={'resource_id': rid})
                result.failed[rid] = error
                continue

            state.remove_resource(rid)
            result.destroyed.append(rid)
            self.logger.info(f"Rolled back {rid}", extra={'resource_id': rid, 'operation': 'rollback'})

            previous = state.deposed.pop(rid, None)
            if previous is not None:
                state.add_resource(previous)
                result.restored.append(rid)
                self.logger.info(f"Restored previous copy of {rid}", extra={'resource_id': rid})

            if self.on_state_change:
                self.on_state_change(state)

        return result
