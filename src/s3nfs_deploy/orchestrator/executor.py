"""Deployment executor running plan steps on a bounded worker pool."""

from typing import Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
import threading
import time

from s3nfs_deploy.orchestrator.planner import CREATE, DELETE, UPDATE, DeploymentPlan, PlanStep
from s3nfs_deploy.orchestrator.rollback import RollbackManager, RollbackResult, RollbackStrategy
from s3nfs_deploy.provisioners.base import BaseProvisioner, ChangeType
from s3nfs_deploy.state.models import Resource, State
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.topology.references import resolve
from s3nfs_deploy.utils.errors import (
    ApplyCancelledError,
    DeploymentError,
    ErrorContext,
    PartialApplyError,
    error_handler,
)
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class StepStatus(Enum):
    """Status of a plan step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of executing a single plan step."""

    step: PlanStep
    status: StepStatus = StepStatus.PENDING
    error: Optional[DeploymentError] = None
    duration: float = 0.0  # seconds


@dataclass
class ApplyResult:
    """Outcome of an apply or destroy pass."""

    state: State
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    created_resource_ids: List[str] = field(default_factory=list)
    cancelled: bool = False
    rollback: Optional[RollbackResult] = None

    def _resources_with(self, status: StepStatus) -> List[str]:
        return sorted({
            result.step.resource_id for result in self.step_results.values()
            if result.status == status
        })

    @property
    def failed(self) -> Dict[str, DeploymentError]:
        failures = {}
        for result in self.step_results.values():
            if result.status == StepStatus.FAILED:
                failures.setdefault(result.step.resource_id, result.error)
        return failures

    @property
    def skipped(self) -> List[str]:
        failed = self.failed
        return [rid for rid in self._resources_with(StepStatus.SKIPPED) if rid not in failed]

    @property
    def succeeded(self) -> List[str]:
        unfinished = set(self.failed) | set(self.skipped)
        return [rid for rid in self._resources_with(StepStatus.SUCCEEDED) if rid not in unfinished]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.failed and not self.skipped

    @property
    def error(self) -> Optional[PartialApplyError]:
        if self.success:
            return None
        failed = dict(self.failed)
        if self.cancelled and not failed:
            failed['apply'] = ApplyCancelledError()
        return PartialApplyError(self.succeeded, failed, self.skipped)


StateCallback = Callable[[State], None]


class DeploymentExecutor:
    """Executes plan steps concurrently, bounded by ``parallelism``.

    Workers only talk to the provider. The coordinating thread resolves
    references, records outcomes and is the only writer of the working state.
    """

    def __init__(
        self,
        provisioners: Dict[str, BaseProvisioner],
        parallelism: int = 4,
        apply_timeout: float = 3600,
        rollback_strategy: RollbackStrategy = RollbackStrategy.NONE,
        on_state_change: Optional[StateCallback] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize deployment executor.

        Args:
            provisioners: Provisioners keyed by resource type
            parallelism: Maximum number of steps in flight
            apply_timeout: Seconds before the pass is cancelled and rolled back
            rollback_strategy: Whether failures (not only cancellation) roll back
            on_state_change: Called with the working state after every step
            clock: Monotonic time source
        """
        self.provisioners = provisioners
        self.parallelism = max(1, parallelism)
        self.apply_timeout = apply_timeout
        self.rollback_strategy = rollback_strategy
        self.on_state_change = on_state_change
        self.clock = clock
        self.cancel_event = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Stop starting new steps and abort in-flight polling."""
        self.cancel_event.set()

    def execute(
        self,
        plan: DeploymentPlan,
        state: State,
        desired: Optional[ResourceGraph] = None
    ) -> ApplyResult:
        """Run every step of ``plan`` against a copy of ``state``.

        Args:
            plan: Deployment or destruction plan
            state: Recorded state snapshot (not modified)
            desired: Desired graph, required when the plan creates or updates

        Returns:
            ApplyResult with the new state snapshot
        """
        working = state.copy_state()
        result = ApplyResult(
            state=working,
            step_results={sid: StepResult(step) for sid, step in plan.steps.items()},
        )
        if not plan.steps:
            return result

        self.logger.info(
            f"Executing {len(plan.steps)} steps (parallelism={self.parallelism}, "
            f"timeout={self.apply_timeout}s)"
        )

        pending = set(plan.steps)
        running: Dict[Future, PlanStep] = {}
        started: Dict[str, float] = {}
        deadline = self.clock() + self.apply_timeout

        with ThreadPoolExecutor(max_workers=self.parallelism,
                                thread_name_prefix="s3nfs-step") as pool:
            while pending or running:
                if not self.cancel_event.is_set() and self.clock() >= deadline:
                    self.logger.error(f"Apply timeout of {self.apply_timeout}s exceeded, cancelling")
                    self.cancel_event.set()

                if not self.cancel_event.is_set():
                    self._dispatch(pool, plan, desired, working, result, pending, running, started)

                if not running:
                    break

                timeout = None
                if not self.cancel_event.is_set():
                    timeout = max(0.0, deadline - self.clock())
                try:
                    done, _ = wait(list(running), timeout=timeout, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.logger.warning("Interrupted, cancelling in-flight steps")
                    self.cancel_event.set()
                    continue

                for future in done:
                    step = running.pop(future)
                    duration = self.clock() - started[step.step_id]
                    self._finish(step, future, plan, working, result, duration)

        for step_id in pending:
            result.step_results[step_id].status = StepStatus.SKIPPED

        result.cancelled = self.cancel_event.is_set()
        self._maybe_rollback(working, result)
        return result

    def _dispatch(self, pool, plan, desired, working, result, pending, running, started) -> None:
        """Start every runnable step, up to the parallelism bound."""
        progress = True
        while progress:
            progress = False
            self._skip_blocked(plan, result, pending)

            for step_id in sorted(pending):
                if len(running) >= self.parallelism:
                    return
                step = plan.steps[step_id]
                if not all(result.step_results[dep].status == StepStatus.SUCCEEDED
                           for dep in step.depends_on):
                    continue

                pending.discard(step_id)
                started[step_id] = self.clock()
                try:
                    task = self._prepare(step, plan, desired, working)
                except DeploymentError as e:
                    self._record_failure(step, e, result)
                    progress = True
                    continue

                if task is None:
                    # Nothing to do against the provider
                    self._record_success(step, None, plan, working, result, 0.0)
                    progress = True
                    continue

                result.step_results[step_id].status = StepStatus.RUNNING
                self.logger.info(f"Starting {step_id}",
                                 extra={'step_id': step_id, 'resource_id': step.resource_id})
                running[pool.submit(task)] = step

    def _skip_blocked(self, plan: DeploymentPlan, result: ApplyResult, pending: set) -> None:
        blocked_states = (StepStatus.FAILED, StepStatus.SKIPPED)
        changed = True
        while changed:
            changed = False
            for step_id in sorted(pending):
                step = plan.steps[step_id]
                if any(result.step_results[dep].status in blocked_states for dep in step.depends_on):
                    pending.discard(step_id)
                    result.step_results[step_id].status = StepStatus.SKIPPED
                    self.logger.warning(f"Skipping {step_id}: a prerequisite did not complete",
                                        extra={'step_id': step_id, 'resource_id': step.resource_id})
                    changed = True

    def _prepare(self, step: PlanStep, plan: DeploymentPlan, desired: Optional[ResourceGraph],
                 working: State) -> Optional[Callable[[], Optional[Resource]]]:
        """Resolve inputs on the coordinating thread and return the worker task."""
        rid = step.resource_id

        if step.action == DELETE:
            resource = working.deposed.get(rid) if step.deposed else working.get_resource(rid)
            if resource is None:
                return None
            current = working.get_resource(rid) if step.deposed else None
            if current is not None and current.physical_id == resource.physical_id:
                # Adopted rather than created: the old copy is the live one
                self.logger.warning(f"Deposed copy of {rid} is the current object, keeping it",
                                    extra={'step_id': step.step_id, 'resource_id': rid})
                return None
            provisioner = self._provisioner(resource.type, rid)
            target = resource.model_copy(deep=True)
            return lambda: self._destroy(provisioner, target)

        change = plan.changes[rid]
        descriptor = desired.get(rid) if desired is not None else None
        if descriptor is None:
            raise DeploymentError(f"No desired configuration for '{rid}'",
                                  context=ErrorContext(resource_id=rid, operation=step.action))
        provisioner = self._provisioner(descriptor.resource_type, rid)
        attributes = resolve(descriptor.attributes, working)
        resource = change.desired_resource.model_copy(deep=True)

        if step.action == CREATE:
            resource.metadata['state_serial'] = working.serial
            return lambda: self._create(provisioner, resource, attributes)

        current = working.get_resource(rid).model_copy(deep=True)
        changed = list(change.changed_attributes)
        return lambda: provisioner.update(current, resource, attributes, changed)

    def _provisioner(self, resource_type: str, rid: str) -> BaseProvisioner:
        provisioner = self.provisioners.get(resource_type)
        if provisioner is None:
            raise DeploymentError(
                f"No provisioner registered for resource type '{resource_type}'",
                context=ErrorContext(resource_id=rid, resource_type=resource_type)
            )
        return provisioner

    def _create(self, provisioner: BaseProvisioner, resource: Resource, attributes) -> Resource:
        created = provisioner.create(resource, attributes, self.cancel_event)
        try:
            return provisioner.wait_until_ready(created, self.cancel_event)
        except DeploymentError as e:
            e.partial_resource = created
            raise

    @staticmethod
    def _destroy(provisioner: BaseProvisioner, resource: Resource) -> None:
        provisioner.destroy(resource)
        return None

    def _finish(self, step: PlanStep, future: Future, plan: DeploymentPlan, working: State,
                result: ApplyResult, duration: float) -> None:
        try:
            outcome = future.result()
        except DeploymentError as e:
            self._record_partial(step, e, plan, working, result)
            self._record_failure(step, e, result, duration)
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(resource_id=step.resource_id, operation=step.action)
            )
            self._record_failure(step, error, result, duration)
        else:
            self._record_success(step, outcome, plan, working, result, duration)

        if self.on_state_change:
            self.on_state_change(working)

    def _record_success(self, step: PlanStep, outcome: Optional[Resource], plan: DeploymentPlan,
                        working: State, result: ApplyResult, duration: float) -> None:
        rid = step.resource_id

        if step.action == CREATE:
            self._record_created(step, outcome, working, result)
        elif step.action == UPDATE:
            previous = working.get_resource(rid)
            outcome.metadata = {**previous.metadata, **outcome.metadata}
            outcome.metadata['updated_at'] = _now()
            working.add_resource(outcome)
        elif step.deposed:
            working.deposed.pop(rid, None)
        else:
            working.remove_resource(rid)

        step_result = result.step_results[step.step_id]
        step_result.status = StepStatus.SUCCEEDED
        step_result.duration = duration
        self.logger.info(f"Completed {step.step_id} in {duration:.1f}s",
                         extra={'step_id': step.step_id, 'resource_id': rid, 'duration': duration})

    def _record_created(self, step: PlanStep, resource: Resource, working: State,
                        result: ApplyResult) -> None:
        rid = step.resource_id
        if step.change_type == ChangeType.REPLACE and working.has_resource(rid):
            working.depose(rid)
        resource.metadata['created_at'] = _now()
        working.add_resource(resource)
        if rid not in result.created_resource_ids:
            result.created_resource_ids.append(rid)

    def _record_partial(self, step: PlanStep, error: DeploymentError, plan: DeploymentPlan,
                        working: State, result: ApplyResult) -> None:
        """Keep a resource whose create call succeeded but that never became ready."""
        partial = getattr(error, 'partial_resource', None)
        if step.action != CREATE or partial is None or partial.physical_id is None:
            return
        partial.mark_tainted(str(error))
        self._record_created(step, partial, working, result)
        self.logger.warning(f"Recorded {step.resource_id} as tainted ({partial.physical_id})",
                            extra={'step_id': step.step_id, 'resource_id': step.resource_id})

    def _record_failure(self, step: PlanStep, error: DeploymentError, result: ApplyResult,
                        duration: float = 0.0) -> None:
        step_result = result.step_results[step.step_id]
        step_result.status = StepStatus.FAILED
        step_result.error = error
        step_result.duration = duration
        self.logger.error(f"Step {step.step_id} failed: {error}",
                          extra={'step_id': step.step_id, 'resource_id': step.resource_id})

    def _maybe_rollback(self, working: State, result: ApplyResult) -> None:
        if not result.created_resource_ids:
            return
        if not RollbackManager.should_rollback(self.rollback_strategy, bool(result.failed),
                                               result.cancelled):
            return
        manager = RollbackManager(self.provisioners, on_state_change=self.on_state_change)
        result.rollback = manager.rollback(working, result.created_resource_ids)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
