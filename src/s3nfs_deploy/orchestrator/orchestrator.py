"""Main orchestrator that coordinates deployment planning and execution."""

from typing import Dict, List, Optional, Tuple

from s3nfs_deploy.config.parser import Config
from s3nfs_deploy.orchestrator.executor import ApplyResult, DeploymentExecutor, StateCallback
from s3nfs_deploy.orchestrator.planner import DeploymentPlan, DeploymentPlanner
from s3nfs_deploy.orchestrator.rollback import RollbackStrategy
from s3nfs_deploy.outputs.projector import OutputProjector
from s3nfs_deploy.provisioners import build_registry
from s3nfs_deploy.provisioners.base import BaseProvisioner
from s3nfs_deploy.state.manager import StateManager, state_path_for
from s3nfs_deploy.state.models import State
from s3nfs_deploy.topology.builder import TopologyBuilder
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.utils.aws_client import AWSClientManager
from s3nfs_deploy.utils.errors import ConfigurationError
from s3nfs_deploy.utils.logging import get_logger
from s3nfs_deploy.utils.retry import RetryStrategy
from s3nfs_deploy.utils.waiter import Poller, PollerSettings

logger = get_logger(__name__)


class DeploymentOrchestrator:
    """Coordinates planning, execution, refresh and outputs for one environment.

    State flows explicitly: every operation loads the recorded snapshot,
    works on a copy and persists the result through the state manager.
    """

    def __init__(
        self,
        config: Config,
        state_manager: Optional[StateManager] = None,
        provisioners: Optional[Dict[str, BaseProvisioner]] = None,
        clients: Optional[AWSClientManager] = None
    ):
        """Initialize deployment orchestrator.

        Args:
            config: Loaded configuration
            state_manager: State manager (defaults to the project state file)
            provisioners: Provisioners keyed by resource type (defaults to AWS)
            clients: AWS client manager (created lazily from the config)
        """
        self.config = config
        self.project_name = config.project.name
        self.environment = config.environment_label
        self.state_manager = state_manager or StateManager(
            state_path_for(self.project_name, self.environment)
        )
        self._clients = clients
        self.provisioners = provisioners or build_registry(
            self.clients,
            RetryStrategy(**config.settings.retry.model_dump()),
            Poller(PollerSettings(**config.settings.readiness.model_dump())),
        )
        self.planner = DeploymentPlanner(self.provisioners)
        self.logger = get_logger(__name__)

    @property
    def clients(self) -> AWSClientManager:
        if self._clients is None:
            self._clients = AWSClientManager(profile=self.config.profile, region=self.config.region)
        return self._clients

    def desired_graph(self) -> ResourceGraph:
        return TopologyBuilder(
            self.config.variables,
            self.config.region,
            project_name=self.project_name,
            environment=self.environment,
        ).build()

    def load_state(self) -> State:
        return self.state_manager.load_or_initialize(
            self.project_name,
            self.environment,
            self.config.region,
            self.config.environment.account if self.config.environment else None,
        )

    def check_account(self) -> None:
        """Refuse to touch an account other than the one the environment names."""
        env = self.config.environment
        if env is None or env.account is None:
            return
        credentials = self.clients.validate_credentials()
        if credentials.account_id != env.account:
            raise ConfigurationError(
                f"Credentials belong to account {credentials.account_id}, "
                f"environment '{env.name}' expects {env.account}",
                suggestions=['Select the matching AWS profile for this environment']
            )

    def plan(self, state: Optional[State] = None) -> DeploymentPlan:
        """Plan the changes that bring recorded state to the desired topology."""
        self.logger.info("Planning deployment...")
        return self.planner.create_deployment_plan(self.desired_graph(), state or self.load_state())

    def plan_destruction(self, state: Optional[State] = None) -> DeploymentPlan:
        self.logger.info("Planning destruction...")
        return self.planner.create_destruction_plan(state or self.load_state())

    def apply(
        self,
        plan: Optional[DeploymentPlan] = None,
        parallelism: Optional[int] = None,
        apply_timeout: Optional[float] = None,
        rollback_strategy: Optional[RollbackStrategy] = None,
        on_state_change: Optional[StateCallback] = None
    ) -> ApplyResult:
        """Plan (unless given a plan) and execute it, persisting state after every step."""
        with self.state_manager:
            state = self.load_state()
            desired = self.desired_graph()
            if plan is None:
                plan = self.planner.create_deployment_plan(desired, state)
            if not plan.has_changes():
                self.logger.info("No changes to apply")
                return ApplyResult(state=state)

            self.check_account()
            executor = self._executor(parallelism, apply_timeout, rollback_strategy, on_state_change)
            result = executor.execute(plan, state, desired)
            self.state_manager.save(result.state)

        self._log_result("Apply", result)
        return result

    def destroy(
        self,
        parallelism: Optional[int] = None,
        apply_timeout: Optional[float] = None,
        on_state_change: Optional[StateCallback] = None
    ) -> ApplyResult:
        """Delete every recorded resource, dependents first."""
        with self.state_manager:
            state = self.load_state()
            plan = self.planner.create_destruction_plan(state)
            if not plan.has_changes():
                self.logger.info("No resources to destroy")
                return ApplyResult(state=state)

            self.check_account()
            executor = self._executor(parallelism, apply_timeout, RollbackStrategy.NONE,
                                      on_state_change)
            result = executor.execute(plan, state)
            self.state_manager.save(result.state)

        self._log_result("Destroy", result)
        return result

    def refresh(self) -> Tuple[State, List[str]]:
        """Re-read every recorded resource and drop the ones that no longer exist.

        Only read calls are made against the provider.

        Returns:
            The refreshed state and the IDs of dropped resources
        """
        with self.state_manager:
            state = self.load_state().copy_state()
            dropped = []
            for resource in state.list_resources():
                provisioner = self.provisioners.get(resource.type)
                if provisioner is None:
                    continue
                live = provisioner.read(resource)
                if live is None:
                    self.logger.warning(f"{resource.id} no longer exists, dropping it from state",
                                        extra={'resource_id': resource.id})
                    state.remove_resource(resource.id)
                    dropped.append(resource.id)
                else:
                    state.add_resource(live)

            for resource_id, resource in list(state.deposed.items()):
                provisioner = self.provisioners.get(resource.type)
                if provisioner is not None and provisioner.read(resource) is None:
                    del state.deposed[resource_id]
                    dropped.append(f"{resource_id} (deposed)")

            self.state_manager.save(state)
        return state, dropped

    def outputs(self, state: Optional[State] = None) -> OutputProjector:
        return OutputProjector(state or self.load_state())

    def _executor(self, parallelism, apply_timeout, rollback_strategy,
                  on_state_change) -> DeploymentExecutor:
        settings = self.config.settings
        if rollback_strategy is None:
            rollback_strategy = (RollbackStrategy.AUTOMATIC if settings.auto_rollback
                                 else RollbackStrategy.NONE)

        def persist(state: State) -> None:
            self.state_manager.save(state)
            if on_state_change:
                on_state_change(state)

        return DeploymentExecutor(
            self.provisioners,
            parallelism=parallelism or settings.parallelism,
            apply_timeout=apply_timeout or settings.apply_timeout,
            rollback_strategy=rollback_strategy,
            on_state_change=persist,
        )

    def _log_result(self, operation: str, result: ApplyResult) -> None:
        if result.success:
            self.logger.info(f"{operation} complete: {len(result.succeeded)} resources changed")
        else:
            self.logger.error(f"{operation} incomplete: {result.error}")
