"""Orchestrator module for deployment planning and execution."""

from s3nfs_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from s3nfs_deploy.orchestrator.planner import (
    DeploymentPlanner,
    DeploymentPlan,
    PlanStep,
    ReplacementOrder,
    ResourceChange,
)
from s3nfs_deploy.orchestrator.executor import (
    ApplyResult,
    DeploymentExecutor,
    StepResult,
    StepStatus,
)
from s3nfs_deploy.orchestrator.rollback import (
    RollbackManager,
    RollbackResult,
    RollbackStrategy,
)
from s3nfs_deploy.orchestrator.orchestrator import DeploymentOrchestrator

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Planning
    'DeploymentPlanner',
    'DeploymentPlan',
    'PlanStep',
    'ReplacementOrder',
    'ResourceChange',

    # Execution
    'ApplyResult',
    'DeploymentExecutor',
    'StepResult',
    'StepStatus',

    # Rollback
    'RollbackManager',
    'RollbackResult',
    'RollbackStrategy',

    # Main orchestrator
    'DeploymentOrchestrator',
]
