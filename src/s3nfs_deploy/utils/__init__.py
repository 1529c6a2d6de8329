"""Utility modules for logging, AWS client management, retries and polling."""

from s3nfs_deploy.utils.aws_client import AWSClientManager, AWSCredentials
from s3nfs_deploy.utils.retry import RetryStrategy
from s3nfs_deploy.utils.waiter import Poller, PollerSettings, PollResult, PollState
from s3nfs_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    CredentialError,
    NetworkError,
    StateError,
    StateLockError,
    StateNotFoundError,
    DependencyError,
    DependencyCycleError,
    DanglingReferenceError,
    UnresolvedReferenceError,
    ProvisioningError,
    ProviderRejectionError,
    ProviderTransientError,
    ReadinessTimeoutError,
    ApplyCancelledError,
    PartialApplyError,
    OutputNotMaterializedError,
    ErrorHandler,
    error_handler
)
from s3nfs_deploy.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry and polling
    'RetryStrategy',
    'Poller',
    'PollerSettings',
    'PollResult',
    'PollState',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'CredentialError',
    'NetworkError',
    'StateError',
    'StateLockError',
    'StateNotFoundError',
    'DependencyError',
    'DependencyCycleError',
    'DanglingReferenceError',
    'UnresolvedReferenceError',
    'ProvisioningError',
    'ProviderRejectionError',
    'ProviderTransientError',
    'ReadinessTimeoutError',
    'ApplyCancelledError',
    'PartialApplyError',
    'OutputNotMaterializedError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
