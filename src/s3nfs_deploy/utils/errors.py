"""Error handling framework for provisioning operations."""

from typing import Optional, Dict, Any, List, Sequence, Tuple
from enum import Enum
from dataclasses import dataclass, asdict
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during provisioning."""
    CONFIGURATION = "configuration"
    AWS = "aws"
    NETWORK = "network"
    STATE = "state"
    DEPENDENCY = "dependency"
    PROVISIONING = "provisioning"
    REJECTION = "rejection"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PARTIAL_APPLY = "partial_apply"
    OUTPUT = "output"
    CREDENTIAL = "credential"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Apply cannot continue
    ERROR = "error"  # Resource failed but independent resources can continue
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for provisioning errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        # Resource whose create call succeeded before this error was raised
        self.partial_resource = None

    def to_user_message(self) -> str:
        """Convert error to user-friendly message."""
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Missing or invalid configuration, raised before any provider call."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class NetworkError(DeploymentError):
    """Network-related error."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class StateError(DeploymentError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateLockError(StateError):
    """State file is locked by another process."""


class StateNotFoundError(StateError):
    """State file does not exist."""


class DependencyError(DeploymentError):
    """Error related to resource dependencies."""

    def __init__(self, message: str, resource_id: Optional[str] = None, **kwargs):
        kwargs.setdefault('context', ErrorContext(resource_id=resource_id))
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.DEPENDENCY, **kwargs)


class DependencyCycleError(DependencyError):
    """The reference graph contains a cycle."""

    def __init__(self, edges: Sequence[Tuple[str, str]], **kwargs):
        self.edges = list(edges)
        cycle = ", ".join(f"{src} -> {dst}" for src, dst in self.edges)
        super().__init__(
            f"Circular dependency detected: {cycle}",
            resource_id=self.edges[0][0] if self.edges else None,
            suggestions=['Remove one of the references listed above'],
            **kwargs
        )


class DanglingReferenceError(DependencyError):
    """A descriptor references a logical id that is not declared."""

    def __init__(self, resource_id: str, missing: str, **kwargs):
        self.missing = missing
        super().__init__(
            f"Resource '{resource_id}' depends on '{missing}' which does not exist",
            resource_id=resource_id,
            **kwargs
        )


class UnresolvedReferenceError(DependencyError):
    """A reference points at a resource output that is not materialized yet."""


class ProvisioningError(DeploymentError):
    """Error during resource provisioning."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVISIONING)
        kwargs.setdefault('severity', ErrorSeverity.ERROR)
        super().__init__(message, **kwargs)


class ProviderRejectionError(ProvisioningError):
    """The provider refused the request (4xx-equivalent). Never retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.REJECTION, **kwargs)


class ProviderTransientError(ProvisioningError):
    """A retryable provider failure (throttling, eventual consistency, 5xx)."""

    def __init__(self, message: str, attempts: int = 1, **kwargs):
        self.attempts = attempts
        super().__init__(message, category=ErrorCategory.TRANSIENT, **kwargs)


class ReadinessTimeoutError(ProvisioningError):
    """Polling for a terminal state exceeded its deadline."""

    def __init__(
        self,
        message: str,
        waited: float = 0.0,
        last_status: Optional[str] = None,
        **kwargs
    ):
        self.waited = waited
        self.last_status = last_status
        kwargs.setdefault('suggestions', [
            'Increase settings.readiness.timeout and re-run apply',
            'Check the resource in the AWS console for stuck provisioning'
        ])
        super().__init__(message, category=ErrorCategory.TIMEOUT, **kwargs)


class ApplyCancelledError(DeploymentError):
    """The apply pass was cancelled (for example by the overall timeout)."""

    def __init__(self, message: str = "Apply cancelled", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PartialApplyError(DeploymentError):
    """Some resources were materialized and others were not."""

    def __init__(
        self,
        succeeded: Sequence[str],
        failed: Dict[str, DeploymentError],
        skipped: Sequence[str] = (),
        **kwargs
    ):
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        self.skipped = list(skipped)
        message = (
            f"Apply incomplete: {len(self.succeeded)} succeeded, "
            f"{len(self.failed)} failed ({', '.join(sorted(self.failed))}), "
            f"{len(self.skipped)} skipped"
        )
        kwargs.setdefault('suggestions', [
            'Fix the reported failures and re-run apply; succeeded resources are kept in state'
        ])
        super().__init__(
            message,
            category=ErrorCategory.PARTIAL_APPLY,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class OutputNotMaterializedError(DeploymentError):
    """An output was requested before its source resource exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.OUTPUT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


# AWS error codes that indicate a transient, retryable condition
TRANSIENT_ERROR_CODES = frozenset({
    'RequestTimeout',
    'RequestTimeoutException',
    'ServiceUnavailable',
    'ServiceUnavailableException',
    'ThrottlingException',
    'Throttling',
    'TooManyRequestsException',
    'RequestLimitExceeded',
    'RequestThrottled',
    'InternalError',
    'InternalFailure',
    'InternalServerError',
    'InternalServerErrorException',
    'ServiceException',
    'IncorrectInstanceState',
    'InvalidInstanceID.NotFound',
    'InvalidGroup.NotFound',
    'InvalidVolume.NotFound',
    'ConcurrentModification',
    'DependencyViolation',
    'ConcurrentModificationException',
})


class ErrorHandler:
    """Handles and categorizes errors from AWS and other sources."""

    # Suggestions for common AWS error codes
    AWS_ERROR_SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have the required permissions for this operation',
        ],
        'UnauthorizedOperation': [
            'Add the required IAM permission for this operation',
            'Verify you are operating in the correct AWS region',
        ],
        'InvalidClientTokenId': [
            'Verify credentials using: aws sts get-caller-identity',
            'Update credentials if they have expired',
        ],
        'ExpiredToken': [
            'Refresh your AWS session credentials',
        ],
        'InvalidGatewayRequestException': [
            'Check that the gateway appliance is running and reachable from this host',
            'Verify the activation key has not already been used',
        ],
        'InvalidSubnetID.NotFound': [
            'Check variables.subnet_id exists in the configured region',
        ],
        'InvalidVpcID.NotFound': [
            'Check variables.vpc_id exists in the configured region',
        ],
        'NoSuchBucket': [
            'Create the bucket or fix variables.bucket_name',
        ],
    }

    def __init__(self):
        self.logger = get_logger(__name__)

    @staticmethod
    def error_code(error: ClientError) -> str:
        """Return the AWS error code of a ClientError."""
        return error.response.get('Error', {}).get('Code', 'Unknown')

    def is_transient(self, error: Exception) -> bool:
        """Check whether an exception represents a retryable condition."""
        if isinstance(error, ProviderTransientError):
            return True
        if isinstance(error, DeploymentError):
            return False
        if isinstance(error, ClientError):
            if self.error_code(error) in TRANSIENT_ERROR_CODES:
                return True
            status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
            return status >= 500
        return isinstance(error, (ConnectionError, TimeoutError, EndpointConnectionError))

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception and convert to DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message=f'AWS credentials unavailable: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile flag'
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError, EndpointConnectionError)):
            return ProviderTransientError(
                message=f'Network error: {error}',
                context=context,
                cause=error,
                suggestions=['Check your network connectivity to the AWS endpoints']
            )

        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> DeploymentError:
        """Map a ClientError to a rejection or a transient error."""
        error_code = self.error_code(error)
        error_message = error.response.get('Error', {}).get('Message', str(error))

        context.error_code = error_code
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or getattr(error, 'operation_name', None)

        if self.is_transient(error):
            return ProviderTransientError(
                message=f"AWS transient error ({error_code}): {error_message}",
                context=context,
                cause=error,
            )

        return ProviderRejectionError(
            message=f"AWS rejected request ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=self.AWS_ERROR_SUGGESTIONS.get(error_code, [
                'Check AWS documentation for this error code',
                f'AWS Request ID: {context.request_id}',
            ])
        )

    def log_error(self, error: DeploymentError) -> None:
        """Log an error with appropriate level."""
        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(error.to_user_message())
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(error.to_user_message())
        else:
            self.logger.info(error.to_user_message())

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
