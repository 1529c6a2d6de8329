"""Retry strategy with exponential backoff for provider operations."""

import time
import random
from typing import Callable, TypeVar, Optional
from botocore.exceptions import ClientError

from s3nfs_deploy.utils.errors import (
    DeploymentError,
    ErrorContext,
    ProviderTransientError,
    error_handler,
)
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors.

    Transient failures (throttling, 5xx, network) are retried up to
    ``max_retries`` times and then surfaced as ``ProviderTransientError``.
    Any other ``ClientError`` is surfaced immediately as
    ``ProviderRejectionError``.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False
        return error_handler.is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        context: Optional[ErrorContext] = None,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            context: Error context attached to surfaced errors
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            ProviderTransientError: Transient failures outlasted the retry budget
            ProviderRejectionError: The provider rejected the request
        """
        attempt = 0

        while True:
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if self.should_retry(e, attempt):
                    delay = self.get_delay(attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{self.max_retries + 1} failed: "
                        f"{self._get_error_info(e)}. Retrying in {delay:.2f}s..."
                    )
                    self.sleep(delay)
                    attempt += 1
                    continue

                if error_handler.is_transient(e):
                    logger.error(f"All {self.max_retries} retry attempts exhausted")
                    raise ProviderTransientError(
                        f"Transient provider error persisted after {attempt + 1} attempts: "
                        f"{self._get_error_info(e)}",
                        attempts=attempt + 1,
                        context=context,
                        cause=e,
                    ) from e

                if isinstance(e, ClientError):
                    raise error_handler.handle_exception(e, context) from e

                raise

    def _get_error_info(self, error: Exception) -> str:
        """Extract useful error information for logging."""
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"
        if isinstance(error, DeploymentError):
            return error.message

        return f"{type(error).__name__}: {error}"
