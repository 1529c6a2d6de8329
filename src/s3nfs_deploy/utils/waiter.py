"""Cancellable readiness polling with bounded backoff."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from s3nfs_deploy.utils.errors import (
    ApplyCancelledError,
    ErrorContext,
    ProviderRejectionError,
    ReadinessTimeoutError,
)
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class PollState(Enum):
    """Outcome of a single readiness probe."""
    READY = "ready"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class PollResult:
    """Result of a readiness probe."""

    state: PollState
    status: Optional[str] = None  # provider status string, e.g. "pending"
    value: object = None  # payload returned to the caller when READY

    @classmethod
    def ready(cls, status: Optional[str] = None, value: object = None) -> "PollResult":
        return cls(PollState.READY, status, value)

    @classmethod
    def pending(cls, status: Optional[str] = None) -> "PollResult":
        return cls(PollState.PENDING, status)

    @classmethod
    def failed(cls, status: Optional[str] = None) -> "PollResult":
        return cls(PollState.FAILED, status)


@dataclass
class PollerSettings:
    """Timing parameters for readiness polling."""

    timeout: float = 900.0
    initial_delay: float = 5.0
    max_delay: float = 30.0
    backoff: float = 1.5


class Poller:
    """Polls a probe until it reports a terminal state.

    Waiting happens on the cancel event rather than ``time.sleep`` so that an
    apply timeout interrupts every in-flight poll promptly.
    """

    def __init__(
        self,
        settings: Optional[PollerSettings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings or PollerSettings()
        self.clock = clock

    def wait(
        self,
        probe: Callable[[], PollResult],
        description: str,
        cancel_event: Optional[threading.Event] = None,
        context: Optional[ErrorContext] = None,
        timeout: Optional[float] = None
    ) -> PollResult:
        """Call ``probe`` until it returns READY or FAILED.

        Args:
            probe: Readiness probe
            description: What is being waited for, used in messages
            cancel_event: Event that aborts the wait when set
            context: Error context attached to raised errors
            timeout: Override for the configured timeout

        Returns:
            The READY poll result

        Raises:
            ReadinessTimeoutError: The deadline passed before a terminal state
            ProviderRejectionError: The probe reported a terminal failure
            ApplyCancelledError: The cancel event was set
        """
        cancel_event = cancel_event or threading.Event()
        limit = self.settings.timeout if timeout is None else timeout
        started = self.clock()
        delay = self.settings.initial_delay
        last_status = None

        while True:
            if cancel_event.is_set():
                raise ApplyCancelledError(
                    f"Cancelled while waiting for {description}",
                    context=context
                )

            result = probe()
            last_status = result.status or last_status

            if result.state == PollState.READY:
                logger.debug(f"{description} is ready ({result.status})")
                return result

            if result.state == PollState.FAILED:
                raise ProviderRejectionError(
                    f"{description} reached terminal failure state '{result.status}'",
                    context=context
                )

            elapsed = self.clock() - started
            remaining = limit - elapsed
            if remaining <= 0:
                raise ReadinessTimeoutError(
                    f"Timed out after {elapsed:.0f}s waiting for {description} "
                    f"(last status: {last_status})",
                    waited=elapsed,
                    last_status=last_status,
                    context=context
                )

            logger.debug(
                f"Waiting for {description} (status: {result.status}), "
                f"next check in {min(delay, remaining):.1f}s"
            )
            cancel_event.wait(min(delay, remaining))
            delay = min(delay * self.settings.backoff, self.settings.max_delay)
