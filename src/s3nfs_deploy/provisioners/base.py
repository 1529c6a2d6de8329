"""Base provisioner interface and abstract classes."""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from botocore.exceptions import ClientError

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.utils.errors import (
    DeploymentError,
    ErrorContext,
    ProviderRejectionError,
    error_handler,
)
from s3nfs_deploy.utils.logging import get_logger
from s3nfs_deploy.utils.retry import RetryStrategy
from s3nfs_deploy.utils.waiter import Poller, PollResult


class ChangeType(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass
class ProvisionPlan:
    """Plan for provisioning a resource."""
    resource: Resource
    change_type: ChangeType
    current_state: Optional[Resource]
    changed_attributes: List[str] = field(default_factory=list)


class BaseProvisioner(ABC):
    """Base class for all resource provisioners.

    Class attributes:
        resource_type: Type tag handled by this provisioner
        mutable_attributes: Attributes that can be changed in place
        allows_overlap: Whether an old and a new copy may exist at the same
            time during replacement
    """

    resource_type: str = ""
    mutable_attributes: FrozenSet[str] = frozenset()
    allows_overlap: bool = True

    def __init__(
        self,
        clients=None,
        retry_strategy: Optional[RetryStrategy] = None,
        poller: Optional[Poller] = None
    ):
        """Initialize provisioner.

        Args:
            clients: AWSClientManager (or any object with ``get_client``)
            retry_strategy: Retry policy applied to every provider call
            poller: Readiness poller
        """
        self.clients = clients
        self.retry = retry_strategy or RetryStrategy()
        self.poller = poller or Poller()
        self.logger = get_logger(type(self).__module__)

    def client(self, service_name: str):
        return self.clients.get_client(service_name)

    def plan(self, desired: Resource, current: Optional[Resource]) -> ProvisionPlan:
        """Determine what changes are needed for the resource.

        Args:
            desired: The desired state of the resource
            current: The recorded state of the resource (None if it doesn't exist)

        Returns:
            ProvisionPlan describing the changes needed
        """
        if current is None:
            return ProvisionPlan(desired, ChangeType.CREATE, None)

        if current.type != desired.type:
            return ProvisionPlan(desired, ChangeType.REPLACE, current, ["type"])

        changed = self.diff(desired.properties, current.properties)

        if current.tainted or current.physical_id is None:
            return ProvisionPlan(desired, ChangeType.REPLACE, current, changed)

        if not changed:
            return ProvisionPlan(desired, ChangeType.NO_CHANGE, current)

        if self.is_mutable(changed):
            return ProvisionPlan(desired, ChangeType.UPDATE, current, changed)

        return ProvisionPlan(desired, ChangeType.REPLACE, current, changed)

    @staticmethod
    def diff(desired: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
        """Names of attributes whose serialized values differ."""
        return sorted(
            name for name in set(desired) | set(current)
            if desired.get(name) != current.get(name)
        )

    def is_mutable(self, attributes: Iterable[str]) -> bool:
        return all(name in self.mutable_attributes for name in attributes)

    @abstractmethod
    def create(
        self,
        resource: Resource,
        attributes: Dict[str, Any],
        cancel_event: threading.Event
    ) -> Resource:
        """Issue the create call(s) for a resource.

        Args:
            resource: Desired-state record (serialized properties)
            attributes: Declared attributes with references resolved
            cancel_event: Set when the apply is cancelled

        Returns:
            The resource with its physical ID and any known outputs set
        """

    def wait_until_ready(self, resource: Resource, cancel_event: threading.Event) -> Resource:
        """Block until the created resource is usable by its dependents."""
        return resource

    def update(
        self,
        current: Resource,
        desired: Resource,
        attributes: Dict[str, Any],
        changed: List[str]
    ) -> Resource:
        """Update mutable attributes of an existing resource in place."""
        raise ProviderRejectionError(
            f"{self.resource_type} does not support in-place updates of {', '.join(changed)}",
            context=self._context(current, "update")
        )

    @abstractmethod
    def destroy(self, resource: Resource) -> None:
        """Destroy the resource. Destroying a resource that is already gone succeeds."""

    def read(self, resource: Resource) -> Optional[Resource]:
        """Read the live state of a recorded resource.

        Returns:
            The refreshed resource, or None if it no longer exists
        """
        return resource

    def _context(self, resource: Resource, operation: str) -> ErrorContext:
        return ErrorContext(
            resource_id=resource.id,
            resource_type=resource.type,
            operation=operation,
        )

    def _call(
        self,
        fn: Callable[..., Any],
        ignore_codes: Iterable[str] = (),
        context: Optional[ErrorContext] = None,
        **kwargs
    ) -> Any:
        """Invoke a provider API with retries.

        Error codes listed in ``ignore_codes`` (typically not-found codes
        during delete) return None instead of raising, and are never retried.
        """
        ignored = frozenset(ignore_codes)

        def invoke():
            try:
                return fn(**kwargs)
            except ClientError as e:
                if error_handler.error_code(e) in ignored:
                    return None
                raise

        return self.retry.execute_with_retry(invoke, context=context)

    def _configure(self, resource: Resource, configure: Callable[[], None]) -> None:
        """Run follow-up calls after the primary create call succeeded.

        On failure the error carries the created resource so it is recorded
        instead of orphaned.
        """
        try:
            configure()
        except DeploymentError as e:
            e.partial_resource = resource
            raise

    def _poll(
        self,
        resource: Resource,
        probe: Callable[[], PollResult],
        description: str,
        cancel_event: threading.Event
    ) -> PollResult:
        return self.poller.wait(
            probe,
            description,
            cancel_event=cancel_event,
            context=self._context(resource, "wait"),
        )

    @staticmethod
    def client_token(resource: Resource) -> str:
        """Idempotency token for a create call.

        Derived from the resource tags, its logical id and the state serial
        the create was dispatched at, so a retried or re-run create of the
        same copy reuses the token while a later replacement gets a new one.
        """
        tags = ",".join(f"{key}={value}" for key, value in sorted(resource.tags.items()))
        serial = resource.metadata.get("state_serial", 0)
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"s3nfs:{tags}/{resource.id}/{serial}"))

    @staticmethod
    def tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
        return [{'Key': key, 'Value': value} for key, value in sorted(tags.items())]
