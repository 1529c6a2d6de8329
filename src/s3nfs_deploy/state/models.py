"""State file data models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Resource(BaseModel):
    """Represents a materialized (or partially materialized) resource."""

    id: str = Field(..., description="Logical resource ID")
    type: str = Field(..., description="Resource type tag (e.g., security-group)")
    physical_id: Optional[str] = Field(None, description="Provider-assigned ID/ARN")
    properties: Dict[str, Any] = Field(
        default_factory=dict,
        description="Declared attributes in serialized form, used for diffing"
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict,
        description="Attributes computed by the provider (IPs, ARNs, paths)"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="Logical IDs this resource depends on"
    )
    tags: Dict[str, str] = Field(default_factory=dict, description="Resource tags")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Additional metadata (creation time, taint)"
    )

    @property
    def tainted(self) -> bool:
        """Created but never confirmed ready; must be replaced."""
        return bool(self.metadata.get("tainted", False))

    def mark_tainted(self, reason: str) -> None:
        self.metadata["tainted"] = True
        self.metadata["taint_reason"] = reason

    def get_attribute(self, name: str) -> Any:
        """Look up an attribute, preferring computed outputs.

        ``id`` resolves to the physical ID.
        """
        if name == "id":
            return self.physical_id
        if name in self.outputs:
            return self.outputs[name]
        return self.properties.get(name)


class State(BaseModel):
    """Recorded deployment state for one project environment."""

    version: str = Field("1.0", description="State file format version")
    project_name: str = Field(..., description="Project name")
    environment: str = Field(..., description="Environment name (dev, staging, prod)")
    region: str = Field(..., description="AWS region")
    account: Optional[str] = Field(None, description="AWS account ID")
    serial: int = Field(0, description="Incremented on every save")
    timestamp: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
    resources: Dict[str, Resource] = Field(
        default_factory=dict, description="Current resources keyed by logical ID"
    )
    deposed: Dict[str, Resource] = Field(
        default_factory=dict,
        description="Replaced copies awaiting deletion, keyed by logical ID"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Global metadata")

    def add_resource(self, resource: Resource) -> None:
        self.resources[resource.id] = resource
        self.timestamp = _utcnow()

    def remove_resource(self, resource_id: str) -> Optional[Resource]:
        resource = self.resources.pop(resource_id, None)
        self.timestamp = _utcnow()
        return resource

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        return self.resources.get(resource_id)

    def has_resource(self, resource_id: str) -> bool:
        return resource_id in self.resources

    def list_resources(self) -> List[Resource]:
        return list(self.resources.values())

    def depose(self, resource_id: str) -> Optional[Resource]:
        """Move the current copy of a resource to the deposed set."""
        resource = self.resources.pop(resource_id, None)
        if resource is not None:
            self.deposed[resource_id] = resource
            self.timestamp = _utcnow()
        return resource

    def get_dependents(self, resource_id: str) -> List[str]:
        """Get resources that depend on the given resource."""
        return [
            resource.id for resource in self.resources.values()
            if resource_id in resource.dependencies
        ]

    def copy_state(self) -> "State":
        """Deep copy used as the working snapshot during an apply."""
        return self.model_copy(deep=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        """Create State from dictionary."""
        return cls.model_validate(data)
