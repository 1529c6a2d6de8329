"""References between resource descriptors and their resolution against state."""

from dataclasses import dataclass
from typing import Any, List, Sequence, Set, Union

from s3nfs_deploy.state.models import State
from s3nfs_deploy.utils.errors import UnresolvedReferenceError


@dataclass(frozen=True)
class Ref:
    """Reference to a computed attribute of another resource.

    ``attribute`` of ``"id"`` refers to the provider-assigned physical ID.
    """

    resource_id: str
    attribute: str = "id"

    def serialize(self) -> dict:
        return {"Ref": {"resource": self.resource_id, "attribute": self.attribute}}


@dataclass(frozen=True)
class Join:
    """String concatenation of literals and references."""

    parts: Sequence[Union[str, Ref]]

    def serialize(self) -> dict:
        return {"Join": [serialize(part) for part in self.parts]}


def serialize(value: Any) -> Any:
    """Convert an attribute value into its JSON-compatible, diffable form."""
    if isinstance(value, (Ref, Join)):
        return value.serialize()
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


def references_in(value: Any) -> List[Ref]:
    """Collect every reference nested in an attribute value."""
    if isinstance(value, Ref):
        return [value]
    if isinstance(value, Join):
        return [part for part in value.parts if isinstance(part, Ref)]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in references_in(item)]
    if isinstance(value, (list, tuple)):
        return [ref for item in value for ref in references_in(item)]
    return []


def referenced_ids(value: Any) -> Set[str]:
    return {ref.resource_id for ref in references_in(value)}


def resolve(value: Any, state: State) -> Any:
    """Substitute references with the outputs of materialized resources.

    Raises:
        UnresolvedReferenceError: A referenced resource is missing from the
            state, has no physical ID yet, or lacks the attribute
    """
    if isinstance(value, Ref):
        resource = state.get_resource(value.resource_id)
        if resource is None or resource.physical_id is None:
            raise UnresolvedReferenceError(
                f"Resource '{value.resource_id}' is not materialized",
                resource_id=value.resource_id
            )
        resolved = resource.get_attribute(value.attribute)
        if resolved is None:
            raise UnresolvedReferenceError(
                f"Resource '{value.resource_id}' has no attribute '{value.attribute}'",
                resource_id=value.resource_id
            )
        return resolved
    if isinstance(value, Join):
        return "".join(str(resolve(part, state)) for part in value.parts)
    if isinstance(value, dict):
        return {key: resolve(item, state) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(item, state) for item in value]
    return value
