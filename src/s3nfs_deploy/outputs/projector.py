"""Read-only projection of published outputs from a state snapshot."""

from typing import Callable, Dict, List, Mapping

from s3nfs_deploy.state.models import State
from s3nfs_deploy.topology.builder import GATEWAY_APPLIANCE, NFS_FILE_SHARE
from s3nfs_deploy.utils.errors import ErrorContext, OutputNotMaterializedError

MOUNT_OPTIONS = "nolock,hard"
MOUNT_POINT_PLACEHOLDER = "[MountPath]"


class OutputProjector(Mapping):
    """Maps output names to values computed from materialized resources.

    Values are computed on access, so a projector over a state snapshot never
    goes stale relative to that snapshot and never talks to the provider.
    """

    def __init__(self, state: State):
        self.state = state
        self._outputs: Dict[str, Callable[[], str]] = {
            "gateway_ip": self.gateway_ip,
            "mount_command": self.mount_command,
        }
        self._descriptions = {
            "gateway_ip": "Private IP address of the gateway appliance",
            "mount_command": "Command that mounts the NFS file share on a client",
        }

    def __getitem__(self, name: str) -> str:
        if name not in self._outputs:
            raise KeyError(name)
        return self._outputs[name]()

    def __iter__(self):
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def names(self) -> List[str]:
        return list(self._outputs)

    def describe(self, name: str) -> str:
        return self._descriptions[name]

    def _attribute(self, output: str, resource_id: str, attribute: str) -> str:
        resource = self.state.get_resource(resource_id)
        context = ErrorContext(resource_id=resource_id, operation=f"output {output}")

        if resource is None or resource.physical_id is None:
            raise OutputNotMaterializedError(
                f"Output '{output}' is unavailable: '{resource_id}' has not been created",
                context=context,
            )
        if resource.tainted:
            raise OutputNotMaterializedError(
                f"Output '{output}' is unavailable: '{resource_id}' is tainted",
                context=context,
            )
        value = resource.outputs.get(attribute)
        if not value:
            raise OutputNotMaterializedError(
                f"Output '{output}' is unavailable: '{resource_id}' has no {attribute}",
                context=context,
            )
        return value

    def gateway_ip(self) -> str:
        return self._attribute("gateway_ip", GATEWAY_APPLIANCE, "PrivateIpAddress")

    def mount_command(self) -> str:
        ip = self.gateway_ip()
        path = self._attribute("mount_command", NFS_FILE_SHARE, "Path")
        return f"sudo mount -t nfs -o {MOUNT_OPTIONS} {ip}:{path} {MOUNT_POINT_PLACEHOLDER}"

    def available(self) -> Dict[str, str]:
        """Outputs that can currently be computed."""
        values = {}
        for name in self._outputs:
            try:
                values[name] = self[name]
            except OutputNotMaterializedError:
                continue
        return values
