"""Network access rules for the gateway and endpoint security groups."""

import ipaddress
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

# NFS, portmapper and mountd over both transports, plus HTTP for activation
GATEWAY_PORTS = (
    ("tcp", 2049, 2049, "NFS"),
    ("udp", 2049, 2049, "NFS"),
    ("tcp", 111, 111, "Portmapper"),
    ("udp", 111, 111, "Portmapper"),
    ("tcp", 20048, 20048, "mountd"),
    ("udp", 20048, 20048, "mountd"),
    ("tcp", 80, 80, "Gateway activation"),
)

# Storage Gateway interface endpoint control and data channels
ENDPOINT_PORTS = (
    ("tcp", 443, 443, "HTTPS"),
    ("tcp", 1026, 1028, "Gateway control"),
    ("tcp", 1031, 1031, "Gateway software updates"),
    ("tcp", 2222, 2222, "Support channel"),
)


@dataclass(frozen=True)
class IngressRule:
    """A single ingress permission."""

    protocol: str
    from_port: int
    to_port: int
    cidr: str
    description: str = ""

    def matches(self, source_ip: str, port: Optional[int] = None,
                protocol: Optional[str] = None) -> bool:
        if protocol is not None and self.protocol not in ("-1", protocol.lower()):
            return False
        if port is not None and not (self.from_port <= port <= self.to_port):
            return False
        return ipaddress.ip_address(source_ip) in ipaddress.ip_network(self.cidr, strict=False)

    def to_permission(self) -> Dict:
        """Render as an EC2 ``IpPermissions`` entry."""
        return {
            "IpProtocol": self.protocol,
            "FromPort": self.from_port,
            "ToPort": self.to_port,
            "IpRanges": [{"CidrIp": self.cidr, "Description": self.description}],
        }


class AccessPolicy:
    """A set of ingress rules evaluated with deny-by-default semantics."""

    def __init__(self, rules: Sequence[IngressRule]):
        self.rules: List[IngressRule] = list(rules)

    def permits(self, source_ip: str, port: Optional[int] = None,
                protocol: Optional[str] = None) -> bool:
        """Whether a request from ``source_ip`` would be admitted.

        Args:
            source_ip: Source address of the simulated request
            port: Destination port, or None to match any port
            protocol: 'tcp' or 'udp', or None to match any protocol
        """
        return any(rule.matches(source_ip, port, protocol) for rule in self.rules)

    def to_permissions(self) -> List[Dict]:
        return [rule.to_permission() for rule in self.rules]

    @classmethod
    def from_ports(cls, ports, cidr: str) -> "AccessPolicy":
        return cls([
            IngressRule(protocol, from_port, to_port, cidr, description)
            for protocol, from_port, to_port, description in ports
        ])


def gateway_access_policy(subnet_cidr: str) -> AccessPolicy:
    """Ingress for the appliance: NFS clients and activation from the subnet only."""
    return AccessPolicy.from_ports(GATEWAY_PORTS, subnet_cidr)


def endpoint_access_policy(subnet_cidr: str) -> AccessPolicy:
    """Ingress for the interface endpoint from the subnet only."""
    return AccessPolicy.from_ports(ENDPOINT_PORTS, subnet_cidr)
