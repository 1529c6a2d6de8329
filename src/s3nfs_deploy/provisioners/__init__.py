"""Provisioners module for AWS resource management."""

from typing import Dict

from .base import BaseProvisioner, ProvisionPlan, ChangeType
from .security_group import SecurityGroupProvisioner
from .vpc_endpoint import VpcEndpointProvisioner
from .instance import InstanceProvisioner
from .volume import VolumeProvisioner
from .storage_gateway import StorageGatewayProvisioner
from .iam import IAMRoleProvisioner
from .file_share import FileShareProvisioner
from .sns import SNSProvisioner, TopicPolicyProvisioner
from .event_rule import EventRuleProvisioner

PROVISIONER_CLASSES = (
    SecurityGroupProvisioner,
    VpcEndpointProvisioner,
    InstanceProvisioner,
    VolumeProvisioner,
    StorageGatewayProvisioner,
    IAMRoleProvisioner,
    FileShareProvisioner,
    SNSProvisioner,
    EventRuleProvisioner,
    TopicPolicyProvisioner,
)


def build_registry(clients, retry_strategy=None, poller=None) -> Dict[str, BaseProvisioner]:
    """Instantiate one provisioner per resource type, sharing clients and policies."""
    return {
        cls.resource_type: cls(clients, retry_strategy, poller)
        for cls in PROVISIONER_CLASSES
    }


__all__ = [
    'BaseProvisioner',
    'ProvisionPlan',
    'ChangeType',
    'PROVISIONER_CLASSES',
    'build_registry',
    'SecurityGroupProvisioner',
    'VpcEndpointProvisioner',
    'InstanceProvisioner',
    'VolumeProvisioner',
    'StorageGatewayProvisioner',
    'IAMRoleProvisioner',
    'FileShareProvisioner',
    'SNSProvisioner',
    'TopicPolicyProvisioner',
    'EventRuleProvisioner',
]
