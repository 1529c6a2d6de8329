"""Resource descriptors: the desired state of one infrastructure object.

Each descriptor type declares the logical IDs it references through
``declare_dependencies()``; the resource graph is built from those
declarations.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Set

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.access import AccessPolicy
from s3nfs_deploy.topology.references import Ref, referenced_ids, serialize


SECURITY_GROUP = "security-group"
NETWORK_ENDPOINT = "network-endpoint"
COMPUTE_INSTANCE = "compute-instance"
BLOCK_VOLUME = "block-volume"
GATEWAY = "gateway"
IAM_ROLE = "iam-role"
FILE_SHARE = "file-share"
NOTIFICATION_TOPIC = "notification-topic"
EVENT_RULE = "event-rule"
TOPIC_POLICY = "topic-policy"

UPLOAD_EVENT_DETAIL_TYPE = "Storage Gateway Object Upload Event"


class ResourceDescriptor(ABC):
    """Desired state of a single resource, keyed by a stable logical ID."""

    resource_type: str = ""

    def __init__(self, logical_id: str, attributes: Dict[str, Any],
                 tags: Optional[Dict[str, str]] = None):
        self.logical_id = logical_id
        self.attributes = attributes
        self.tags = dict(tags or {})

    @abstractmethod
    def declare_dependencies(self) -> Set[str]:
        """Logical IDs of the resources this descriptor references."""

    def serialized_attributes(self) -> Dict[str, Any]:
        return serialize(self.attributes)

    def attributes_referencing(self, logical_id: str) -> Set[str]:
        """Names of the attributes whose value references ``logical_id``."""
        return {
            name for name, value in self.attributes.items()
            if logical_id in referenced_ids(value)
        }

    def to_resource(self) -> Resource:
        """Desired-state record, before any provider call."""
        return Resource(
            id=self.logical_id,
            type=self.resource_type,
            properties=self.serialized_attributes(),
            dependencies=sorted(self.declare_dependencies()),
            tags=self.tags,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.logical_id!r})"


class CustomDescriptor(ResourceDescriptor):
    """Descriptor with explicit dependencies, for ad-hoc graphs."""

    def __init__(self, logical_id: str, resource_type: str,
                 attributes: Optional[Dict[str, Any]] = None,
                 depends_on: Iterable[str] = (),
                 tags: Optional[Dict[str, str]] = None):
        super().__init__(logical_id, dict(attributes or {}), tags)
        self.resource_type = resource_type
        self.depends_on = set(depends_on)

    def declare_dependencies(self) -> Set[str]:
        return set(self.depends_on)


class SecurityGroupDescriptor(ResourceDescriptor):
    resource_type = SECURITY_GROUP

    def __init__(self, logical_id: str, group_name: str, description: str,
                 vpc_id: str, policy: AccessPolicy, tags=None):
        self.policy = policy
        super().__init__(logical_id, {
            "GroupName": group_name,
            "Description": description,
            "VpcId": vpc_id,
            "IngressRules": policy.to_permissions(),
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return set()


class NetworkEndpointDescriptor(ResourceDescriptor):
    resource_type = NETWORK_ENDPOINT

    def __init__(self, logical_id: str, vpc_id: str, subnet_id: str,
                 service_name: str, security_group: Ref, tags=None):
        self.security_group = security_group
        super().__init__(logical_id, {
            "VpcId": vpc_id,
            "SubnetIds": [subnet_id],
            "ServiceName": service_name,
            "SecurityGroupIds": [security_group],
            "PrivateDnsEnabled": False,
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.security_group.resource_id}


class ComputeInstanceDescriptor(ResourceDescriptor):
    """The gateway appliance. ``ImageId`` of None selects the latest File Gateway AMI."""

    resource_type = COMPUTE_INSTANCE

    def __init__(self, logical_id: str, instance_type: str, ami_id: Optional[str],
                 subnet_id: str, security_group: Ref, root_volume_size_gb: int, tags=None):
        self.security_group = security_group
        super().__init__(logical_id, {
            "ImageId": ami_id,
            "InstanceType": instance_type,
            "SubnetId": subnet_id,
            "SecurityGroupIds": [security_group],
            "RootVolumeSizeGb": root_volume_size_gb,
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.security_group.resource_id}


class BlockVolumeDescriptor(ResourceDescriptor):
    resource_type = BLOCK_VOLUME

    def __init__(self, logical_id: str, instance: Ref, size_gb: int,
                 device_name: str = "/dev/sdf", volume_type: str = "gp3", tags=None):
        self.instance = instance
        super().__init__(logical_id, {
            "InstanceId": instance,
            "AvailabilityZone": Ref(instance.resource_id, "AvailabilityZone"),
            "Size": size_gb,
            "VolumeType": volume_type,
            "DeviceName": device_name,
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.instance.resource_id}


class GatewayDescriptor(ResourceDescriptor):
    resource_type = GATEWAY

    def __init__(self, logical_id: str, gateway_name: str, timezone: str, region: str,
                 instance: Ref, endpoint: Ref, cache_volume: Ref, tags=None):
        self.instance = instance
        self.endpoint = endpoint
        self.cache_volume = cache_volume
        super().__init__(logical_id, {
            "GatewayName": gateway_name,
            "GatewayTimezone": timezone,
            "GatewayRegion": region,
            "GatewayType": "FILE_S3",
            "InstanceId": instance,
            "ActivationIp": Ref(instance.resource_id, "PrivateIpAddress"),
            "VpcEndpoint": Ref(endpoint.resource_id, "DnsName"),
            "CacheVolumeId": cache_volume,
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {
            self.instance.resource_id,
            self.endpoint.resource_id,
            self.cache_volume.resource_id,
        }


class IamRoleDescriptor(ResourceDescriptor):
    """Role assumed by the file share. Role names are unique per account."""

    resource_type = IAM_ROLE

    def __init__(self, logical_id: str, role_name: str, bucket_name: str, tags=None):
        bucket_arn = f"arn:aws:s3:::{bucket_name}"
        super().__init__(logical_id, {
            "RoleName": role_name,
            "AssumeRolePolicyDocument": {
                "Version": "2012-10-17",
                "Statement": [{
                    "Effect": "Allow",
                    "Principal": {"Service": "storagegateway.amazonaws.com"},
                    "Action": "sts:AssumeRole",
                }],
            },
            "Policies": {
                "bucket-access": {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Action": [
                                "s3:GetAccelerateConfiguration",
                                "s3:GetBucketLocation",
                                "s3:GetBucketVersioning",
                                "s3:ListBucket",
                                "s3:ListBucketVersions",
                                "s3:ListBucketMultipartUploads",
                            ],
                            "Resource": bucket_arn,
                        },
                        {
                            "Effect": "Allow",
                            "Action": [
                                "s3:AbortMultipartUpload",
                                "s3:DeleteObject",
                                "s3:DeleteObjectVersion",
                                "s3:GetObject",
                                "s3:GetObjectAcl",
                                "s3:GetObjectVersion",
                                "s3:ListMultipartUploadParts",
                                "s3:PutObject",
                                "s3:PutObjectAcl",
                            ],
                            "Resource": f"{bucket_arn}/*",
                        },
                    ],
                },
            },
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return set()


class FileShareDescriptor(ResourceDescriptor):
    resource_type = FILE_SHARE

    def __init__(self, logical_id: str, gateway: Ref, role: Ref, bucket_name: str,
                 client_cidr: str, default_storage_class: str, squash: str,
                 settling_seconds: int, file_share_name: Optional[str] = None, tags=None):
        self.gateway = gateway
        self.role = role
        super().__init__(logical_id, {
            "GatewayARN": gateway,
            "Role": Ref(role.resource_id, "Arn"),
            "LocationARN": f"arn:aws:s3:::{bucket_name}",
            "ClientList": [client_cidr],
            "DefaultStorageClass": default_storage_class,
            "Squash": squash,
            "ObjectACL": "private",
            "FileShareName": file_share_name or bucket_name,
            "NotificationPolicy": json.dumps(
                {"Upload": {"SettlingTimeInSeconds": settling_seconds}}
            ),
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.gateway.resource_id, self.role.resource_id}


class NotificationTopicDescriptor(ResourceDescriptor):
    resource_type = NOTIFICATION_TOPIC

    def __init__(self, logical_id: str, topic_name: str, tags=None):
        super().__init__(logical_id, {"Name": topic_name}, tags)

    def declare_dependencies(self) -> Set[str]:
        return set()


class EventRuleDescriptor(ResourceDescriptor):
    """Routes Storage Gateway upload events for one bucket to the topic."""

    resource_type = EVENT_RULE

    def __init__(self, logical_id: str, rule_name: str, topic: Ref,
                 bucket_name: str, tags=None):
        self.topic = topic
        super().__init__(logical_id, {
            "Name": rule_name,
            "Description": f"Object uploads to {bucket_name} through the file gateway",
            "EventPattern": {
                "source": ["aws.storagegateway"],
                "detail-type": [UPLOAD_EVENT_DETAIL_TYPE],
                "detail": {"bucket-name": [bucket_name]},
            },
            "TargetArn": topic,
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.topic.resource_id}


class TopicPolicyDescriptor(ResourceDescriptor):
    """Allows the event rule, and only that rule, to publish to the topic."""

    resource_type = TOPIC_POLICY

    def __init__(self, logical_id: str, topic: Ref, rule: Ref, tags=None):
        self.topic = topic
        self.rule = rule
        super().__init__(logical_id, {
            "TopicArn": topic,
            "Policy": {
                "Version": "2012-10-17",
                "Statement": [{
                    "Sid": "AllowEventBridgePublish",
                    "Effect": "Allow",
                    "Principal": {"Service": "events.amazonaws.com"},
                    "Action": "sns:Publish",
                    "Resource": topic,
                    "Condition": {"ArnEquals": {"aws:SourceArn": Ref(rule.resource_id, "Arn")}},
                }],
            },
        }, tags)

    def declare_dependencies(self) -> Set[str]:
        return {self.topic.resource_id, self.rule.resource_id}

