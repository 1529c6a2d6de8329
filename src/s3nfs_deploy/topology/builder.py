"""Builds the fixed S3-over-NFS gateway topology from configuration variables."""

from typing import Dict

from s3nfs_deploy.config.models import GatewayVariables
from s3nfs_deploy.topology.access import endpoint_access_policy, gateway_access_policy
from s3nfs_deploy.topology.descriptors import (
    BlockVolumeDescriptor,
    ComputeInstanceDescriptor,
    EventRuleDescriptor,
    FileShareDescriptor,
    GatewayDescriptor,
    IamRoleDescriptor,
    NetworkEndpointDescriptor,
    NotificationTopicDescriptor,
    SecurityGroupDescriptor,
    TopicPolicyDescriptor,
)
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.topology.references import Ref
from s3nfs_deploy.utils.logging import get_logger

logger = get_logger(__name__)

GATEWAY_SG = "gateway-sg"
ENDPOINT_SG = "endpoint-sg"
GATEWAY_ENDPOINT = "gateway-endpoint"
GATEWAY_APPLIANCE = "gateway-appliance"
CACHE_VOLUME = "cache-volume"
STORAGE_GATEWAY = "storage-gateway"
FILE_SHARE_ROLE = "file-share-role"
NFS_FILE_SHARE = "nfs-file-share"
UPLOAD_TOPIC = "upload-topic"
UPLOAD_EVENT_RULE = "upload-event-rule"
UPLOAD_TOPIC_POLICY = "upload-topic-policy"

TAG_PREFIX = "s3nfs:"


class TopologyBuilder:
    """Turns validated variables into the desired resource graph."""

    def __init__(
        self,
        variables: GatewayVariables,
        region: str,
        project_name: str = "s3nfs",
        environment: str = "default"
    ):
        self.variables = variables
        self.region = region
        self.project_name = project_name
        self.environment = environment

    def _name(self, suffix: str) -> str:
        return f"{self.variables.name_prefix}-{suffix}"

    def _tags(self, logical_id: str, name: str) -> Dict[str, str]:
        tags = dict(self.variables.tags)
        tags.update({
            "Name": name,
            f"{TAG_PREFIX}project": self.project_name,
            f"{TAG_PREFIX}environment": self.environment,
            f"{TAG_PREFIX}logical-id": logical_id,
        })
        return tags

    def build(self) -> ResourceGraph:
        """Build and validate the resource graph.

        Raises:
            DependencyError: If the graph violates a structural invariant
        """
        v = self.variables
        graph = ResourceGraph()

        gateway_sg_name = self._name("gateway-sg")
        graph.add(SecurityGroupDescriptor(
            GATEWAY_SG,
            group_name=gateway_sg_name,
            description="NFS and activation access to the file gateway appliance",
            vpc_id=v.vpc_id,
            policy=gateway_access_policy(v.subnet_cidr),
            tags=self._tags(GATEWAY_SG, gateway_sg_name),
        ))

        endpoint_sg_name = self._name("endpoint-sg")
        graph.add(SecurityGroupDescriptor(
            ENDPOINT_SG,
            group_name=endpoint_sg_name,
            description="Storage Gateway interface endpoint access",
            vpc_id=v.vpc_id,
            policy=endpoint_access_policy(v.subnet_cidr),
            tags=self._tags(ENDPOINT_SG, endpoint_sg_name),
        ))

        endpoint_name = self._name("gateway-endpoint")
        graph.add(NetworkEndpointDescriptor(
            GATEWAY_ENDPOINT,
            vpc_id=v.vpc_id,
            subnet_id=v.subnet_id,
            service_name=f"com.amazonaws.{self.region}.storagegateway",
            security_group=Ref(ENDPOINT_SG),
            tags=self._tags(GATEWAY_ENDPOINT, endpoint_name),
        ))

        appliance_name = self._name("appliance")
        graph.add(ComputeInstanceDescriptor(
            GATEWAY_APPLIANCE,
            instance_type=v.instance_type,
            ami_id=v.ami_id,
            subnet_id=v.subnet_id,
            security_group=Ref(GATEWAY_SG),
            root_volume_size_gb=v.root_volume_size_gb,
            tags=self._tags(GATEWAY_APPLIANCE, appliance_name),
        ))

        cache_name = self._name("cache")
        graph.add(BlockVolumeDescriptor(
            CACHE_VOLUME,
            instance=Ref(GATEWAY_APPLIANCE),
            size_gb=v.cache_volume_size_gb,
            tags=self._tags(CACHE_VOLUME, cache_name),
        ))

        gateway_name = v.gateway_name or self._name("gateway")
        graph.add(GatewayDescriptor(
            STORAGE_GATEWAY,
            gateway_name=gateway_name,
            timezone=v.gateway_timezone,
            region=self.region,
            instance=Ref(GATEWAY_APPLIANCE),
            endpoint=Ref(GATEWAY_ENDPOINT),
            cache_volume=Ref(CACHE_VOLUME),
            tags=self._tags(STORAGE_GATEWAY, gateway_name),
        ))

        role_name = self._name("file-share-role")
        graph.add(IamRoleDescriptor(
            FILE_SHARE_ROLE,
            role_name=role_name,
            bucket_name=v.bucket_name,
            tags=self._tags(FILE_SHARE_ROLE, role_name),
        ))

        share_name = v.file_share_name or v.bucket_name
        graph.add(FileShareDescriptor(
            NFS_FILE_SHARE,
            gateway=Ref(STORAGE_GATEWAY),
            role=Ref(FILE_SHARE_ROLE),
            bucket_name=v.bucket_name,
            client_cidr=v.subnet_cidr,
            default_storage_class=v.default_storage_class,
            squash=v.squash,
            settling_seconds=v.notification_settling_seconds,
            file_share_name=share_name,
            tags=self._tags(NFS_FILE_SHARE, share_name),
        ))

        topic_name = self._name("uploads")
        graph.add(NotificationTopicDescriptor(
            UPLOAD_TOPIC,
            topic_name=topic_name,
            tags=self._tags(UPLOAD_TOPIC, topic_name),
        ))

        rule_name = self._name("upload-events")
        graph.add(EventRuleDescriptor(
            UPLOAD_EVENT_RULE,
            rule_name=rule_name,
            topic=Ref(UPLOAD_TOPIC),
            bucket_name=v.bucket_name,
            tags=self._tags(UPLOAD_EVENT_RULE, rule_name),
        ))

        graph.add(TopicPolicyDescriptor(
            UPLOAD_TOPIC_POLICY,
            topic=Ref(UPLOAD_TOPIC),
            rule=Ref(UPLOAD_EVENT_RULE),
        ))

        graph.validate()
        logger.debug(f"Built topology with {len(graph)} resources")
        return graph
