"""Interface VPC endpoint provisioner for the Storage Gateway service."""

from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import NETWORK_ENDPOINT
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner

FAILED_STATES = {'failed', 'rejected', 'deleted', 'deleting', 'expired'}


class VpcEndpointProvisioner(BaseProvisioner):
    """Provisioner for interface VPC endpoints."""

    resource_type = NETWORK_ENDPOINT
    mutable_attributes = frozenset({'SecurityGroupIds'})

    @property
    def ec2(self):
        return self.client('ec2')

    def create(self, resource, attributes, cancel_event) -> Resource:
        response = self._call(
            self.ec2.create_vpc_endpoint,
            context=self._context(resource, 'create'),
            VpcEndpointType='Interface',
            VpcId=attributes['VpcId'],
            ServiceName=attributes['ServiceName'],
            SubnetIds=attributes['SubnetIds'],
            SecurityGroupIds=attributes['SecurityGroupIds'],
            PrivateDnsEnabled=attributes.get('PrivateDnsEnabled', False),
            ClientToken=self.client_token(resource),
            TagSpecifications=[{
                'ResourceType': 'vpc-endpoint',
                'Tags': self.tag_list(resource.tags),
            }],
        )
        endpoint = response['VpcEndpoint']
        resource.physical_id = endpoint['VpcEndpointId']
        resource.outputs = self._outputs(endpoint)
        return resource

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """Wait for the endpoint to become available and record its DNS name."""
        def probe() -> PollResult:
            endpoint = self._describe(resource)
            if endpoint is None:
                return PollResult.pending('not-visible')
            state = endpoint.get('State', '').lower()
            if state == 'available':
                return PollResult.ready(state, endpoint)
            if state in FAILED_STATES:
                return PollResult.failed(state)
            return PollResult.pending(state)

        result = self._poll(resource, probe, f"VPC endpoint {resource.physical_id}", cancel_event)
        resource.outputs = self._outputs(result.value)
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        endpoint = self._describe(current) or {}
        live = {group['GroupId'] for group in endpoint.get('Groups', [])}
        wanted = set(attributes['SecurityGroupIds'])

        kwargs = {}
        if wanted - live:
            kwargs['AddSecurityGroupIds'] = sorted(wanted - live)
        if live - wanted:
            kwargs['RemoveSecurityGroupIds'] = sorted(live - wanted)
        if kwargs:
            self._call(
                self.ec2.modify_vpc_endpoint,
                context=self._context(current, 'update'),
                VpcEndpointId=current.physical_id,
                **kwargs
            )

        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        return desired

    def destroy(self, resource: Resource) -> None:
        if not resource.physical_id:
            return
        self._call(
            self.ec2.delete_vpc_endpoints,
            ignore_codes=['InvalidVpcEndpointId.NotFound', 'InvalidVpcEndpoint.NotFound'],
            context=self._context(resource, 'delete'),
            VpcEndpointIds=[resource.physical_id],
        )

    def read(self, resource: Resource) -> Optional[Resource]:
        endpoint = self._describe(resource)
        if endpoint is None or endpoint.get('State', '').lower() in ('deleted', 'deleting'):
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs = self._outputs(endpoint)
        return refreshed

    def _describe(self, resource: Resource) -> Optional[dict]:
        response = self._call(
            self.ec2.describe_vpc_endpoints,
            ignore_codes=['InvalidVpcEndpointId.NotFound'],
            context=self._context(resource, 'read'),
            VpcEndpointIds=[resource.physical_id],
        )
        if not response or not response.get('VpcEndpoints'):
            return None
        return response['VpcEndpoints'][0]

    @staticmethod
    def _outputs(endpoint: dict) -> dict:
        outputs = {'VpcEndpointId': endpoint['VpcEndpointId']}
        dns_entries = endpoint.get('DnsEntries', [])
        if dns_entries:
            # The first entry is the regional name; later ones are zonal
            outputs['DnsName'] = dns_entries[0]['DnsName']
        return outputs
