"""EC2 instance provisioner for the file gateway appliance."""

from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import COMPUTE_INSTANCE
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner

# Public SSM parameter holding the latest File Gateway appliance AMI
GATEWAY_AMI_PARAMETER = '/aws/service/storagegateway/ami/FILE_S3/latest'

FAILED_STATES = {'shutting-down', 'terminated', 'stopping', 'stopped'}


class InstanceProvisioner(BaseProvisioner):
    """Provisioner for the EC2 instance running the gateway appliance."""

    resource_type = COMPUTE_INSTANCE
    mutable_attributes = frozenset({'SecurityGroupIds'})

    @property
    def ec2(self):
        return self.client('ec2')

    def resolve_image_id(self, resource: Resource, image_id: Optional[str]) -> str:
        """Return the configured AMI or look up the latest gateway AMI."""
        if image_id:
            return image_id
        response = self._call(
            self.client('ssm').get_parameter,
            context=self._context(resource, 'create'),
            Name=GATEWAY_AMI_PARAMETER,
        )
        return response['Parameter']['Value']

    def create(self, resource, attributes, cancel_event) -> Resource:
        image_id = self.resolve_image_id(resource, attributes.get('ImageId'))
        self.logger.info(f"Launching gateway appliance from {image_id}",
                         extra={'resource_id': resource.id})

        response = self._call(
            self.ec2.run_instances,
            context=self._context(resource, 'create'),
            ImageId=image_id,
            InstanceType=attributes['InstanceType'],
            MinCount=1,
            MaxCount=1,
            SubnetId=attributes['SubnetId'],
            SecurityGroupIds=attributes['SecurityGroupIds'],
            # Repeated run_instances calls with the same token return the same instance
            ClientToken=self.client_token(resource),
            BlockDeviceMappings=[{
                'DeviceName': '/dev/xvda',
                'Ebs': {
                    'VolumeSize': attributes['RootVolumeSizeGb'],
                    'VolumeType': 'gp3',
                    'DeleteOnTermination': True,
                },
            }],
            MetadataOptions={'HttpTokens': 'required'},
            TagSpecifications=[
                {'ResourceType': 'instance', 'Tags': self.tag_list(resource.tags)},
                {'ResourceType': 'volume', 'Tags': self.tag_list(resource.tags)},
            ],
        )
        instance = response['Instances'][0]
        resource.physical_id = instance['InstanceId']
        resource.outputs = self._outputs(instance)
        resource.metadata['image_id'] = image_id
        return resource

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """Wait for the instance to reach ``running``."""
        def probe() -> PollResult:
            instance = self._describe(resource)
            if instance is None:
                return PollResult.pending('not-visible')
            state = instance['State']['Name']
            if state == 'running':
                return PollResult.ready(state, instance)
            if state in FAILED_STATES:
                return PollResult.failed(state)
            return PollResult.pending(state)

        result = self._poll(resource, probe, f"instance {resource.physical_id}", cancel_event)
        resource.outputs = self._outputs(result.value)
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        self._call(
            self.ec2.modify_instance_attribute,
            context=self._context(current, 'update'),
            InstanceId=current.physical_id,
            Groups=attributes['SecurityGroupIds'],
        )
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        desired.metadata = dict(current.metadata)
        return desired

    def destroy(self, resource: Resource) -> None:
        """Terminate the instance and wait until its network interface is gone."""
        if not resource.physical_id:
            return
        response = self._call(
            self.ec2.terminate_instances,
            ignore_codes=['InvalidInstanceID.NotFound', 'InvalidInstanceID.Malformed'],
            context=self._context(resource, 'delete'),
            InstanceIds=[resource.physical_id],
        )
        if response is None:
            return

        def probe() -> PollResult:
            instance = self._describe(resource)
            if instance is None or instance['State']['Name'] == 'terminated':
                return PollResult.ready('terminated')
            return PollResult.pending(instance['State']['Name'])

        self.poller.wait(probe, f"termination of {resource.physical_id}",
                         context=self._context(resource, 'delete'))

    def read(self, resource: Resource) -> Optional[Resource]:
        instance = self._describe(resource)
        if instance is None or instance['State']['Name'] in ('shutting-down', 'terminated'):
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs = self._outputs(instance)
        return refreshed

    def _describe(self, resource: Resource) -> Optional[dict]:
        response = self._call(
            self.ec2.describe_instances,
            ignore_codes=['InvalidInstanceID.NotFound'],
            context=self._context(resource, 'read'),
            InstanceIds=[resource.physical_id],
        )
        if not response:
            return None
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                return instance
        return None

    @staticmethod
    def _outputs(instance: dict) -> dict:
        outputs = {'InstanceId': instance['InstanceId']}
        if instance.get('PrivateIpAddress'):
            outputs['PrivateIpAddress'] = instance['PrivateIpAddress']
        zone = instance.get('Placement', {}).get('AvailabilityZone')
        if zone:
            outputs['AvailabilityZone'] = zone
        return outputs
