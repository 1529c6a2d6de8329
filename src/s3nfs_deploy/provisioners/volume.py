"""EBS cache volume provisioner."""

from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import BLOCK_VOLUME
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner


class VolumeProvisioner(BaseProvisioner):
    """Creates an EBS volume in the appliance's zone and attaches it."""

    resource_type = BLOCK_VOLUME
    mutable_attributes = frozenset({'Size', 'VolumeType'})

    @property
    def ec2(self):
        return self.client('ec2')

    def create(self, resource, attributes, cancel_event) -> Resource:
        response = self._call(
            self.ec2.create_volume,
            context=self._context(resource, 'create'),
            AvailabilityZone=attributes['AvailabilityZone'],
            Size=attributes['Size'],
            VolumeType=attributes['VolumeType'],
            ClientToken=self.client_token(resource),
            TagSpecifications=[{
                'ResourceType': 'volume',
                'Tags': self.tag_list(resource.tags),
            }],
        )
        resource.physical_id = response['VolumeId']
        resource.outputs = {
            'VolumeId': response['VolumeId'],
            'AvailabilityZone': attributes['AvailabilityZone'],
        }
        resource.metadata['instance_id'] = attributes['InstanceId']
        resource.metadata['device_name'] = attributes['DeviceName']
        return resource

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """Wait for the volume, attach it, and wait for the attachment."""
        instance_id = resource.metadata['instance_id']

        self._poll(resource, lambda: self._volume_state(resource, 'available'),
                   f"volume {resource.physical_id}", cancel_event)

        self._call(
            self.ec2.attach_volume,
            ignore_codes=['VolumeInUse'],
            context=self._context(resource, 'attach'),
            VolumeId=resource.physical_id,
            InstanceId=instance_id,
            Device=resource.metadata['device_name'],
        )

        self._poll(resource, lambda: self._attachment_state(resource, instance_id),
                   f"attachment of {resource.physical_id}", cancel_event)
        resource.outputs['AttachedInstanceId'] = instance_id
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        self._call(
            self.ec2.modify_volume,
            context=self._context(current, 'update'),
            VolumeId=current.physical_id,
            Size=attributes['Size'],
            VolumeType=attributes['VolumeType'],
        )
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        desired.metadata = dict(current.metadata)
        return desired

    def destroy(self, resource: Resource) -> None:
        """Detach (if attached) and delete the volume."""
        if not resource.physical_id:
            return
        context = self._context(resource, 'delete')

        volume = self._describe(resource)
        if volume is None:
            return

        if volume.get('Attachments'):
            self._call(
                self.ec2.detach_volume,
                ignore_codes=['IncorrectState', 'InvalidAttachment.NotFound'],
                context=context,
                VolumeId=resource.physical_id,
            )
            self.poller.wait(lambda: self._volume_state(resource, 'available'),
                             f"detachment of {resource.physical_id}", context=context)

        self._call(
            self.ec2.delete_volume,
            ignore_codes=['InvalidVolume.NotFound'],
            context=context,
            VolumeId=resource.physical_id,
        )

    def read(self, resource: Resource) -> Optional[Resource]:
        volume = self._describe(resource)
        if volume is None or volume['State'] in ('deleting', 'deleted'):
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs['AvailabilityZone'] = volume['AvailabilityZone']
        attachments = volume.get('Attachments', [])
        if attachments:
            refreshed.outputs['AttachedInstanceId'] = attachments[0]['InstanceId']
        else:
            refreshed.outputs.pop('AttachedInstanceId', None)
        return refreshed

    def _describe(self, resource: Resource) -> Optional[dict]:
        response = self._call(
            self.ec2.describe_volumes,
            ignore_codes=['InvalidVolume.NotFound'],
            context=self._context(resource, 'read'),
            VolumeIds=[resource.physical_id],
        )
        if not response or not response.get('Volumes'):
            return None
        return response['Volumes'][0]

    def _volume_state(self, resource: Resource, wanted: str) -> PollResult:
        volume = self._describe(resource)
        if volume is None:
            return PollResult.pending('not-visible')
        state = volume['State']
        if state == wanted:
            return PollResult.ready(state, volume)
        if state == 'error':
            return PollResult.failed(state)
        return PollResult.pending(state)

    def _attachment_state(self, resource: Resource, instance_id: str) -> PollResult:
        volume = self._describe(resource)
        for attachment in (volume or {}).get('Attachments', []):
            if attachment['InstanceId'] == instance_id:
                if attachment['State'] == 'attached':
                    return PollResult.ready('attached')
                return PollResult.pending(attachment['State'])
        return PollResult.pending('detached')
