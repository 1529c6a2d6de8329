"""Storage Gateway activation and cache allocation."""

from typing import Any, Dict, Optional

import requests
from botocore.exceptions import ClientError

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import GATEWAY
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner

ACTIVATION_TIMEOUT = 10  # seconds per HTTP attempt against the appliance


GONE = ('GatewayNotFound',)
UNREACHABLE = ('GatewayNotFound', 'GatewayNotConnected')


def _gateway_error_in(error: ClientError, codes) -> bool:
    details = error.response.get('error', {}) or {}
    return details.get('errorCode') in codes


class StorageGatewayProvisioner(BaseProvisioner):
    """Activates the appliance as a FILE_S3 gateway and allocates its cache disk.

    Activation is a two-step handshake: the appliance hands out an activation
    key over HTTP on port 80, which is then exchanged for a gateway ARN.
    A gateway already activated on the appliance is adopted, so the old
    gateway is deleted before a replacement is activated.
    """

    resource_type = GATEWAY
    mutable_attributes = frozenset({'GatewayName', 'GatewayTimezone'})
    allows_overlap = False

    def __init__(self, clients=None, retry_strategy=None, poller=None, http=None):
        super().__init__(clients, retry_strategy, poller)
        self.http = http or requests

    @property
    def sgw(self):
        return self.client('storagegateway')

    def create(self, resource, attributes, cancel_event) -> Resource:
        context = self._context(resource, 'create')

        existing = self._find_existing(attributes)
        if existing is not None:
            self.logger.info(f"Adopting existing gateway {existing['GatewayARN']}",
                             extra={'resource_id': resource.id})
            gateway_arn = existing['GatewayARN']
        else:
            activation_key = self.fetch_activation_key(resource, attributes, cancel_event)
            response = self._call(
                self.sgw.activate_gateway,
                context=context,
                ActivationKey=activation_key,
                GatewayName=attributes['GatewayName'],
                GatewayTimezone=attributes['GatewayTimezone'],
                GatewayRegion=attributes['GatewayRegion'],
                GatewayType=attributes['GatewayType'],
                Tags=self.tag_list(resource.tags),
            )
            gateway_arn = response['GatewayARN']

        resource.physical_id = gateway_arn
        resource.outputs = {'GatewayARN': gateway_arn, 'GatewayId': gateway_arn.rsplit('/', 1)[-1]}
        resource.metadata['cache_volume_id'] = attributes.get('CacheVolumeId')
        return resource

    def fetch_activation_key(self, resource, attributes, cancel_event) -> str:
        """Poll the appliance until it hands out an activation key."""
        params = {
            'activationRegion': attributes['GatewayRegion'],
            'gatewayType': attributes['GatewayType'],
            'vpcEndpoint': attributes['VpcEndpoint'],
            'no_redirect': '',
        }
        url = f"http://{attributes['ActivationIp']}/"

        def probe() -> PollResult:
            try:
                response = self.http.get(url, params=params, timeout=ACTIVATION_TIMEOUT)
            except requests.RequestException as e:
                return PollResult.pending(type(e).__name__)
            key = response.text.strip()
            if response.status_code == 200 and key:
                return PollResult.ready('key-issued', key)
            return PollResult.pending(f"http-{response.status_code}")

        result = self._poll(resource, probe,
                            f"activation key from {attributes['ActivationIp']}", cancel_event)
        return result.value

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """Wait for RUNNING, then allocate the attached EBS disk as cache."""
        gateway_arn = resource.physical_id

        def running() -> PollResult:
            info = self._describe(resource, tolerate=UNREACHABLE)
            if info is None:
                return PollResult.pending('not-connected')
            state = info.get('GatewayState', 'UNKNOWN')
            if state == 'RUNNING':
                return PollResult.ready(state, info)
            return PollResult.pending(state)

        self._poll(resource, running, f"gateway {gateway_arn}", cancel_event)

        def disks() -> PollResult:
            response = self._call(
                self.sgw.list_local_disks,
                context=self._context(resource, 'wait'),
                GatewayARN=gateway_arn,
            )
            local_disks = response.get('Disks', [])
            if any(d.get('DiskAllocationType') == 'CACHE STORAGE' for d in local_disks):
                return PollResult.ready('allocated', [])
            available = [d['DiskId'] for d in local_disks
                         if d.get('DiskAllocationType') == 'AVAILABLE']
            if available:
                return PollResult.ready('available', available)
            return PollResult.pending('no-disks')

        result = self._poll(resource, disks, f"local disks of {gateway_arn}", cancel_event)
        if result.value:
            self._call(
                self.sgw.add_cache,
                context=self._context(resource, 'add-cache'),
                GatewayARN=gateway_arn,
                DiskIds=result.value,
            )
            resource.outputs['CacheDiskIds'] = list(result.value)

        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        self._call(
            self.sgw.update_gateway_information,
            context=self._context(current, 'update'),
            GatewayARN=current.physical_id,
            GatewayName=attributes['GatewayName'],
            GatewayTimezone=attributes['GatewayTimezone'],
        )
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        desired.metadata = dict(current.metadata)
        return desired

    def destroy(self, resource: Resource) -> None:
        if not resource.physical_id:
            return

        def delete():
            try:
                return self.sgw.delete_gateway(GatewayARN=resource.physical_id)
            except ClientError as e:
                if _gateway_error_in(e, GONE):
                    return None
                raise

        self._call(delete, context=self._context(resource, 'delete'))

    def read(self, resource: Resource) -> Optional[Resource]:
        if not resource.physical_id:
            return None
        info = self._describe(resource)
        if info is None:
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs['GatewayState'] = info.get('GatewayState')
        return refreshed

    def _describe(self, resource: Resource, tolerate=GONE) -> Optional[Dict[str, Any]]:
        def describe():
            try:
                return self.sgw.describe_gateway_information(GatewayARN=resource.physical_id)
            except ClientError as e:
                if _gateway_error_in(e, tolerate):
                    return None
                raise

        return self._call(describe, context=self._context(resource, 'read'))

    def _find_existing(self, attributes) -> Optional[Dict[str, Any]]:
        """A gateway already activated on this appliance by an earlier attempt."""
        paginator = self.sgw.get_paginator('list_gateways')
        for page in self._call(lambda: list(paginator.paginate())):
            for gateway in page.get('Gateways', []):
                if (gateway.get('Ec2InstanceId') == attributes['InstanceId']
                        and gateway.get('GatewayOperationalState') != 'DELETED'):
                    return gateway
        return None
