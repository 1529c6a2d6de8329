"""NFS file share provisioner."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import FILE_SHARE
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner

MISSING_ERROR_CODES = ('FileShareNotFound', 'GatewayNotFound')

UPDATABLE = (
    'DefaultStorageClass',
    'ObjectACL',
    'ClientList',
    'Squash',
    'FileShareName',
    'NotificationPolicy',
)


def _share_missing(error: ClientError) -> bool:
    details = error.response.get('error', {}) or {}
    return details.get('errorCode') in MISSING_ERROR_CODES


class FileShareProvisioner(BaseProvisioner):
    """Provisioner for the bucket-backed NFS file share.

    A gateway exports a bucket location at most once, so a replacement share
    can only be created after the old one is deleted.
    """

    resource_type = FILE_SHARE
    mutable_attributes = frozenset(UPDATABLE)
    allows_overlap = False

    @property
    def sgw(self):
        return self.client('storagegateway')

    def create(self, resource, attributes, cancel_event) -> Resource:
        existing = self._find_existing(resource, attributes)
        if existing is not None:
            self.logger.info(f"Adopting existing file share {existing['FileShareARN']}",
                             extra={'resource_id': resource.id})
            share_arn = existing['FileShareARN']
        else:
            response = self._call(
                self.sgw.create_nfs_file_share,
                context=self._context(resource, 'create'),
                ClientToken=self.client_token(resource),
                GatewayARN=attributes['GatewayARN'],
                Role=attributes['Role'],
                LocationARN=attributes['LocationARN'],
                DefaultStorageClass=attributes['DefaultStorageClass'],
                ObjectACL=attributes['ObjectACL'],
                ClientList=attributes['ClientList'],
                Squash=attributes['Squash'],
                FileShareName=attributes['FileShareName'],
                NotificationPolicy=attributes['NotificationPolicy'],
                Tags=self.tag_list(resource.tags),
            )
            share_arn = response['FileShareARN']

        resource.physical_id = share_arn
        resource.outputs = {'FileShareARN': share_arn}
        return resource

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """Wait for AVAILABLE and record the export path."""
        def probe() -> PollResult:
            share = self._describe(resource)
            if share is None:
                return PollResult.pending('not-visible')
            status = share.get('FileShareStatus')
            if status == 'AVAILABLE':
                return PollResult.ready(status, share)
            if status in ('DELETING', 'FORCE_DELETING'):
                return PollResult.failed(status)
            return PollResult.pending(status)

        result = self._poll(resource, probe, f"file share {resource.physical_id}", cancel_event)
        resource.outputs = self._outputs(result.value)
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        self._call(
            self.sgw.update_nfs_file_share,
            context=self._context(current, 'update'),
            FileShareARN=current.physical_id,
            **{name: attributes[name] for name in UPDATABLE}
        )
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        return desired

    def destroy(self, resource: Resource) -> None:
        if not resource.physical_id:
            return

        def delete():
            try:
                return self.sgw.delete_file_share(FileShareARN=resource.physical_id)
            except ClientError as e:
                if _share_missing(e):
                    return None
                raise

        self._call(delete, context=self._context(resource, 'delete'))

        def gone() -> PollResult:
            share = self._describe(resource)
            if share is None:
                return PollResult.ready('deleted')
            return PollResult.pending(share.get('FileShareStatus'))

        self.poller.wait(gone, f"deletion of {resource.physical_id}",
                         context=self._context(resource, 'delete'))

    def read(self, resource: Resource) -> Optional[Resource]:
        if not resource.physical_id:
            return None
        share = self._describe(resource)
        if share is None:
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs = self._outputs(share)
        return refreshed

    def _describe(self, resource: Resource) -> Optional[Dict[str, Any]]:
        def describe():
            try:
                return self.sgw.describe_nfs_file_shares(FileShareARNList=[resource.physical_id])
            except ClientError as e:
                if _share_missing(e):
                    return None
                raise

        response = self._call(describe, context=self._context(resource, 'read'))
        shares = (response or {}).get('NFSFileShareInfoList', [])
        return shares[0] if shares else None

    def _find_existing(self, resource: Resource, attributes) -> Optional[Dict[str, Any]]:
        """A share for the same bucket on the same gateway, left by an earlier attempt."""
        listing = self._call(
            self.sgw.list_file_shares,
            context=self._context(resource, 'create'),
            GatewayARN=attributes['GatewayARN'],
        )
        arns = [info['FileShareARN'] for info in listing.get('FileShareInfoList', [])
                if info.get('FileShareType') == 'NFS']
        if not arns:
            return None

        response = self._call(
            self.sgw.describe_nfs_file_shares,
            context=self._context(resource, 'create'),
            FileShareARNList=arns,
        )
        for share in response.get('NFSFileShareInfoList', []):
            if (share.get('LocationARN') == attributes['LocationARN']
                    and share.get('FileShareStatus') not in ('DELETING', 'FORCE_DELETING')):
                return share
        return None

    @staticmethod
    def _outputs(share: Dict[str, Any]) -> Dict[str, Any]:
        outputs = {'FileShareARN': share['FileShareARN']}
        for key in ('FileShareId', 'Path', 'FileShareStatus'):
            if share.get(key):
                outputs[key] = share[key]
        return outputs
