"""EventBridge rule provisioner routing upload events to the notification topic."""

import json
from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import EVENT_RULE
from s3nfs_deploy.utils.errors import ProviderRejectionError
from .base import BaseProvisioner

NOT_FOUND = ['ResourceNotFoundException']
TARGET_ID = 'upload-topic'


class EventRuleProvisioner(BaseProvisioner):
    """Provisioner for the upload event rule and its topic target.

    ``put_rule`` and ``put_targets`` are upserts keyed by rule name, so the
    same calls serve create, retry and update. A replacement under the same name
    would be the old rule itself, so the old rule is deleted first.
    """

    resource_type = EVENT_RULE
    mutable_attributes = frozenset({'Description', 'EventPattern', 'TargetArn'})
    allows_overlap = False

    @property
    def events(self):
        return self.client('events')

    def create(self, resource, attributes, cancel_event) -> Resource:
        rule_arn = self._put_rule(resource, attributes, 'create')
        resource.physical_id = attributes['Name']
        resource.outputs = {'Arn': rule_arn, 'Name': attributes['Name']}
        self._configure(resource, lambda: self._put_target(resource, attributes, 'create'))
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        rule_arn = self._put_rule(current, attributes, 'update')
        if 'TargetArn' in changed:
            self._put_target(current, attributes, 'update')
        desired.physical_id = current.physical_id
        desired.outputs = {'Arn': rule_arn, 'Name': attributes['Name']}
        return desired

    def destroy(self, resource: Resource) -> None:
        if not resource.physical_id:
            return
        context = self._context(resource, 'delete')
        self._call(self.events.remove_targets, ignore_codes=NOT_FOUND, context=context,
                   Rule=resource.physical_id, Ids=[TARGET_ID])
        self._call(self.events.delete_rule, ignore_codes=NOT_FOUND, context=context,
                   Name=resource.physical_id)

    def read(self, resource: Resource) -> Optional[Resource]:
        if not resource.physical_id:
            return None
        response = self._call(
            self.events.describe_rule,
            ignore_codes=NOT_FOUND,
            context=self._context(resource, 'read'),
            Name=resource.physical_id,
        )
        if response is None:
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs['Arn'] = response['Arn']
        refreshed.outputs['State'] = response.get('State')
        return refreshed

    def _put_rule(self, resource: Resource, attributes, operation: str) -> str:
        response = self._call(
            self.events.put_rule,
            context=self._context(resource, operation),
            Name=attributes['Name'],
            Description=attributes.get('Description', ''),
            EventPattern=json.dumps(attributes['EventPattern']),
            State='ENABLED',
            Tags=self.tag_list(resource.tags),
        )
        return response['RuleArn']

    def _put_target(self, resource: Resource, attributes, operation: str) -> None:
        response = self._call(
            self.events.put_targets,
            context=self._context(resource, operation),
            Rule=attributes['Name'],
            Targets=[{'Id': TARGET_ID, 'Arn': attributes['TargetArn']}],
        )
        if response.get('FailedEntryCount'):
            entry = response['FailedEntries'][0]
            raise ProviderRejectionError(
                f"Could not attach topic to rule: {entry.get('ErrorCode')} {entry.get('ErrorMessage')}",
                context=self._context(resource, operation),
            )
