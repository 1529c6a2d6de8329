"""SNS topic and topic policy provisioners for upload notifications."""

import json
from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import NOTIFICATION_TOPIC, TOPIC_POLICY
from .base import BaseProvisioner

NOT_FOUND = ['NotFound', 'NotFoundException']


class SNSProvisioner(BaseProvisioner):
    """Provisioner for the upload notification topic.

    ``create_topic`` is idempotent by name, which makes creation retry-safe.
    For the same reason a replacement would return the old topic, so the old
    one is deleted first. Subscriptions are left to downstream consumers.
    """

    resource_type = NOTIFICATION_TOPIC
    allows_overlap = False

    @property
    def sns(self):
        return self.client('sns')

    def create(self, resource, attributes, cancel_event) -> Resource:
        response = self._call(
            self.sns.create_topic,
            context=self._context(resource, 'create'),
            Name=attributes['Name'],
            Tags=self.tag_list(resource.tags),
        )
        topic_arn = response['TopicArn']
        resource.physical_id = topic_arn
        resource.outputs = {'TopicArn': topic_arn}
        return resource

    def destroy(self, resource: Resource) -> None:
        if not resource.physical_id:
            return
        self._call(
            self.sns.delete_topic,
            ignore_codes=NOT_FOUND,
            context=self._context(resource, 'delete'),
            TopicArn=resource.physical_id,
        )

    def read(self, resource: Resource) -> Optional[Resource]:
        if not resource.physical_id:
            return None
        response = self._call(
            self.sns.get_topic_attributes,
            ignore_codes=NOT_FOUND,
            context=self._context(resource, 'read'),
            TopicArn=resource.physical_id,
        )
        if response is None:
            return None
        return resource.model_copy(deep=True)


class TopicPolicyProvisioner(BaseProvisioner):
    """Sets the topic's access policy so EventBridge may publish to it.

    The policy lives on the topic, so old and new copies are the same object.
    """

    resource_type = TOPIC_POLICY
    mutable_attributes = frozenset({'Policy'})
    allows_overlap = False

    @property
    def sns(self):
        return self.client('sns')

    def create(self, resource, attributes, cancel_event) -> Resource:
        self._set_policy(resource, attributes, 'create')
        resource.physical_id = attributes['TopicArn']
        resource.outputs = {'TopicArn': attributes['TopicArn']}
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        self._set_policy(current, attributes, 'update')
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        return desired

    def destroy(self, resource: Resource) -> None:
        """Restore the default owner-only policy; a deleted topic needs nothing."""
        if not resource.physical_id:
            return
        topic_arn = resource.physical_id
        account = topic_arn.split(':')[4]
        default_policy = {
            'Version': '2008-10-17',
            'Statement': [{
                'Sid': '__default_statement_ID',
                'Effect': 'Allow',
                'Principal': {'AWS': '*'},
                'Action': ['SNS:Publish', 'SNS:Subscribe', 'SNS:GetTopicAttributes'],
                'Resource': topic_arn,
                'Condition': {'StringEquals': {'AWS:SourceOwner': account}},
            }],
        }
        self._call(
            self.sns.set_topic_attributes,
            ignore_codes=NOT_FOUND,
            context=self._context(resource, 'delete'),
            TopicArn=topic_arn,
            AttributeName='Policy',
            AttributeValue=json.dumps(default_policy),
        )

    def read(self, resource: Resource) -> Optional[Resource]:
        if not resource.physical_id:
            return None
        response = self._call(
            self.sns.get_topic_attributes,
            ignore_codes=NOT_FOUND,
            context=self._context(resource, 'read'),
            TopicArn=resource.physical_id,
        )
        if response is None:
            return None
        return resource.model_copy(deep=True)

    def _set_policy(self, resource: Resource, attributes, operation: str) -> None:
        self._call(
            self.sns.set_topic_attributes,
            context=self._context(resource, operation),
            TopicArn=attributes['TopicArn'],
            AttributeName='Policy',
            AttributeValue=json.dumps(attributes['Policy']),
        )
