"""IAM role provisioner for the file share's bucket access role."""

import json
from typing import Optional

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import IAM_ROLE
from s3nfs_deploy.utils.waiter import PollResult
from .base import BaseProvisioner

NOT_FOUND = ['NoSuchEntity']


def _document(policy) -> str:
    return policy if isinstance(policy, str) else json.dumps(policy)


class IAMRoleProvisioner(BaseProvisioner):
    """Provisioner for IAM roles with inline policies.

    Role names are unique within an account, so two copies of a role can
    never coexist: replacement deletes the old role before creating the new.
    """

    resource_type = IAM_ROLE
    mutable_attributes = frozenset({'AssumeRolePolicyDocument', 'Policies'})
    allows_overlap = False

    @property
    def iam(self):
        return self.client('iam')

    def create(self, resource, attributes, cancel_event) -> Resource:
        """Create the role (or adopt it by name) and put its inline policies."""
        role_name = attributes['RoleName']
        context = self._context(resource, 'create')

        response = self._call(
            self.iam.create_role,
            ignore_codes=['EntityAlreadyExists'],
            context=context,
            RoleName=role_name,
            AssumeRolePolicyDocument=_document(attributes['AssumeRolePolicyDocument']),
            Description=f"File share bucket access for {resource.id}",
            Tags=self.tag_list(resource.tags),
        )
        if response is None:
            self.logger.info(f"Adopting existing IAM role {role_name}",
                             extra={'resource_id': resource.id})
            response = self._call(self.iam.get_role, context=context, RoleName=role_name)

        role = response['Role']
        resource.physical_id = role['Arn']
        resource.outputs = {'Arn': role['Arn'], 'RoleName': role['RoleName']}

        self._configure(resource, lambda: self._put_policies(role_name, attributes, context))
        return resource

    def wait_until_ready(self, resource, cancel_event) -> Resource:
        """IAM is eventually consistent; wait until the role is readable."""
        role_name = resource.outputs['RoleName']

        def probe() -> PollResult:
            response = self._call(
                self.iam.get_role,
                ignore_codes=NOT_FOUND,
                context=self._context(resource, 'wait'),
                RoleName=role_name,
            )
            return PollResult.ready('visible') if response else PollResult.pending('propagating')

        self._poll(resource, probe, f"IAM role {role_name}", cancel_event)
        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        role_name = current.outputs.get('RoleName', attributes['RoleName'])
        context = self._context(current, 'update')

        if 'AssumeRolePolicyDocument' in changed:
            self._call(
                self.iam.update_assume_role_policy,
                context=context,
                RoleName=role_name,
                PolicyDocument=_document(attributes['AssumeRolePolicyDocument']),
            )

        if 'Policies' in changed:
            live = self._call(self.iam.list_role_policies, context=context, RoleName=role_name)
            for policy_name in set(live.get('PolicyNames', [])) - set(attributes['Policies']):
                self._call(
                    self.iam.delete_role_policy,
                    ignore_codes=NOT_FOUND,
                    context=context,
                    RoleName=role_name,
                    PolicyName=policy_name,
                )
            self._put_policies(role_name, attributes, context)

        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        return desired

    def destroy(self, resource: Resource) -> None:
        """Delete inline and attached policies, then the role."""
        role_name = resource.outputs.get('RoleName') or resource.properties.get('RoleName')
        if not role_name or not resource.physical_id:
            return
        context = self._context(resource, 'delete')

        inline = self._call(self.iam.list_role_policies, ignore_codes=NOT_FOUND,
                            context=context, RoleName=role_name)
        if inline is None:
            return
        for policy_name in inline.get('PolicyNames', []):
            self._call(self.iam.delete_role_policy, ignore_codes=NOT_FOUND,
                       context=context, RoleName=role_name, PolicyName=policy_name)

        attached = self._call(self.iam.list_attached_role_policies, ignore_codes=NOT_FOUND,
                              context=context, RoleName=role_name) or {}
        for policy in attached.get('AttachedPolicies', []):
            self._call(self.iam.detach_role_policy, ignore_codes=NOT_FOUND,
                       context=context, RoleName=role_name, PolicyArn=policy['PolicyArn'])

        self._call(self.iam.delete_role, ignore_codes=NOT_FOUND,
                   context=context, RoleName=role_name)

    def read(self, resource: Resource) -> Optional[Resource]:
        role_name = resource.outputs.get('RoleName') or resource.properties.get('RoleName')
        response = self._call(self.iam.get_role, ignore_codes=NOT_FOUND,
                              context=self._context(resource, 'read'), RoleName=role_name)
        if response is None:
            return None
        refreshed = resource.model_copy(deep=True)
        refreshed.physical_id = response['Role']['Arn']
        refreshed.outputs['Arn'] = response['Role']['Arn']
        return refreshed

    def _put_policies(self, role_name: str, attributes, context) -> None:
        for policy_name, policy_document in sorted(attributes.get('Policies', {}).items()):
            self._call(
                self.iam.put_role_policy,
                context=context,
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=_document(policy_document),
            )
