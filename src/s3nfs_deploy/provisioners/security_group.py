"""Security group provisioner."""

from typing import Optional, List, Dict, Any

from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.descriptors import SECURITY_GROUP
from .base import BaseProvisioner


class SecurityGroupProvisioner(BaseProvisioner):
    """Provisioner for EC2 security groups with declarative ingress rules.

    Group names are unique per VPC and a duplicate is adopted, so a
    replacement must delete the old group before creating the new one.
    """

    resource_type = SECURITY_GROUP
    mutable_attributes = frozenset({'IngressRules'})
    allows_overlap = False

    @property
    def ec2(self):
        return self.client('ec2')

    def create(self, resource, attributes, cancel_event) -> Resource:
        """Create the security group and authorize its ingress rules.

        A group left behind by an interrupted earlier attempt is adopted
        instead of failing on ``InvalidGroup.Duplicate``.
        """
        context = self._context(resource, 'create')
        response = self._call(
            self.ec2.create_security_group,
            ignore_codes=['InvalidGroup.Duplicate'],
            context=context,
            GroupName=attributes['GroupName'],
            Description=attributes['Description'],
            VpcId=attributes['VpcId'],
            TagSpecifications=[{
                'ResourceType': 'security-group',
                'Tags': self.tag_list(resource.tags),
            }],
        )

        if response is None:
            sg_id = self._find_by_name(attributes['GroupName'], attributes['VpcId'])
            self.logger.info(f"Adopting existing security group {sg_id}",
                             extra={'resource_id': resource.id})
        else:
            sg_id = response['GroupId']

        resource.physical_id = sg_id
        resource.outputs = {'GroupId': sg_id}

        ingress_rules = attributes.get('IngressRules', [])
        if ingress_rules:
            self._configure(resource, lambda: self._call(
                self.ec2.authorize_security_group_ingress,
                ignore_codes=['InvalidPermission.Duplicate'],
                context=context,
                GroupId=sg_id,
                IpPermissions=ingress_rules,
            ))

        return resource

    def update(self, current, desired, attributes, changed) -> Resource:
        """Reconcile ingress rules against the live group."""
        sg_id = current.physical_id
        context = self._context(current, 'update')

        response = self._call(self.ec2.describe_security_groups, context=context, GroupIds=[sg_id])
        live_rules = response['SecurityGroups'][0].get('IpPermissions', [])
        self._update_rules(sg_id, live_rules, attributes.get('IngressRules', []), context)

        desired.physical_id = sg_id
        desired.outputs = dict(current.outputs)
        return desired

    def destroy(self, resource: Resource) -> None:
        """Destroy the security group."""
        if not resource.physical_id:
            return

        self._call(
            self.ec2.delete_security_group,
            ignore_codes=['InvalidGroup.NotFound', 'InvalidGroupId.Malformed'],
            context=self._context(resource, 'delete'),
            GroupId=resource.physical_id,
        )

    def read(self, resource: Resource) -> Optional[Resource]:
        """Fetch current security group state from AWS."""
        if not resource.physical_id:
            return None

        response = self._call(
            self.ec2.describe_security_groups,
            ignore_codes=['InvalidGroup.NotFound'],
            context=self._context(resource, 'read'),
            GroupIds=[resource.physical_id],
        )
        if not response or not response.get('SecurityGroups'):
            return None

        sg = response['SecurityGroups'][0]
        refreshed = resource.model_copy(deep=True)
        refreshed.outputs['GroupId'] = sg['GroupId']
        refreshed.tags = {tag['Key']: tag['Value'] for tag in sg.get('Tags', [])}
        return refreshed

    def _find_by_name(self, group_name: str, vpc_id: str) -> str:
        response = self._call(
            self.ec2.describe_security_groups,
            Filters=[
                {'Name': 'group-name', 'Values': [group_name]},
                {'Name': 'vpc-id', 'Values': [vpc_id]},
            ],
        )
        return response['SecurityGroups'][0]['GroupId']

    def _update_rules(
        self,
        sg_id: str,
        current_rules: List[Dict[str, Any]],
        desired_rules: List[Dict[str, Any]],
        context
    ) -> None:
        """Revoke rules no longer desired, then authorize missing ones."""
        current_normalized = {self._normalize_rule(r) for r in current_rules}
        desired_normalized = {self._normalize_rule(r) for r in desired_rules}

        rules_to_add = [r for r in desired_rules if self._normalize_rule(r) not in current_normalized]
        rules_to_remove = [r for r in current_rules if self._normalize_rule(r) not in desired_normalized]

        if rules_to_remove:
            self._call(
                self.ec2.revoke_security_group_ingress,
                context=context,
                GroupId=sg_id,
                IpPermissions=rules_to_remove,
            )

        if rules_to_add:
            self._call(
                self.ec2.authorize_security_group_ingress,
                ignore_codes=['InvalidPermission.Duplicate'],
                context=context,
                GroupId=sg_id,
                IpPermissions=rules_to_add,
            )

    @staticmethod
    def _normalize_rule(rule: Dict[str, Any]) -> str:
        """Normalize a security group rule for comparison."""
        protocol = rule.get('IpProtocol', '-1')
        from_port = rule.get('FromPort', 0)
        to_port = rule.get('ToPort', 0)

        sources = []
        for ip_range in rule.get('IpRanges', []):
            sources.append(f"cidr:{ip_range.get('CidrIp', '')}")
        for ipv6_range in rule.get('Ipv6Ranges', []):
            sources.append(f"cidr6:{ipv6_range.get('CidrIpv6', '')}")
        for sg_ref in rule.get('UserIdGroupPairs', []):
            sources.append(f"sg:{sg_ref.get('GroupId', '')}")

        sources.sort()
        return f"{protocol}:{from_port}:{to_port}:{','.join(sources)}"
