import json
import threading
from unittest.mock import MagicMock, Mock

import pytest
import requests
from botocore.exceptions import ClientError

from s3nfs_deploy.provisioners import PROVISIONER_CLASSES, build_registry
from s3nfs_deploy.provisioners.base import ChangeType
from s3nfs_deploy.provisioners.event_rule import EventRuleProvisioner
from s3nfs_deploy.provisioners.file_share import FileShareProvisioner
from s3nfs_deploy.provisioners.iam import IAMRoleProvisioner
from s3nfs_deploy.provisioners.instance import GATEWAY_AMI_PARAMETER, InstanceProvisioner
from s3nfs_deploy.provisioners.security_group import SecurityGroupProvisioner
from s3nfs_deploy.provisioners.sns import TopicPolicyProvisioner
from s3nfs_deploy.provisioners.storage_gateway import StorageGatewayProvisioner
from s3nfs_deploy.provisioners.volume import VolumeProvisioner
from s3nfs_deploy.provisioners.vpc_endpoint import VpcEndpointProvisioner
from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.builder import GATEWAY_SG
from s3nfs_deploy.utils.errors import ProviderRejectionError
from s3nfs_deploy.utils.retry import RetryStrategy
from s3nfs_deploy.utils.waiter import Poller, PollerSettings


def client_error(code, operation='Operation', gateway_code=None):
    response = {'Error': {'Code': code, 'Message': code}, 'ResponseMetadata': {'HTTPStatusCode': 400}}
    if gateway_code:
        response['error'] = {'errorCode': gateway_code}
    return ClientError(response, operation)


@pytest.fixture
def services():
    return {}


@pytest.fixture
def clients(services):
    manager = MagicMock()
    manager.get_client.side_effect = lambda name: services.setdefault(name, MagicMock())
    return manager


def make(cls, clients, **kwargs):
    return cls(
        clients,
        RetryStrategy(max_retries=2, sleep=lambda s: None),
        Poller(PollerSettings(timeout=5, initial_delay=0.001, max_delay=0.001)),
        **kwargs
    )


def resource(rid, resource_type, **kwargs):
    return Resource(id=rid, type=resource_type, tags={'Name': rid}, **kwargs)


def test_registry_covers_every_type(clients):
    registry = build_registry(clients)

    assert set(registry) == {cls.resource_type for cls in PROVISIONER_CLASSES}
    assert len(registry) == 10
    assert {rtype for rtype, provisioner in registry.items() if not provisioner.allows_overlap} == {
        'iam-role', 'file-share', 'security-group', 'event-rule',
        'notification-topic', 'topic-policy', 'gateway',
    }


def test_plan_uses_mutable_attributes(clients):
    provisioner = make(SecurityGroupProvisioner, clients)
    current = resource('sg', 'security-group', physical_id='sg-1',
                       properties={'GroupName': 'a', 'IngressRules': []})

    in_place = resource('sg', 'security-group', properties={'GroupName': 'a', 'IngressRules': [1]})
    renamed = resource('sg', 'security-group', properties={'GroupName': 'b', 'IngressRules': []})

    assert provisioner.plan(in_place, current).change_type == ChangeType.UPDATE
    assert provisioner.plan(renamed, current).change_type == ChangeType.REPLACE
    assert provisioner.plan(renamed, None).change_type == ChangeType.CREATE


class TestSecurityGroup:

    def attributes(self, topology):
        return topology.get(GATEWAY_SG).serialized_attributes()

    def test_create_authorizes_ingress(self, clients, services, topology):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.create_security_group.return_value = {'GroupId': 'sg-123'}

        created = provisioner.create(topology.get(GATEWAY_SG).to_resource(),
                                     self.attributes(topology), threading.Event())

        assert created.physical_id == 'sg-123'
        permissions = ec2.authorize_security_group_ingress.call_args.kwargs['IpPermissions']
        assert {p['FromPort'] for p in permissions} == {2049, 111, 20048, 80}
        assert all(p['IpRanges'][0]['CidrIp'] == '10.0.0.0/16' for p in permissions)
        tags = ec2.create_security_group.call_args.kwargs['TagSpecifications'][0]['Tags']
        assert {'Key': 's3nfs:logical-id', 'Value': GATEWAY_SG} in tags

    def test_adopts_duplicate_group(self, clients, services, topology):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.create_security_group.side_effect = client_error('InvalidGroup.Duplicate')
        ec2.describe_security_groups.return_value = {'SecurityGroups': [{'GroupId': 'sg-old'}]}

        created = provisioner.create(topology.get(GATEWAY_SG).to_resource(),
                                     self.attributes(topology), threading.Event())

        assert created.physical_id == 'sg-old'

    def test_failed_ingress_keeps_created_group(self, clients, services, topology):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.create_security_group.return_value = {'GroupId': 'sg-123'}
        ec2.authorize_security_group_ingress.side_effect = client_error('InvalidPermission.Malformed')

        with pytest.raises(ProviderRejectionError) as excinfo:
            provisioner.create(topology.get(GATEWAY_SG).to_resource(),
                               self.attributes(topology), threading.Event())

        assert excinfo.value.partial_resource.physical_id == 'sg-123'

    def test_update_reconciles_rules(self, clients, services):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        stale = {'IpProtocol': 'tcp', 'FromPort': 22, 'ToPort': 22,
                 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}
        kept = {'IpProtocol': 'tcp', 'FromPort': 2049, 'ToPort': 2049,
                'IpRanges': [{'CidrIp': '10.0.0.0/16'}]}
        added = {'IpProtocol': 'udp', 'FromPort': 2049, 'ToPort': 2049,
                 'IpRanges': [{'CidrIp': '10.0.0.0/16'}]}
        ec2.describe_security_groups.return_value = {
            'SecurityGroups': [{'GroupId': 'sg-1', 'IpPermissions': [stale, kept]}]
        }
        current = resource('sg', 'security-group', physical_id='sg-1')

        provisioner.update(current, resource('sg', 'security-group'),
                           {'IngressRules': [kept, added]}, ['IngressRules'])

        assert ec2.revoke_security_group_ingress.call_args.kwargs['IpPermissions'] == [stale]
        assert ec2.authorize_security_group_ingress.call_args.kwargs['IpPermissions'] == [added]

    def test_destroy_tolerates_missing_group(self, clients, services):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.delete_security_group.side_effect = client_error('InvalidGroup.NotFound')

        provisioner.destroy(resource('sg', 'security-group', physical_id='sg-1'))

        ec2.delete_security_group.assert_called_once_with(GroupId='sg-1')

    def test_transient_errors_are_retried(self, clients, services):
        provisioner = make(SecurityGroupProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.delete_security_group.side_effect = [client_error('DependencyViolation'), {}]

        provisioner.destroy(resource('sg', 'security-group', physical_id='sg-1'))

        assert ec2.delete_security_group.call_count == 2


class TestInstance:

    def test_looks_up_gateway_ami_and_waits_for_running(self, clients, services):
        provisioner = make(InstanceProvisioner, clients)
        services['ssm'] = ssm = MagicMock()
        services['ec2'] = ec2 = MagicMock()
        ssm.get_parameter.return_value = {'Parameter': {'Value': 'ami-0123'}}
        ec2.run_instances.return_value = {'Instances': [{'InstanceId': 'i-1'}]}
        ec2.describe_instances.side_effect = [
            {'Reservations': [{'Instances': [{'InstanceId': 'i-1', 'State': {'Name': 'pending'}}]}]},
            {'Reservations': [{'Instances': [{
                'InstanceId': 'i-1', 'State': {'Name': 'running'},
                'PrivateIpAddress': '10.0.1.25', 'Placement': {'AvailabilityZone': 'us-east-1b'},
            }]}]},
        ]
        attributes = {'ImageId': None, 'InstanceType': 'm5.xlarge', 'SubnetId': 'subnet-1',
                      'SecurityGroupIds': ['sg-1'], 'RootVolumeSizeGb': 80}

        created = provisioner.create(resource('appliance', 'compute-instance'), attributes,
                                     threading.Event())
        ready = provisioner.wait_until_ready(created, threading.Event())

        ssm.get_parameter.assert_called_once_with(Name=GATEWAY_AMI_PARAMETER)
        assert ec2.run_instances.call_args.kwargs['ImageId'] == 'ami-0123'
        assert ready.outputs == {'InstanceId': 'i-1', 'PrivateIpAddress': '10.0.1.25',
                                 'AvailabilityZone': 'us-east-1b'}

    def test_client_token_is_stable_for_one_create(self, clients, services):
        provisioner = make(InstanceProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.run_instances.return_value = {'Instances': [{'InstanceId': 'i-1'}]}
        attributes = {'ImageId': 'ami-0123', 'InstanceType': 'm5.xlarge', 'SubnetId': 'subnet-1',
                      'SecurityGroupIds': ['sg-1'], 'RootVolumeSizeGb': 80}

        def appliance(serial):
            return resource('appliance', 'compute-instance', metadata={'state_serial': serial})

        provisioner.create(appliance(4), attributes, threading.Event())
        provisioner.create(appliance(4), attributes, threading.Event())
        provisioner.create(appliance(5), attributes, threading.Event())

        first, retried, replacement = (call.kwargs['ClientToken']
                                       for call in ec2.run_instances.call_args_list)
        assert first == retried == provisioner.client_token(appliance(4))
        assert replacement != first
        assert len(first) <= 64

    def test_terminated_instance_is_a_terminal_failure(self, clients, services):
        provisioner = make(InstanceProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.describe_instances.return_value = {
            'Reservations': [{'Instances': [{'InstanceId': 'i-1', 'State': {'Name': 'terminated'}}]}]
        }

        with pytest.raises(ProviderRejectionError, match='terminated'):
            provisioner.wait_until_ready(resource('appliance', 'compute-instance',
                                                  physical_id='i-1'), threading.Event())


class TestVpcEndpoint:

    def test_records_regional_dns_name(self, clients, services):
        provisioner = make(VpcEndpointProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.describe_vpc_endpoints.return_value = {'VpcEndpoints': [{
            'VpcEndpointId': 'vpce-1', 'State': 'Available',
            'DnsEntries': [{'DnsName': 'vpce-1.storagegateway.us-east-1.vpce.amazonaws.com'},
                           {'DnsName': 'vpce-1-us-east-1a.storagegateway.vpce.amazonaws.com'}],
        }]}

        ready = provisioner.wait_until_ready(
            resource('endpoint', 'network-endpoint', physical_id='vpce-1'), threading.Event()
        )

        assert ready.outputs['DnsName'] == 'vpce-1.storagegateway.us-east-1.vpce.amazonaws.com'


class TestStorageGateway:

    attributes = {
        'GatewayName': 's3-nfs-gateway',
        'GatewayTimezone': 'GMT',
        'GatewayRegion': 'us-east-1',
        'GatewayType': 'FILE_S3',
        'InstanceId': 'i-1',
        'ActivationIp': '10.0.1.25',
        'VpcEndpoint': 'vpce-1.storagegateway.us-east-1.vpce.amazonaws.com',
        'CacheVolumeId': 'vol-1',
    }

    def test_activation_handshake(self, clients, services):
        http = Mock()
        http.get.side_effect = [
            requests.ConnectionError('appliance booting'),
            Mock(status_code=200, text='ABCDE-12345-FGHIJ\n'),
        ]
        provisioner = make(StorageGatewayProvisioner, clients, http=http)
        services['storagegateway'] = sgw = MagicMock()
        sgw.get_paginator.return_value.paginate.return_value = [{'Gateways': []}]
        sgw.activate_gateway.return_value = {
            'GatewayARN': 'arn:aws:storagegateway:us-east-1:123456789012:gateway/sgw-1'
        }

        created = provisioner.create(resource('gateway', 'gateway'), self.attributes,
                                     threading.Event())

        assert http.get.call_count == 2
        url = http.get.call_args.args[0]
        params = http.get.call_args.kwargs['params']
        assert url == 'http://10.0.1.25/'
        assert params['vpcEndpoint'] == self.attributes['VpcEndpoint']
        assert sgw.activate_gateway.call_args.kwargs['ActivationKey'] == 'ABCDE-12345-FGHIJ'
        assert created.outputs['GatewayId'] == 'sgw-1'

    def test_adopts_gateway_activated_on_same_instance(self, clients, services):
        http = Mock()
        provisioner = make(StorageGatewayProvisioner, clients, http=http)
        services['storagegateway'] = sgw = MagicMock()
        sgw.get_paginator.return_value.paginate.return_value = [{'Gateways': [
            {'GatewayARN': 'arn:other', 'Ec2InstanceId': 'i-9'},
            {'GatewayARN': 'arn:gw/sgw-2', 'Ec2InstanceId': 'i-1'},
        ]}]

        created = provisioner.create(resource('gateway', 'gateway'), self.attributes,
                                     threading.Event())

        assert created.physical_id == 'arn:gw/sgw-2'
        http.get.assert_not_called()
        sgw.activate_gateway.assert_not_called()

    def test_allocates_available_disks_as_cache(self, clients, services):
        provisioner = make(StorageGatewayProvisioner, clients, http=Mock())
        services['storagegateway'] = sgw = MagicMock()
        sgw.describe_gateway_information.side_effect = [
            client_error('InvalidGatewayRequestException', gateway_code='GatewayNotConnected'),
            {'GatewayState': 'RUNNING'},
        ]
        sgw.list_local_disks.return_value = {'Disks': [
            {'DiskId': 'root', 'DiskAllocationType': 'USED'},
            {'DiskId': 'cache-disk', 'DiskAllocationType': 'AVAILABLE'},
        ]}
        gateway = resource('gateway', 'gateway', physical_id='arn:gw/sgw-1')

        ready = provisioner.wait_until_ready(gateway, threading.Event())

        sgw.add_cache.assert_called_once_with(GatewayARN='arn:gw/sgw-1', DiskIds=['cache-disk'])
        assert ready.outputs['CacheDiskIds'] == ['cache-disk']

    def test_destroy_ignores_missing_gateway(self, clients, services):
        provisioner = make(StorageGatewayProvisioner, clients, http=Mock())
        services['storagegateway'] = sgw = MagicMock()
        sgw.delete_gateway.side_effect = client_error('InvalidGatewayRequestException',
                                                      gateway_code='GatewayNotFound')

        provisioner.destroy(resource('gateway', 'gateway', physical_id='arn:gw/sgw-1'))

        sgw.delete_gateway.assert_called_once()


class TestIamRole:

    def test_adopts_existing_role(self, clients, services):
        provisioner = make(IAMRoleProvisioner, clients)
        services['iam'] = iam = MagicMock()
        iam.create_role.side_effect = client_error('EntityAlreadyExists')
        iam.get_role.return_value = {'Role': {'Arn': 'arn:aws:iam::1:role/r', 'RoleName': 'r'}}
        attributes = {'RoleName': 'r', 'AssumeRolePolicyDocument': {'Version': '2012-10-17'},
                      'Policies': {'bucket-access': {'Statement': []}}}

        created = provisioner.create(resource('role', 'iam-role'), attributes, threading.Event())

        assert created.outputs == {'Arn': 'arn:aws:iam::1:role/r', 'RoleName': 'r'}
        iam.put_role_policy.assert_called_once_with(
            RoleName='r', PolicyName='bucket-access', PolicyDocument=json.dumps({'Statement': []})
        )

    def test_destroy_removes_policies_first(self, clients, services):
        provisioner = make(IAMRoleProvisioner, clients)
        services['iam'] = iam = MagicMock()
        iam.list_role_policies.return_value = {'PolicyNames': ['bucket-access']}
        iam.list_attached_role_policies.return_value = {'AttachedPolicies': []}

        provisioner.destroy(resource('role', 'iam-role', physical_id='arn:role',
                                     outputs={'RoleName': 'r'}))

        names = [call[0] for call in iam.method_calls]
        assert names.index('delete_role_policy') < names.index('delete_role')


class TestFileShare:

    def test_wait_records_export_path(self, clients, services):
        provisioner = make(FileShareProvisioner, clients)
        services['storagegateway'] = sgw = MagicMock()
        sgw.describe_nfs_file_shares.side_effect = [
            {'NFSFileShareInfoList': [{'FileShareARN': 'arn:share', 'FileShareStatus': 'CREATING'}]},
            {'NFSFileShareInfoList': [{'FileShareARN': 'arn:share', 'FileShareStatus': 'AVAILABLE',
                                       'FileShareId': 'share-1', 'Path': '/uploads-bucket'}]},
        ]

        ready = provisioner.wait_until_ready(
            resource('share', 'file-share', physical_id='arn:share'), threading.Event()
        )

        assert ready.outputs['Path'] == '/uploads-bucket'

    def test_adopts_share_for_same_bucket(self, clients, services):
        provisioner = make(FileShareProvisioner, clients)
        services['storagegateway'] = sgw = MagicMock()
        sgw.list_file_shares.return_value = {'FileShareInfoList': [
            {'FileShareARN': 'arn:share-1', 'FileShareType': 'NFS'},
        ]}
        sgw.describe_nfs_file_shares.return_value = {'NFSFileShareInfoList': [
            {'FileShareARN': 'arn:share-1', 'LocationARN': 'arn:aws:s3:::uploads-bucket',
             'FileShareStatus': 'AVAILABLE'},
        ]}
        attributes = {'GatewayARN': 'arn:gw', 'LocationARN': 'arn:aws:s3:::uploads-bucket'}

        created = provisioner.create(resource('share', 'file-share'), attributes, threading.Event())

        assert created.physical_id == 'arn:share-1'
        sgw.create_nfs_file_share.assert_not_called()


class TestNotifications:

    def test_topic_policy_destroy_restores_owner_policy(self, clients, services):
        provisioner = make(TopicPolicyProvisioner, clients)
        services['sns'] = sns = MagicMock()
        topic_arn = 'arn:aws:sns:us-east-1:123456789012:s3-nfs-uploads'

        provisioner.destroy(resource('policy', 'topic-policy', physical_id=topic_arn))

        kwargs = sns.set_topic_attributes.call_args.kwargs
        policy = json.loads(kwargs['AttributeValue'])
        assert kwargs['AttributeName'] == 'Policy'
        assert policy['Statement'][0]['Condition'] == {
            'StringEquals': {'AWS:SourceOwner': '123456789012'}
        }

    def test_event_rule_target_failure_keeps_rule(self, clients, services):
        provisioner = make(EventRuleProvisioner, clients)
        services['events'] = events = MagicMock()
        events.put_rule.return_value = {'RuleArn': 'arn:rule'}
        events.put_targets.return_value = {
            'FailedEntryCount': 1,
            'FailedEntries': [{'ErrorCode': 'AccessDenied', 'ErrorMessage': 'no'}],
        }
        attributes = {'Name': 'uploads', 'Description': 'd',
                      'EventPattern': {'source': ['aws.storagegateway']}, 'TargetArn': 'arn:topic'}

        with pytest.raises(ProviderRejectionError) as excinfo:
            provisioner.create(resource('rule', 'event-rule'), attributes, threading.Event())

        assert excinfo.value.partial_resource.physical_id == 'uploads'
        pattern = json.loads(events.put_rule.call_args.kwargs['EventPattern'])
        assert pattern == {'source': ['aws.storagegateway']}


class TestVolume:

    def test_attaches_after_available(self, clients, services):
        provisioner = make(VolumeProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.create_volume.return_value = {'VolumeId': 'vol-1'}
        ec2.describe_volumes.side_effect = [
            {'Volumes': [{'State': 'creating'}]},
            {'Volumes': [{'State': 'available'}]},
            {'Volumes': [{'State': 'in-use', 'Attachments': [
                {'InstanceId': 'i-1', 'State': 'attaching'}]}]},
            {'Volumes': [{'State': 'in-use', 'Attachments': [
                {'InstanceId': 'i-1', 'State': 'attached'}]}]},
        ]
        attributes = {'InstanceId': 'i-1', 'AvailabilityZone': 'us-east-1b', 'Size': 150,
                      'VolumeType': 'gp3', 'DeviceName': '/dev/sdf'}

        created = provisioner.create(resource('cache', 'block-volume'), attributes,
                                     threading.Event())
        ready = provisioner.wait_until_ready(created, threading.Event())

        ec2.attach_volume.assert_called_once_with(VolumeId='vol-1', InstanceId='i-1',
                                                  Device='/dev/sdf')
        assert ready.outputs['AttachedInstanceId'] == 'i-1'

    def test_destroy_detaches_first(self, clients, services):
        provisioner = make(VolumeProvisioner, clients)
        services['ec2'] = ec2 = MagicMock()
        ec2.describe_volumes.side_effect = [
            {'Volumes': [{'State': 'in-use', 'Attachments': [{'InstanceId': 'i-1'}]}]},
            {'Volumes': [{'State': 'available'}]},
        ]

        provisioner.destroy(resource('cache', 'block-volume', physical_id='vol-1'))

        names = [call[0] for call in ec2.method_calls]
        assert names.index('detach_volume') < names.index('delete_volume')
