"""Shared fixtures: an in-memory cloud and provisioners that act on it."""

import itertools
import threading
import time

import pytest

from s3nfs_deploy.config.models import GatewayVariables
from s3nfs_deploy.provisioners import PROVISIONER_CLASSES
from s3nfs_deploy.provisioners.base import BaseProvisioner
from s3nfs_deploy.state.models import State
from s3nfs_deploy.topology.builder import TopologyBuilder
from s3nfs_deploy.utils.errors import ApplyCancelledError
from s3nfs_deploy.utils.retry import RetryStrategy


class FakeCloud:
    """Records every provider call made by FakeProvisioner instances."""

    def __init__(self):
        self.lock = threading.Lock()
        self.objects = {}
        self.calls = []
        self.counter = itertools.count(1)
        self.fail_create = {}
        self.fail_ready = {}
        self.fail_destroy = {}
        self.block_ready = set()
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def record(self, operation, resource_id):
        with self.lock:
            self.calls.append(f"{operation}:{resource_id}")

    def enter(self):
        with self.lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def leave(self):
        with self.lock:
            self.in_flight -= 1

    def index(self, call):
        return self.calls.index(call)

    def calls_for(self, operation):
        return [call.split(':', 1)[1] for call in self.calls if call.startswith(operation + ':')]


class FakeProvisioner(BaseProvisioner):
    """Provisioner backed by FakeCloud, with configurable change policy."""

    def __init__(self, resource_type, cloud, mutable_attributes=frozenset(), allows_overlap=True):
        super().__init__(retry_strategy=RetryStrategy(max_retries=0, sleep=lambda s: None))
        self.resource_type = resource_type
        self.mutable_attributes = frozenset(mutable_attributes)
        self.allows_overlap = allows_overlap
        self.cloud = cloud

    def create(self, resource, attributes, cancel_event):
        self.cloud.enter()
        try:
            self.cloud.record('create', resource.id)
            if resource.id in self.cloud.fail_create:
                raise self.cloud.fail_create[resource.id]
            if self.cloud.delay:
                time.sleep(self.cloud.delay)
            physical_id = f"{self.resource_type}-{next(self.cloud.counter)}"
            resource.physical_id = physical_id
            resource.outputs = {
                'Arn': f"arn:fake:{physical_id}",
                'PrivateIpAddress': '10.0.0.10',
                'AvailabilityZone': 'us-east-1a',
                'DnsName': f"{physical_id}.vpce.example",
                'Path': '/uploads-bucket',
            }
            resource.metadata['attributes'] = attributes
            with self.cloud.lock:
                self.cloud.objects[physical_id] = resource.id
            return resource
        finally:
            self.cloud.leave()

    def wait_until_ready(self, resource, cancel_event):
        self.cloud.record('wait', resource.id)
        if resource.id in self.cloud.block_ready:
            cancel_event.wait(5)
            raise ApplyCancelledError(f"Cancelled while waiting for {resource.id}")
        if resource.id in self.cloud.fail_ready:
            raise self.cloud.fail_ready[resource.id]
        return resource

    def update(self, current, desired, attributes, changed):
        self.cloud.record('update', current.id)
        desired.physical_id = current.physical_id
        desired.outputs = dict(current.outputs)
        desired.metadata['attributes'] = attributes
        return desired

    def destroy(self, resource):
        self.cloud.record('destroy', resource.id)
        if resource.id in self.cloud.fail_destroy:
            raise self.cloud.fail_destroy[resource.id]
        with self.cloud.lock:
            self.cloud.objects.pop(resource.physical_id, None)

    def read(self, resource):
        self.cloud.record('read', resource.id)
        if resource.physical_id not in self.cloud.objects:
            return None
        return resource.model_copy(deep=True)


def fake_registry(cloud, extra_types=()):
    """Fake provisioners with the same change policy as the AWS ones."""
    registry = {
        cls.resource_type: FakeProvisioner(
            cls.resource_type, cloud, cls.mutable_attributes, cls.allows_overlap
        )
        for cls in PROVISIONER_CLASSES
    }
    for resource_type in extra_types:
        registry[resource_type] = FakeProvisioner(resource_type, cloud)
    return registry


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def provisioners(cloud):
    return fake_registry(cloud, extra_types=('thing',))


@pytest.fixture
def variables():
    return GatewayVariables(
        vpc_id='vpc-0abc1234',
        subnet_id='subnet-0def5678',
        subnet_cidr='10.0.0.0/16',
        bucket_name='uploads-bucket',
        tags={'team': 'storage'},
    )


@pytest.fixture
def topology(variables):
    return TopologyBuilder(variables, 'us-east-1', project_name='demo', environment='test').build()


@pytest.fixture
def empty_state():
    return State(project_name='demo', environment='test', region='us-east-1')


CONFIG_YAML = """\
project:
  name: demo
  region: us-east-1

variables:
  vpc_id: vpc-0abc1234
  subnet_id: subnet-0def5678
  subnet_cidr: 10.0.0.0/16
  bucket_name: uploads-bucket

environments:
  staging:
    account: "123456789012"
    variables:
      instance_type: m5.2xlarge
  production:
    region: eu-west-1
    profile: prod

settings:
  parallelism: 3
  apply_timeout: 1800
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 's3nfs.yaml'
    path.write_text(CONFIG_YAML)
    return path
