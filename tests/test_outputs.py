import pytest

from s3nfs_deploy.outputs import OutputProjector
from s3nfs_deploy.state.models import Resource, State
from s3nfs_deploy.topology.builder import GATEWAY_APPLIANCE, NFS_FILE_SHARE
from s3nfs_deploy.utils.errors import OutputNotMaterializedError


def state_with(*resources):
    state = State(project_name='demo', environment='test', region='us-east-1')
    for resource in resources:
        state.add_resource(resource)
    return state


def appliance(**outputs):
    return Resource(id=GATEWAY_APPLIANCE, type='compute-instance', physical_id='i-0abc',
                    outputs=outputs)


def share(**outputs):
    return Resource(id=NFS_FILE_SHARE, type='file-share', physical_id='arn:share', outputs=outputs)


def test_outputs_of_a_complete_deployment():
    outputs = OutputProjector(state_with(
        appliance(PrivateIpAddress='10.0.1.25'), share(Path='/uploads-bucket')
    ))

    assert outputs['gateway_ip'] == '10.0.1.25'
    assert outputs['mount_command'] == (
        'sudo mount -t nfs -o nolock,hard 10.0.1.25:/uploads-bucket [MountPath]'
    )
    assert outputs.available() == dict(outputs)


def test_nothing_deployed():
    outputs = OutputProjector(state_with())

    with pytest.raises(OutputNotMaterializedError, match='has not been created'):
        outputs['gateway_ip']
    assert outputs.available() == {}


def test_mount_command_requires_the_share():
    outputs = OutputProjector(state_with(appliance(PrivateIpAddress='10.0.1.25')))

    assert outputs['gateway_ip'] == '10.0.1.25'
    with pytest.raises(OutputNotMaterializedError) as excinfo:
        outputs['mount_command']
    assert excinfo.value.context.resource_id == NFS_FILE_SHARE
    assert outputs.available() == {'gateway_ip': '10.0.1.25'}


def test_tainted_source_is_not_published():
    tainted = appliance(PrivateIpAddress='10.0.1.25')
    tainted.mark_tainted('never reached running')

    with pytest.raises(OutputNotMaterializedError, match='tainted'):
        OutputProjector(state_with(tainted))['gateway_ip']


def test_share_without_path():
    outputs = OutputProjector(state_with(appliance(PrivateIpAddress='10.0.1.25'), share()))

    with pytest.raises(OutputNotMaterializedError, match='Path'):
        outputs['mount_command']


def test_unknown_output_name():
    with pytest.raises(KeyError):
        OutputProjector(state_with())['bucket_url']


def test_names_and_descriptions():
    outputs = OutputProjector(state_with())

    assert list(outputs) == ['gateway_ip', 'mount_command']
    assert len(outputs) == 2
    assert 'mount' in outputs.describe('mount_command')
