import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import CONFIG_YAML
from s3nfs_deploy.cli.main import cli
from s3nfs_deploy.orchestrator import DeploymentOrchestrator


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('COLUMNS', '200')
    Path('s3nfs.yaml').write_text(CONFIG_YAML)
    return CliRunner()


@pytest.fixture
def fake_aws(monkeypatch, provisioners):
    """Route every orchestrator built by the CLI to the in-memory cloud."""
    monkeypatch.setattr(
        's3nfs_deploy.cli.common.DeploymentOrchestrator',
        lambda config: DeploymentOrchestrator(config, provisioners=provisioners),
    )


def invoke(runner, *args, **kwargs):
    return runner.invoke(cli, list(args), obj={}, **kwargs)


def test_validate(runner):
    result = invoke(runner, 'validate')

    assert result.exit_code == 0
    assert 'Configuration is valid' in result.output
    assert '11 resources' in result.output


def test_validate_json(runner):
    result = invoke(runner, 'validate', '--json-output')

    assert result.exit_code == 0
    assert '"valid": true' in result.output
    assert '"nfs-file-share"' in result.output


def test_validate_reports_every_error(runner):
    Path('s3nfs.yaml').write_text(
        "project: {name: demo, region: us-east-1}\n"
        "variables:\n"
        "  vpc_id: nope\n"
        "  subnet_id: subnet-0def5678\n"
        "  subnet_cidr: not-a-cidr\n"
        "  bucket_name: uploads-bucket\n"
    )

    result = invoke(runner, '--log-level', 'error', 'validate', '--json-output')

    assert result.exit_code == 1
    errors = json.loads(result.output)['errors']
    assert {tuple(error['loc']) for error in errors} >= {
        ('variables', 'vpc_id'), ('variables', 'subnet_cidr')
    }


def test_bad_var_override(runner):
    result = invoke(runner, '--var', 'instance_type', 'validate')

    assert result.exit_code == 1


def test_graph_dot(runner):
    result = invoke(runner, 'graph', '--format', 'dot')

    assert result.exit_code == 0
    assert '"nfs-file-share" -> "storage-gateway";' in result.output
    assert '"storage-gateway" -> "gateway-appliance";' in result.output


def test_graph_waves(runner):
    result = invoke(runner, 'graph', '--format', 'waves')

    assert result.exit_code == 0
    first_wave = next(line for line in result.output.splitlines() if line.startswith('Wave 1:'))
    assert 'gateway-sg' in first_wave
    assert 'storage-gateway' not in first_wave


def test_plan_on_fresh_state(runner, fake_aws, cloud):
    result = invoke(runner, 'plan')

    assert result.exit_code == 0
    assert '11 to create' in result.output
    assert cloud.calls == []


def test_apply_declined(runner, fake_aws, cloud):
    result = invoke(runner, 'apply', input='n\n')

    assert result.exit_code == 0
    assert 'Apply cancelled' in result.output
    assert cloud.calls == []
    assert not Path('.s3nfs/state/demo/default.json').exists()


def test_apply_then_output(runner, fake_aws, cloud):
    applied = invoke(runner, 'apply', '--yes')

    assert applied.exit_code == 0
    assert 'gateway_ip = 10.0.0.10' in applied.output
    assert Path('.s3nfs/state/demo/default.json').exists()

    single = invoke(runner, '--log-level', 'error', 'output', 'gateway_ip')
    assert single.exit_code == 0
    assert single.output.strip() == '10.0.0.10'

    as_json = invoke(runner, '--log-level', 'error', 'output', '--format', 'json')
    assert json.loads(as_json.output)['gateway_ip'] == '10.0.0.10'

    again = invoke(runner, 'plan')
    assert 'No changes' in again.output


def test_output_before_apply(runner, fake_aws):
    result = invoke(runner, 'output', 'mount_command')

    assert result.exit_code == 1
    assert 'has not been created' in result.output


def test_unknown_output(runner, fake_aws):
    result = invoke(runner, 'output', 'bucket_url')

    assert result.exit_code == 1
    assert 'gateway_ip' in result.output


def test_destroy(runner, fake_aws, cloud):
    invoke(runner, 'apply', '--yes')

    result = invoke(runner, 'destroy', '--yes')

    assert result.exit_code == 0
    assert cloud.objects == {}
    state = json.loads(Path('.s3nfs/state/demo/default.json').read_text())
    assert state['resources'] == {}


def test_destroy_with_nothing_deployed(runner, fake_aws):
    result = invoke(runner, 'destroy', '--yes')

    assert result.exit_code == 0
    assert 'No deployed resources found' in result.output


def test_refresh(runner, fake_aws, cloud):
    invoke(runner, 'apply', '--yes')
    cloud.objects.clear()

    result = invoke(runner, 'refresh')

    assert result.exit_code == 0
    assert 'Refreshed 0 resources' in result.output
    assert 'dropped' in result.output
