"""
Tests for the DocJobs command-line interface
"""

import json

import pytest
from click.testing import CliRunner

from conftest import config_dict, make_registry
from docjobs import DocJobs
from docjobs.cli import cli
from docjobs.config import DocJobsConfig


def registry_factory():
    """Loaded by the worker command as test_cli:registry_factory"""
    return make_registry()


@pytest.fixture
def config_path(tmp_path):
    settings = config_dict(tmp_path)
    # Keep log lines out of the JSON printed by the commands
    settings['logging'] = {'file': str(tmp_path / 'docjobs.log')}
    return str(DocJobsConfig.from_dict(settings).save(tmp_path / 'docjobs.yaml'))


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, config_path, *args):
    return runner.invoke(cli, ['--config', config_path, *args], catch_exceptions=False)


class TestCli:

    def test_init_writes_config(self, runner, config_path, tmp_path):
        output = tmp_path / 'new' / 'config.yaml'
        result = invoke(runner, config_path, 'init', '--output', str(output),
                        '--db-path', str(tmp_path / 'other.db'), '--log-level', 'DEBUG')
        assert result.exit_code == 0, result.output
        assert 'Database initialized' in result.output
        assert (tmp_path / 'other.db').exists()
        assert DocJobsConfig.from_file(str(output)).get('logging.level') == 'DEBUG'

    def test_account_lifecycle(self, runner, config_path):
        result = invoke(runner, config_path, 'account', 'create', '--id', 'acc_cli', '--tier', 'starter')
        assert result.exit_code == 0, result.output
        assert 'Created account acc_cli (STARTER, 100 credits)' in result.output

        result = runner.invoke(cli, ['--config', config_path, 'account', 'create', '--id', 'acc_cli'])
        assert result.exit_code != 0
        assert 'already exists' in result.output

        result = invoke(runner, config_path, 'account', 'show', 'acc_cli')
        summary = json.loads(result.output)
        assert summary['tier'] == 'STARTER'
        assert summary['credits_remaining'] == 100

        result = invoke(runner, config_path, 'account', 'set-tier', 'acc_cli', 'PROFESSIONAL')
        assert result.exit_code == 0
        assert '500 credits' in result.output

        result = invoke(runner, config_path, 'account', 'reset', 'acc_cli')
        assert 'Credits reset for acc_cli' in result.output

        result = invoke(runner, config_path, 'account', 'deactivate', 'acc_cli')
        assert result.exit_code == 0

    def test_unknown_account(self, runner, config_path):
        result = runner.invoke(cli, ['--config', config_path, 'account', 'show', 'acc_missing'])
        assert result.exit_code != 0
        assert 'Account not found' in result.output

        result = runner.invoke(cli, ['--config', config_path, 'account', 'set-tier', 'acc_missing', 'FREE'])
        assert result.exit_code != 0

    def test_worker_once_and_job_commands(self, runner, config_path):
        service = DocJobs.setup(DocJobsConfig.from_file(config_path))
        try:
            account_id = service.orchestrator.accounts.create_account('STARTER').id
            job_id = service.orchestrator.submit(account_id, 'compress', b'%PDF-1.7 cli')
        finally:
            service.close()

        result = invoke(runner, config_path, 'stats')
        assert json.loads(result.output)['by_state'] == {'pending': 1}

        result = invoke(runner, config_path, 'worker', '--transform', 'test_cli:registry_factory', '--once')
        assert result.exit_code == 0, result.output
        assert 'Executed 1 jobs' in result.output

        result = invoke(runner, config_path, 'job', 'show', job_id)
        view = json.loads(result.output)
        assert view['state'] == 'completed'
        assert view['credits_charged'] == 1

        result = invoke(runner, config_path, 'job', 'cancel', job_id)
        assert 'cannot be cancelled' in result.output

    def test_worker_with_bad_transform(self, runner, config_path):
        result = runner.invoke(cli, ['--config', config_path, 'worker', '--transform', 'no_such_module:thing'])
        assert result.exit_code != 0
        assert 'Could not load transform' in result.output

    def test_maintenance_commands(self, runner, config_path):
        result = invoke(runner, config_path, 'sweep')
        assert 'Requeued 0 jobs, failed 0 jobs' in result.output

        result = invoke(runner, config_path, 'cleanup', '--limit', '10')
        assert 'Deleted 0 expired jobs' in result.output

        result = invoke(runner, config_path, 'cleanup', '--older-than-days', '30')
        assert 'Deleted 0 finished jobs' in result.output
