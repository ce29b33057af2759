"""
tests/test_gcloud_lister.py - GcloudLister command construction and failure handling
"""

import json
import subprocess

import pytest

from resource_count_gcp import GcloudLister, resource_types


class FakeRunner:
    """Record gcloud invocations and answer with a canned CompletedProcess"""

    def __init__(self, stdout='[]', returncode=0, stderr='', raises=None):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.raises = raises
        self.commands = []
        self.kwargs = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        self.kwargs.append(kwargs)
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(command, self.returncode, stdout=self.stdout, stderr=self.stderr)


class TestGcloudCommands:
    """gcloud command lines"""

    def test_compute_filters_running_instances(self):
        runner = FakeRunner()
        GcloudLister(runner=runner).compute_instances('proj-a')
        assert runner.commands[0] == [
            'gcloud', 'compute', 'instances', 'list', '--filter=status:(RUNNING)',
            '--project', 'proj-a', '--verbosity', 'critical', '--quiet', '--format', 'json',
        ]

    def test_bigquery_uses_alpha_surface(self):
        runner = FakeRunner()
        GcloudLister(runner=runner).bigquery_datasets('proj-a')
        assert runner.commands[0][:5] == ['gcloud', 'alpha', 'bq', 'datasets', 'list']

    def test_storage_uses_storage_ls(self):
        runner = FakeRunner()
        GcloudLister(runner=runner).storage_buckets('proj-a')
        assert runner.commands[0][:3] == ['gcloud', 'storage', 'ls']

    @pytest.mark.parametrize('key', list(resource_types))
    def test_every_resource_type_is_project_scoped_json(self, key):
        runner = FakeRunner()
        getattr(GcloudLister(runner=runner), key)('proj-x')
        command = runner.commands[0]
        assert command[command.index('--project') + 1] == 'proj-x'
        assert command[-2:] == ['--format', 'json']

    def test_verbose_verbosity_args(self, capsys):
        runner = FakeRunner()
        GcloudLister(verbose=True, runner=runner).redis_instances('proj-a')
        command = runner.commands[0]
        assert '--verbosity' in command
        assert command[command.index('--verbosity') + 1] == 'error'
        assert '--quiet' not in command
        assert 'DEBUG: command: gcloud redis instances list' in capsys.readouterr().out

    def test_stdin_closed_and_output_captured(self):
        runner = FakeRunner()
        GcloudLister(runner=runner).spanner_instances('proj-a')
        kwargs = runner.kwargs[0]
        assert kwargs['stdin'] is subprocess.DEVNULL
        assert kwargs['capture_output'] is True
        assert kwargs['check'] is False


class TestGcloudResults:
    """gcloud output handling"""

    def test_parses_json_listing(self):
        runner = FakeRunner(stdout=json.dumps([{'name': 'db-1'}, {'name': 'db-2'}]))
        assert GcloudLister(runner=runner).sql_instances('proj-a') == [{'name': 'db-1'}, {'name': 'db-2'}]

    def test_empty_output_is_empty_listing(self):
        runner = FakeRunner(stdout='')
        assert GcloudLister(runner=runner).memcache_instances('proj-a') == []

    def test_non_zero_exit_is_none_and_quiet(self, capsys):
        runner = FakeRunner(returncode=1, stderr='API [redis.googleapis.com] not enabled')
        lister = GcloudLister(runner=runner)

        assert lister.redis_instances('proj-a') is None
        assert capsys.readouterr().out == ''
        assert len(lister.errors) == 1
        assert 'Project: proj-a' in lister.errors[0]
        assert 'not enabled' in lister.errors[0]

    def test_non_zero_exit_printed_in_verbose_mode(self, capsys):
        runner = FakeRunner(returncode=1, stderr='PERMISSION_DENIED\nmore detail')
        lister = GcloudLister(verbose=True, runner=runner)

        assert lister.firestore_databases('proj-a') is None
        out = capsys.readouterr().out
        assert 'ERROR: Project: proj-a' in out
        assert 'PERMISSION_DENIED more detail' in out

    def test_invalid_json_is_none(self):
        lister = GcloudLister(runner=FakeRunner(stdout='not json'))
        assert lister.bigtable_instances('proj-a') is None
        assert len(lister.errors) == 1

    def test_missing_executable_is_none(self):
        lister = GcloudLister(runner=FakeRunner(raises=FileNotFoundError('gcloud')))
        assert lister.filestore_instances('proj-a') is None
        assert len(lister.errors) == 1

    def test_one_failure_does_not_affect_siblings(self):
        lister = GcloudLister(runner=FakeRunner(returncode=1))
        assert lister.compute_instances('proj-a') is None
        lister.runner = FakeRunner(stdout='[{"name": "bucket"}]')
        assert lister.storage_buckets('proj-a') == [{'name': 'bucket'}]


class TestGcloudProjects:
    """gcloud projects list"""

    def test_project_ids_in_listing_order(self):
        runner = FakeRunner(stdout=json.dumps([{'projectId': 'proj-b'}, {'projectId': 'proj-a'}]))
        assert GcloudLister(runner=runner).projects() == ['proj-b', 'proj-a']
        assert runner.commands[0] == ['gcloud', 'projects', 'list', '--format', 'json']

    def test_failure_yields_no_projects(self):
        runner = FakeRunner(returncode=1, stderr='not authenticated')
        assert GcloudLister(runner=runner).projects() == []
