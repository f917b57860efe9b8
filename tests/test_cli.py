"""
Tests for the TaskPilot command line interface.
"""

import json
import click
import pytest
import yaml
from click.testing import CliRunner

from taskpilot.__version__ import __version__
from taskpilot.cli import _parse_priorities, cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run commands from an empty directory with sessions kept under tmp_path."""
    cwd = tmp_path / 'cwd'
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    monkeypatch.setenv('TASKPILOT_STATE_DIR', str(tmp_path / 'state'))
    return cwd


class TestCliGroup:
    """Tests for the top-level command group."""

    def test_version(self, runner):
        """Test the version flag."""
        result = runner.invoke(cli, ['--version'])

        assert result.exit_code == 0
        assert f"TaskPilot v{__version__}" in result.output

    def test_help_without_command(self, runner):
        """Test that the help text is shown without a subcommand."""
        result = runner.invoke(cli, [])

        assert result.exit_code == 0
        assert 'run-all' in result.output
        assert 'status' in result.output

    def test_parse_priorities(self):
        """Test WORKSPACE=N priority options."""
        assert _parse_priorities(('api=9', 'web=1')) == {'api': 9, 'web': 1}
        with pytest.raises(click.BadParameter):
            _parse_priorities(('api',))
        with pytest.raises(click.BadParameter):
            _parse_priorities(('api=high',))


class TestParseCommand:
    """Tests for the parse command."""

    def test_parse_to_json_file(self, runner, isolated, tasks_file, tmp_path):
        """Test writing parsed tasks as JSON."""
        output = tmp_path / 'tasks.json'

        result = runner.invoke(cli, ['parse', str(tasks_file), '--format', 'json', '-o', str(output)])

        assert result.exit_code == 0
        data = json.loads(output.read_text())
        assert [task['key'] for task in data['tasks']] == ['demo:1', 'demo:2', 'demo:3']
        assert data['tasks'][1]['dependencies'] == ['1']
        assert data['tasks'][1]['subtasks'][1]['optional'] is True

    def test_parse_to_yaml_file(self, runner, isolated, tasks_file, tmp_path):
        """Test writing parsed tasks as YAML."""
        output = tmp_path / 'tasks.yaml'

        result = runner.invoke(cli, ['parse', str(tasks_file), '--format', 'yaml', '-o', str(output)])

        assert result.exit_code == 0
        data = yaml.safe_load(output.read_text())
        assert data['tasks'][0]['title'] == 'Set up project structure'

    def test_parse_table(self, runner, isolated, tasks_file):
        """Test the default table output."""
        result = runner.invoke(cli, ['parse', str(tasks_file)])

        assert result.exit_code == 0
        assert 'demo:1' in result.output

    def test_parse_error(self, runner, isolated, tmp_path):
        """Test that a malformed document gives a non-zero exit code."""
        document = tmp_path / 'tasks.md'
        document.write_text("- [ ] 1. First\n- [ ] 1. Duplicate\n")

        result = runner.invoke(cli, ['parse', str(document)])

        assert result.exit_code == 1


class TestConfigCommand:
    """Tests for the config command."""

    def test_set_and_get(self, runner, isolated, tmp_path):
        """Test writing an option and reading it back."""
        config_path = tmp_path / 'taskpilot.yaml'

        result = runner.invoke(cli, ['config', '-c', str(config_path), '--set', 'engine.max_retries', '5'])
        assert result.exit_code == 0
        assert yaml.safe_load(config_path.read_text())['engine']['max_retries'] == 5

        result = runner.invoke(cli, ['config', '-c', str(config_path), '--get', 'engine.max_retries'])
        assert result.exit_code == 0
        assert 'engine.max_retries = 5' in result.output

    def test_unknown_option(self, runner, isolated, tmp_path):
        """Test that unknown options are rejected."""
        config_path = tmp_path / 'taskpilot.yaml'

        result = runner.invoke(cli, ['config', '-c', str(config_path), '--get', 'engine.turbo'])

        assert result.exit_code == 1

    def test_list(self, runner, isolated, tmp_path):
        """Test listing every section."""
        result = runner.invoke(cli, ['config', '-c', str(tmp_path / 'taskpilot.yaml'), '--list'])

        assert result.exit_code == 0
        assert '[engine]' in result.output
        assert 'max_retries = 3' in result.output

    def test_validate_invalid_file(self, runner, isolated, tmp_path):
        """Test that validation reports bad values."""
        config_path = tmp_path / 'taskpilot.yaml'
        config_path.write_text(yaml.safe_dump({'engine': {'max_retries': -1}}))

        result = runner.invoke(cli, ['config', '-c', str(config_path), '--validate'])

        assert result.exit_code == 1

    def test_reset(self, runner, isolated, tmp_path):
        """Test restoring the defaults."""
        config_path = tmp_path / 'taskpilot.yaml'
        config_path.write_text(yaml.safe_dump({'engine': {'max_retries': 7}}))

        result = runner.invoke(cli, ['config', '-c', str(config_path), '--reset'])

        assert result.exit_code == 0
        assert yaml.safe_load(config_path.read_text())['engine']['max_retries'] == 3


class TestInitCommand:
    """Tests for the init command."""

    def test_init_writes_config(self, runner, isolated, workspace):
        """Test creating a configuration that lists the workspace."""
        result = runner.invoke(cli, ['init', str(workspace)])

        assert result.exit_code == 0
        data = yaml.safe_load((workspace / 'taskpilot.yaml').read_text())
        assert data['workspaces'][0]['path'] == str(workspace)
        assert 'Found 1 task documents' in result.output

    def test_init_refuses_to_overwrite(self, runner, isolated, workspace):
        """Test that an existing file needs --force."""
        (workspace / 'taskpilot.yaml').write_text('engine: {}\n')

        assert runner.invoke(cli, ['init', str(workspace)]).exit_code == 1
        assert runner.invoke(cli, ['init', str(workspace), '--force']).exit_code == 0
        assert 'workspaces' in (workspace / 'taskpilot.yaml').read_text()


class TestWorkspaceCommands:
    """Tests for commands that operate on a workspace."""

    def test_status_json(self, runner, isolated, workspace, tmp_path):
        """Test the JSON status of a fresh workspace."""
        result = runner.invoke(cli, ['status', str(workspace), '--format', 'json'])

        assert result.exit_code == 0
        assert str(workspace) in result.output
        assert 'demo:3' in result.output

    def test_status_table(self, runner, isolated, workspace):
        """Test the table status of a fresh workspace."""
        result = runner.invoke(cli, ['status', str(workspace)])

        assert result.exit_code == 0
        assert 'demo:2' in result.output

    def test_next(self, runner, isolated, workspace):
        """Test showing the first ready task."""
        result = runner.invoke(cli, ['next', str(workspace)])

        assert result.exit_code == 0
        assert 'demo:1' in result.output
        assert 'Set up project structure' in result.output

    def test_next_with_prompt(self, runner, isolated, workspace):
        """Test printing the rendered prompt."""
        result = runner.invoke(cli, ['next', str(workspace), '--prompt'])

        assert result.exit_code == 0
        assert 'Task: 1 - Set up project structure' in result.output

    def test_dry_run_completes_workspace(self, runner, isolated, workspace, tasks_file):
        """Test a full dry run followed by status queries."""
        result = runner.invoke(cli, ['run', str(workspace), '--dry-run'])

        assert result.exit_code == 0
        content = tasks_file.read_text()
        assert '- [x] 1. Set up project structure' in content
        assert '- [x] 3. Wire everything together' in content

        result = runner.invoke(cli, ['next', str(workspace)])
        assert result.exit_code == 1
        assert 'No task is ready' in result.output

        result = runner.invoke(cli, ['session', str(workspace)])
        assert result.exit_code == 0
        assert 'No persisted session' in result.output

        result = runner.invoke(cli, ['session', str(workspace), '--history'])
        assert result.exit_code == 0
        assert 'No session history' not in result.output

    def test_run_all_dry_run(self, runner, isolated, workspace, tmp_path, sample_tasks_content):
        """Test running two workspaces concurrently."""
        from conftest import write_spec

        other = tmp_path / 'other'
        other.mkdir()
        document = write_spec(other, 'shop', sample_tasks_content)

        result = runner.invoke(cli, ['run-all', str(workspace), str(other), '--dry-run',
                                     '--max-concurrent', '2'])

        assert result.exit_code == 0
        assert '- [x] 2. Implement data models' in document.read_text()

    def test_run_all_without_workspaces(self, runner, isolated):
        """Test that run-all needs workspaces."""
        result = runner.invoke(cli, ['run-all'])

        assert result.exit_code == 1

    def test_retry_without_session(self, runner, isolated, workspace):
        """Test that retry needs a persisted session."""
        result = runner.invoke(cli, ['retry', str(workspace), 'demo:1'])

        assert result.exit_code == 1
        assert 'No persisted session' in result.output
