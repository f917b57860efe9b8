"""
Tests for configuration handling in TaskPilot.
"""

import pytest
import yaml
from pathlib import Path

from taskpilot.config.config import Config, EngineConfig
from taskpilot.core.errors import ConfigurationError


class TestConfigLoading:
    """Tests for loading configuration."""

    def test_defaults(self):
        """Test the default configuration values."""
        config = Config()

        assert config.engine.max_retries == 3
        assert config.engine.task_timeout == 300.0
        assert config.resources.max_cache_entries == 1000
        assert config.resources.eviction_target == 0.8
        assert config.scheduler.max_concurrent_workspaces == 2
        assert config.agent.type == 'noop'
        assert config.task_store.patterns == ['.kiro/specs/*/tasks.md', 'specs/*/tasks.md']
        assert config.validate() == []

    def test_load_yaml_file(self, tmp_path):
        """Test loading values from a YAML file."""
        config_file = tmp_path / 'taskpilot.yaml'
        config_file.write_text(yaml.dump({
            'workspaces': [str(tmp_path), {'path': str(tmp_path), 'priority': 9}],
            'engine': {'max_retries': 5, 'continue_on_failure': True},
            'agent': {'type': 'command', 'command': 'run-agent {prompt}'},
        }))

        config = Config.load(config_file)

        assert config.engine.max_retries == 5
        assert config.engine.continue_on_failure is True
        assert config.engine.task_timeout == 300.0
        assert config.agent.command == 'run-agent {prompt}'
        assert config.workspaces[0] == {'path': str(tmp_path)}
        assert config.workspaces[1]['priority'] == 9

    def test_load_from_environment_path(self, tmp_path, monkeypatch):
        """Test that TASKPILOT_CONFIG points at the file to load."""
        config_file = tmp_path / 'custom.yaml'
        config_file.write_text("engine:\n  max_retries: 1\n")
        monkeypatch.setenv('TASKPILOT_CONFIG', str(config_file))

        assert Config.load().engine.max_retries == 1

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test that a missing file is not an error."""
        assert Config.load(tmp_path / 'missing.yaml').engine.max_retries == 3

    def test_empty_file_gives_defaults(self, tmp_path):
        """Test that an empty file is treated as an empty mapping."""
        config_file = tmp_path / 'empty.yaml'
        config_file.write_text('')

        assert Config.load(config_file).agent.type == 'noop'

    def test_invalid_yaml(self, tmp_path):
        """Test that malformed YAML raises ConfigurationError."""
        config_file = tmp_path / 'broken.yaml'
        config_file.write_text("engine: [unclosed\n")

        with pytest.raises(ConfigurationError):
            Config.load(config_file)

    def test_non_mapping(self, tmp_path):
        """Test that a top-level list is rejected."""
        config_file = tmp_path / 'list.yaml'
        config_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match='mapping'):
            Config.load(config_file)

    def test_unknown_section(self):
        """Test that unknown sections are rejected."""
        with pytest.raises(ConfigurationError, match='display'):
            Config.from_dict({'display': {}})

    def test_unknown_option(self):
        """Test that unknown options in a known section are rejected."""
        with pytest.raises(ConfigurationError, match='max_retry'):
            Config.from_dict({'engine': {'max_retry': 2}})

    def test_save_and_reload(self, tmp_path):
        """Test writing the configuration and reading it back."""
        config = Config()
        config.engine.max_retries = 8
        config.workspaces = [{'path': str(tmp_path), 'name': 'ws'}]
        config_file = tmp_path / 'nested' / 'taskpilot.yaml'

        config.save(config_file)
        reloaded = Config.load(config_file)

        assert reloaded.engine.max_retries == 8
        assert reloaded.workspaces == [{'path': str(tmp_path), 'name': 'ws'}]

    def test_default_config_dict(self):
        """Test the sections of the default dictionary."""
        defaults = Config.get_default_config_dict()

        assert set(defaults) == {'workspaces', 'engine', 'task_store', 'resources',
                                 'scheduler', 'agent', 'session', 'logging'}
        assert defaults['engine']['max_retries'] == 3


class TestConfigOverrides:
    """Tests for environment, CLI and dotted overrides."""

    def test_environment_overrides(self, monkeypatch):
        """Test that TASKPILOT_* variables override defaults."""
        monkeypatch.setenv('TASKPILOT_MAX_RETRIES', '7')
        monkeypatch.setenv('TASKPILOT_TASK_TIMEOUT', '12.5')
        monkeypatch.setenv('TASKPILOT_LOG_LEVEL', 'DEBUG')

        config = Config()

        assert config.engine.max_retries == 7
        assert config.engine.task_timeout == 12.5
        assert config.logging.level == 'DEBUG'
        assert config.get_env_overrides()['engine.max_retries'] == '7'

    def test_agent_command_from_environment(self, monkeypatch):
        """Test that an agent command in the environment selects the command agent."""
        monkeypatch.setenv('TASKPILOT_AGENT_COMMAND', 'agent --prompt {prompt}')

        config = Config()

        assert config.agent.type == 'command'
        assert config.agent.command == 'agent --prompt {prompt}'

    def test_environment_beats_file(self, tmp_path, monkeypatch):
        """Test precedence of environment variables over file values."""
        config_file = tmp_path / 'taskpilot.yaml'
        config_file.write_text("engine:\n  max_retries: 5\n")
        monkeypatch.setenv('TASKPILOT_MAX_RETRIES', '2')

        assert Config.load(config_file).engine.max_retries == 2

    def test_cli_overrides(self):
        """Test applying command line options."""
        config = Config()

        config.apply_cli_overrides({
            'max_retries': 0,
            'task_timeout': 10,
            'continue_on_failure': True,
            'skip_optional': True,
            'agent_command': 'agent {prompt}',
            'max_concurrent': 4,
        })

        assert config.engine.max_retries == 0
        assert config.engine.task_timeout == 10
        assert config.engine.continue_on_failure
        assert config.engine.skip_optional_tasks
        assert config.agent.type == 'command'
        assert config.scheduler.max_concurrent_workspaces == 4

    @pytest.mark.parametrize("option, raw, expected", [
        ('engine.max_retries', '4', 4),
        ('engine.task_timeout', '2.5', 2.5),
        ('engine.continue_on_failure', 'yes', True),
        ('engine.exponential_backoff', 'off', False),
        ('task_store.patterns', 'a/*.md, b/*.md', ['a/*.md', 'b/*.md']),
        ('agent.command', 'run {prompt}', 'run {prompt}'),
    ])
    def test_set_option_coercion(self, option, raw, expected):
        """Test that string values are converted to the option's type."""
        config = Config()

        config.set_option(option, raw)

        assert config.get_option(option) == expected

    def test_set_option_bad_value(self):
        """Test that an unconvertible value is rejected."""
        with pytest.raises(ConfigurationError):
            Config().set_option('engine.max_retries', 'many')
        with pytest.raises(ConfigurationError):
            Config().set_option('engine.continue_on_failure', 'maybe')

    def test_unknown_dotted_option(self):
        """Test that unknown dotted options are rejected."""
        with pytest.raises(ConfigurationError):
            Config().get_option('engine.nope')
        with pytest.raises(ConfigurationError):
            Config().get_option('workspaces')


class TestConfigValidation:
    """Tests for configuration validation."""

    def test_invalid_values(self):
        """Test that out-of-range values are reported."""
        config = Config()
        config.engine.max_retries = -1
        config.engine.task_timeout = 0
        config.resources.eviction_target = 1.5
        config.scheduler.max_concurrent_workspaces = 0
        config.logging.level = 'LOUD'

        errors = config.validate()

        assert "Engine max retries must not be negative" in errors
        assert "Engine task timeout must be positive" in errors
        assert "Eviction target must be between 0 and 1" in errors
        assert "Max concurrent workspaces must be at least 1" in errors
        assert any('LOUD' in error for error in errors)

    def test_command_agent_needs_prompt_placeholder(self):
        """Test validation of the agent command template."""
        config = Config()
        config.agent.type = 'command'
        assert "Agent command is required when agent type is 'command'" in config.validate()

        config.agent.command = 'agent --go'
        assert "Agent command must include the {prompt} placeholder" in config.validate()

    def test_missing_workspace_path(self, tmp_path):
        """Test that workspace directories must exist."""
        config = Config(workspaces=[{'path': str(tmp_path / 'missing')}, {'name': 'nameless'}])

        errors = config.validate()

        assert any('does not exist' in error for error in errors)
        assert "Workspace 1 has no path" in errors

    def test_workspace_entries(self, tmp_path):
        """Test that workspace entries get defaults filled in."""
        config = Config(workspaces=[{'path': str(tmp_path)}, {'path': str(tmp_path), 'name': 'x', 'priority': 9}])

        entries = config.workspace_entries()

        assert entries[0]['name'] == Path(tmp_path).resolve().name
        assert entries[0]['priority'] == 5
        assert entries[0]['max_memory_mb'] == 100.0
        assert entries[1]['name'] == 'x'
        assert entries[1]['priority'] == 9

    def test_engine_config_is_independent(self):
        """Test that section instances are not shared between configs."""
        first = Config()
        first.engine.max_retries = 9

        assert Config().engine.max_retries == EngineConfig().max_retries
