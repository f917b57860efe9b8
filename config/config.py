"""
Configuration management for TaskPilot.

This module provides classes and methods for loading, validating,
and managing application configuration with CLI integration support.
"""

import yaml
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, asdict, field, fields
from .settings import Settings
from ..core.errors import ConfigurationError


@dataclass
class EngineConfig:
    """Configuration for the automation engine."""
    max_retries: int = Settings.DEFAULT_MAX_RETRIES
    task_timeout: float = Settings.DEFAULT_TASK_TIMEOUT  # seconds
    task_delay: float = 0.0  # seconds between tasks
    skip_optional_tasks: bool = False
    continue_on_failure: bool = False
    checkpoint_interval: float = Settings.DEFAULT_CHECKPOINT_INTERVAL  # seconds
    retry_base_delay_ms: int = Settings.DEFAULT_RETRY_BASE_DELAY_MS
    retry_max_delay_ms: int = Settings.DEFAULT_RETRY_MAX_DELAY_MS
    retry_multiplier: float = Settings.DEFAULT_RETRY_MULTIPLIER
    exponential_backoff: bool = True


@dataclass
class TaskStoreConfig:
    """Configuration for task document discovery and watching."""
    patterns: List[str] = field(default_factory=lambda: list(Settings.DEFAULT_TASK_PATTERNS))
    debounce_ms: int = Settings.DEFAULT_DEBOUNCE_MS
    watch: bool = False


@dataclass
class ResourcesConfig:
    """Configuration for the shared resource manager."""
    max_cache_entries: int = Settings.DEFAULT_MAX_CACHE_ENTRIES
    max_cache_size_mb: float = Settings.DEFAULT_MAX_CACHE_SIZE_MB
    cache_ttl: float = Settings.DEFAULT_CACHE_TTL  # seconds
    eviction_target: float = 0.8  # fraction of max_cache_entries kept after eviction
    cleanup_interval: float = Settings.DEFAULT_CLEANUP_INTERVAL  # seconds
    memory_sample_interval: float = Settings.DEFAULT_MEMORY_SAMPLE_INTERVAL  # seconds
    memory_samples: int = Settings.DEFAULT_MEMORY_SAMPLES
    leak_threshold_mb_per_min: float = Settings.DEFAULT_LEAK_THRESHOLD


@dataclass
class SchedulerConfig:
    """Configuration for concurrent workspace scheduling."""
    max_concurrent_workspaces: int = Settings.DEFAULT_MAX_CONCURRENT_WORKSPACES
    default_priority: int = Settings.DEFAULT_WORKSPACE_PRIORITY
    default_memory_mb: float = Settings.DEFAULT_WORKSPACE_MEMORY_MB


@dataclass
class AgentConfig:
    """Configuration for the agent that performs tasks."""
    type: str = "noop"
    command: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    prompt_template: Optional[str] = None
    max_prompt_length: int = 10000


@dataclass
class SessionConfig:
    """Configuration for session persistence."""
    state_dir: str = Settings.DEFAULT_STATE_DIR
    history_size: int = Settings.SESSION_HISTORY_SIZE


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = Settings.DEFAULT_LOG_LEVEL
    file: Optional[str] = None


_SECTIONS = {
    'engine': EngineConfig,
    'task_store': TaskStoreConfig,
    'resources': ResourcesConfig,
    'scheduler': SchedulerConfig,
    'agent': AgentConfig,
    'session': SessionConfig,
    'logging': LoggingConfig,
}

# Environment variable -> dotted option
ENV_OVERRIDES = {
    'TASKPILOT_LOG_LEVEL': 'logging.level',
    'TASKPILOT_MAX_RETRIES': 'engine.max_retries',
    'TASKPILOT_TASK_TIMEOUT': 'engine.task_timeout',
    'TASKPILOT_MAX_CONCURRENT': 'scheduler.max_concurrent_workspaces',
    'TASKPILOT_AGENT_COMMAND': 'agent.command',
    'TASKPILOT_STATE_DIR': 'session.state_dir',
}

VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
VALID_AGENT_TYPES = ['noop', 'command']


@dataclass
class Config:
    """Main configuration class for TaskPilot."""
    workspaces: List[Dict[str, Any]] = field(default_factory=list)
    engine: EngineConfig = field(default_factory=EngineConfig)
    task_store: TaskStoreConfig = field(default_factory=TaskStoreConfig)
    resources: ResourcesConfig = field(default_factory=ResourcesConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        # Environment variable overrides
        for option, value in self.get_env_overrides().items():
            self.set_option(option, value)
        if os.getenv('TASKPILOT_AGENT_COMMAND'):
            self.agent.type = 'command'

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """
        Load configuration from a YAML file or return default configuration.

        Without an explicit path, TASKPILOT_CONFIG is consulted, then
        ./taskpilot.yaml and ~/.taskpilot/config.yaml.

        Args:
            config_path: Path to configuration file

        Returns:
            Config instance

        Raises:
            ConfigurationError: If the file is not valid YAML or has unknown options
        """
        if not config_path:
            env_config_path = os.getenv('TASKPILOT_CONFIG')
            if env_config_path:
                config_path = Path(env_config_path)
            else:
                config_path = cls.find_config_file()

        if config_path and Path(config_path).exists():
            try:
                with open(config_path, 'r') as f:
                    data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid configuration file {config_path}: {e}") from e
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
            return cls.from_dict(data)
        else:
            # Return default configuration
            return cls()

    @staticmethod
    def find_config_file() -> Optional[Path]:
        candidates = [
            Path(Settings.DEFAULT_CONFIG_PATH),
            Path(Settings.USER_CONFIG_DIR).expanduser() / 'config.yaml',
        ]
        for candidate in candidates:
            if candidate.exists():
                return candidate
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """
        Create Config instance from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Config instance

        Raises:
            ConfigurationError: If a section or option is unknown
        """
        config_data = data.copy()

        unknown = [key for key in config_data if key != 'workspaces' and key not in _SECTIONS]
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        for name, section_class in _SECTIONS.items():
            section_data = config_data.get(name)
            if isinstance(section_data, dict):
                known = {f.name for f in fields(section_class)}
                bad = [key for key in section_data if key not in known]
                if bad:
                    raise ConfigurationError(f"Unknown options in '{name}' section: {', '.join(sorted(bad))}")
                config_data[name] = section_class(**section_data)
            else:
                config_data[name] = section_class()

        # Process workspaces
        workspaces = config_data.get('workspaces') or []
        config_data['workspaces'] = [
            {'path': str(entry)} if not isinstance(entry, dict) else dict(entry) for entry in workspaces
        ]

        return cls(**config_data)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert Config instance to dictionary.

        Returns:
            Configuration dictionary
        """
        return asdict(self)

    @staticmethod
    def get_default_config_dict() -> Dict[str, Any]:
        """Default configuration, without environment overrides."""
        result: Dict[str, Any] = {'workspaces': []}
        for name, section_class in _SECTIONS.items():
            result[name] = asdict(section_class())
        return result

    def save(self, config_path: Path) -> None:
        """
        Save configuration to a YAML file.

        Args:
            config_path: Path to save configuration file
        """
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def workspace_entries(self) -> List[Dict[str, Any]]:
        """
        Configured workspaces with name, priority and memory budget filled in.

        Returns:
            List of workspace dictionaries
        """
        entries = []
        for entry in self.workspaces:
            if 'path' not in entry:
                continue
            path = str(Path(entry['path']).expanduser().resolve())
            entries.append({
                'path': path,
                'name': entry.get('name') or Path(path).name,
                'priority': int(entry.get('priority', self.scheduler.default_priority)),
                'max_memory_mb': float(entry.get('max_memory_mb', self.scheduler.default_memory_mb)),
            })
        return entries

    def validate(self) -> List[str]:
        """
        Validate the configuration and return a list of errors.

        Returns:
            List of validation errors, empty if valid
        """
        errors = []

        # Validate workspace paths
        for i, ws_config in enumerate(self.workspaces):
            if 'path' not in ws_config:
                errors.append(f"Workspace {i} has no path")
                continue
            ws_path = Path(ws_config['path']).expanduser()
            if not ws_path.is_dir():
                errors.append(f"Workspace path does not exist: {ws_path} (workspace {i})")

        # Validate engine settings
        if self.engine.max_retries < 0:
            errors.append("Engine max retries must not be negative")
        if self.engine.task_timeout <= 0:
            errors.append("Engine task timeout must be positive")
        if self.engine.task_delay < 0:
            errors.append("Engine task delay must not be negative")
        if self.engine.checkpoint_interval < 0:
            errors.append("Engine checkpoint interval must not be negative")
        if self.engine.retry_base_delay_ms <= 0:
            errors.append("Retry base delay must be positive")
        if self.engine.retry_max_delay_ms < self.engine.retry_base_delay_ms:
            errors.append("Retry max delay must not be smaller than the base delay")
        if self.engine.retry_multiplier < 1:
            errors.append("Retry multiplier must be at least 1")

        # Validate task store settings
        if not self.task_store.patterns:
            errors.append("At least one task document pattern is required")
        if self.task_store.debounce_ms < 0:
            errors.append("Debounce interval must not be negative")

        # Validate resource settings
        if self.resources.max_cache_entries <= 0:
            errors.append("Max cache entries must be positive")
        if self.resources.max_cache_size_mb <= 0:
            errors.append("Max cache size must be positive")
        if self.resources.cache_ttl <= 0:
            errors.append("Cache TTL must be positive")
        if not 0 < self.resources.eviction_target <= 1:
            errors.append("Eviction target must be between 0 and 1")
        if self.resources.memory_samples < 2:
            errors.append("At least two memory samples are required")

        # Validate scheduler settings
        if self.scheduler.max_concurrent_workspaces < 1:
            errors.append("Max concurrent workspaces must be at least 1")

        # Validate agent settings
        if self.agent.type not in VALID_AGENT_TYPES:
            errors.append(f"Invalid agent type: {self.agent.type}. Valid values: {', '.join(VALID_AGENT_TYPES)}")
        elif self.agent.type == 'command':
            if not self.agent.command:
                errors.append("Agent command is required when agent type is 'command'")
            elif '{prompt}' not in self.agent.command:
                errors.append("Agent command must include the {prompt} placeholder")
        if self.agent.max_prompt_length <= 0:
            errors.append("Max prompt length must be positive")

        # Validate session settings
        if self.session.history_size < 1:
            errors.append("Session history size must be at least 1")

        # Validate logging level
        if self.logging.level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"Invalid logging level: {self.logging.level}. Valid values: {', '.join(VALID_LOG_LEVELS)}")

        return errors

    def get_env_overrides(self) -> Dict[str, Any]:
        """
        Get configuration values that are overridden by environment variables.

        Returns:
            Dictionary of environment variable overrides
        """
        overrides = {}
        for env_name, option in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                overrides[option] = value
        return overrides

    def apply_cli_overrides(self, cli_options: Dict[str, Any]) -> None:
        """
        Apply command-line interface options as overrides to the configuration.

        Args:
            cli_options: Dictionary of CLI options to apply
        """
        if cli_options.get('log_level'):
            self.logging.level = cli_options['log_level']
        if cli_options.get('max_retries') is not None:
            self.engine.max_retries = cli_options['max_retries']
        if cli_options.get('task_timeout'):
            self.engine.task_timeout = cli_options['task_timeout']
        if cli_options.get('task_delay') is not None:
            self.engine.task_delay = cli_options['task_delay']
        if cli_options.get('skip_optional'):
            self.engine.skip_optional_tasks = True
        if cli_options.get('continue_on_failure'):
            self.engine.continue_on_failure = True
        if cli_options.get('max_concurrent'):
            self.scheduler.max_concurrent_workspaces = cli_options['max_concurrent']
        if cli_options.get('agent_command'):
            self.agent.type = 'command'
            self.agent.command = cli_options['agent_command']
        if cli_options.get('state_dir'):
            self.session.state_dir = cli_options['state_dir']

    def get_option(self, option: str) -> Any:
        """
        Read a dotted option such as 'engine.max_retries'.

        Raises:
            ConfigurationError: If the option does not exist
        """
        section_name, _, key = option.partition('.')
        section = getattr(self, section_name, None) if section_name in _SECTIONS else None
        if section is None or not key or not hasattr(section, key):
            raise ConfigurationError(f"Unknown configuration option: {option}")
        return getattr(section, key)

    def set_option(self, option: str, value: Any) -> None:
        """
        Set a dotted option, converting string values to the option's type.

        Args:
            option: Dotted option name
            value: New value

        Raises:
            ConfigurationError: If the option does not exist or the value cannot be converted
        """
        current = self.get_option(option)
        section_name, _, key = option.partition('.')
        if isinstance(value, str):
            value = _coerce(option, value, current)
        setattr(getattr(self, section_name), key, value)


def _coerce(option: str, value: str, current: Any) -> Any:
    try:
        if isinstance(current, bool):
            lowered = value.strip().lower()
            if lowered in ('1', 'true', 'yes', 'on'):
                return True
            if lowered in ('0', 'false', 'no', 'off'):
                return False
            raise ValueError(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            return [item.strip() for item in value.split(',') if item.strip()]
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {option}: {value}") from e
    return value
