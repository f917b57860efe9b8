"""
Settings management for TaskPilot.

This module provides application-wide settings and constants.
"""

from dataclasses import dataclass


@dataclass
class Settings:
    """Application settings and constants."""
    
    # Application settings
    APP_NAME: str = "TaskPilot"
    APP_VERSION: str = "0.1.0"
    
    # Default paths
    DEFAULT_CONFIG_PATH: str = "./taskpilot.yaml"
    USER_CONFIG_DIR: str = "~/.taskpilot"
    DEFAULT_STATE_DIR: str = "~/.taskpilot/sessions"
    
    # Task documents
    DEFAULT_TASK_PATTERNS: tuple = ('.kiro/specs/*/tasks.md', 'specs/*/tasks.md')
    DEFAULT_DEBOUNCE_MS: int = 500
    
    # Engine settings
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_TASK_TIMEOUT: float = 300.0  # seconds
    DEFAULT_CHECKPOINT_INTERVAL: float = 30.0  # seconds
    DEFAULT_RETRY_BASE_DELAY_MS: int = 1000
    DEFAULT_RETRY_MAX_DELAY_MS: int = 30000
    DEFAULT_RETRY_MULTIPLIER: float = 2.0
    
    # Resource budget
    DEFAULT_MAX_CACHE_ENTRIES: int = 1000
    DEFAULT_MAX_CACHE_SIZE_MB: float = 50.0
    DEFAULT_CACHE_TTL: float = 300.0  # seconds
    DEFAULT_CLEANUP_INTERVAL: float = 60.0  # seconds
    DEFAULT_MEMORY_SAMPLE_INTERVAL: float = 30.0  # seconds
    DEFAULT_MEMORY_SAMPLES: int = 20
    DEFAULT_LEAK_THRESHOLD: float = 1.0  # MB per minute
    
    # Scheduler settings
    DEFAULT_MAX_CONCURRENT_WORKSPACES: int = 2
    DEFAULT_WORKSPACE_PRIORITY: int = 5
    DEFAULT_WORKSPACE_MEMORY_MB: float = 100.0
    
    # Session persistence
    SESSION_FORMAT_VERSION: str = "1.0.0"
    SESSION_HISTORY_SIZE: int = 10
    
    # Logging settings
    DEFAULT_LOG_LEVEL: str = "INFO"
    
    def __post_init__(self):
        # Ensure patterns are tuples to prevent modification
        if not isinstance(self.DEFAULT_TASK_PATTERNS, tuple):
            self.DEFAULT_TASK_PATTERNS = tuple(self.DEFAULT_TASK_PATTERNS)
