"""
Pytest configuration for TaskPilot tests.

This file contains fixtures and configuration for the test suite.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock

from taskpilot.config.config import Config, EngineConfig, ENV_OVERRIDES
from taskpilot.core.event_bus import EventBus
from taskpilot.core.session_store import SessionStore
from taskpilot.core.task_store import TaskStore
from taskpilot.parsers.task_parser import TaskParser


SAMPLE_TASKS = """# Implementation Plan

- [ ] 1. Set up project structure
  - Create the package layout
  - _Requirements: 1.1_

- [ ] 2. Implement data models
  - [ ] 2.1 Write model classes
    - Use dataclasses for value objects
  - [ ]* 2.2 Write model tests
  - _Requirements: 1.2, 2.1_
  - _Depends: 1_

- [ ] 3. Wire everything together
  - _Depends: 2_
"""


def write_spec(workspace: Path, spec_name: str, content: str) -> Path:
    """Write a tasks.md document for a spec below a workspace."""
    spec_dir = workspace / '.kiro' / 'specs' / spec_name
    spec_dir.mkdir(parents=True, exist_ok=True)
    document = spec_dir / 'tasks.md'
    document.write_text(content, encoding='utf-8')
    return document


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep TASKPILOT_* variables of the host from leaking into tests."""
    for env_name in list(ENV_OVERRIDES) + ['TASKPILOT_CONFIG']:
        monkeypatch.delenv(env_name, raising=False)


@pytest.fixture
def sample_tasks_content():
    """Content of a three-task document."""
    return SAMPLE_TASKS


@pytest.fixture
def workspace(tmp_path):
    """Workspace holding one spec named 'demo'."""
    root = tmp_path / 'workspace'
    root.mkdir()
    write_spec(root, 'demo', SAMPLE_TASKS)
    return root.resolve()


@pytest.fixture
def tasks_file(workspace):
    """Path of the demo spec's task document."""
    return workspace / '.kiro' / 'specs' / 'demo' / 'tasks.md'


@pytest.fixture
def task_parser():
    """Create a task parser for testing."""
    return TaskParser()


@pytest.fixture
def task_store(workspace):
    """Loaded task store of the sample workspace."""
    store = TaskStore(workspace)
    store.load()
    return store


@pytest.fixture
def session_store(tmp_path):
    """Session store writing below the test's temporary directory."""
    return SessionStore(tmp_path / 'state', history_size=3)


@pytest.fixture
def engine_config():
    """Engine configuration tuned for fast tests."""
    return EngineConfig(
        max_retries=3,
        task_timeout=5.0,
        checkpoint_interval=0,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
    )


@pytest.fixture
def sample_config(tmp_path):
    """Create a sample configuration for testing."""
    config = Config()
    config.session.state_dir = str(tmp_path / 'state')
    config.engine.checkpoint_interval = 0
    return config


@pytest.fixture
def event_bus():
    """A real event bus."""
    return EventBus()


@pytest.fixture
def mock_event_bus():
    """Create a mock event bus for testing."""
    return Mock(spec=EventBus)
