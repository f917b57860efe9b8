"""
Application wiring for TaskPilot.

Builds the shared services (event bus, resource manager, session store,
agent) once and hands them to per-workspace task stores and engines.
"""

from pathlib import Path
from typing import Dict, Optional
import logging

from ..config.config import Config
from .agent import Agent, create_agent
from .automation_engine import AutomationEngine
from .event_bus import EventBus
from .prompt_builder import PromptBuilder
from .resource_manager import ResourceManager
from .scheduler import ConcurrentWorkspaceScheduler
from .session_store import SessionStore
from .task_store import TaskStore


class AppContext:
    """
    Owner of the process-wide services.
    """

    def __init__(self, config: Config, agent: Optional[Agent] = None):
        """
        Initialize the application context.

        Args:
            config: Loaded configuration
            agent: Agent to use instead of the configured one
        """
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.event_bus = EventBus()
        self.resource_manager = ResourceManager.from_config(config.resources)
        self.session_store = SessionStore(Path(config.session.state_dir), history_size=config.session.history_size)
        self.agent = agent or create_agent(config.agent)
        self._stores: Dict[str, TaskStore] = {}

    @staticmethod
    def workspace_id(workspace: Path) -> str:
        return str(Path(workspace).expanduser().resolve())

    def create_task_store(self, workspace: Path) -> TaskStore:
        """
        Return the task store of a workspace, creating it on first use.

        Args:
            workspace: Workspace root directory

        Returns:
            TaskStore instance
        """
        workspace_id = self.workspace_id(workspace)
        store = self._stores.get(workspace_id)
        if store is None:
            store = TaskStore(
                Path(workspace_id),
                patterns=self.config.task_store.patterns,
                event_bus=self.event_bus,
                resource_manager=self.resource_manager,
                debounce_ms=self.config.task_store.debounce_ms,
                workspace_id=workspace_id,
            )
            self._stores[workspace_id] = store
        return store

    def create_engine(self, workspace: Path) -> AutomationEngine:
        """
        Build an automation engine for a workspace.

        Args:
            workspace: Workspace root directory

        Returns:
            AutomationEngine instance
        """
        store = self.create_task_store(workspace)
        prompt_builder = PromptBuilder(
            template=self.config.agent.prompt_template,
            max_length=self.config.agent.max_prompt_length,
            resource_manager=self.resource_manager,
        )
        return AutomationEngine(
            workspace_id=store.workspace_id,
            task_store=store,
            agent=self.agent,
            config=self.config.engine,
            event_bus=self.event_bus,
            resource_manager=self.resource_manager,
            session_store=self.session_store,
            prompt_builder=prompt_builder,
            workspace_root=store.workspace_root,
        )

    def create_scheduler(self) -> ConcurrentWorkspaceScheduler:
        return ConcurrentWorkspaceScheduler(
            engine_factory=self.create_engine,
            max_concurrent=self.config.scheduler.max_concurrent_workspaces,
            event_bus=self.event_bus,
            default_priority=self.config.scheduler.default_priority,
            default_memory_mb=self.config.scheduler.default_memory_mb,
        )

    def shutdown(self) -> None:
        """Stop watchers and background maintenance, and clear caches."""
        for store in self._stores.values():
            store.stop_watching()
        self.resource_manager.stop()
        self.resource_manager.cache_clear()
        self.event_bus.clear_subscribers()
        self.logger.debug("Application context shut down")
