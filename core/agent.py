"""
Agent interface for TaskPilot.

The engine hands each task to an Agent and waits for a structured result.
Which adapter is used is decided by configuration (`agent.type`), never by
probing at runtime.
"""

import os
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol
import logging

from .errors import AgentTimeoutError, ConfigurationError
from .models import Task


@dataclass
class TaskContext:
    """Everything an agent needs to perform one task."""
    task: Task
    workspace: Path
    prompt: str
    timeout: float
    attempt: int = 0
    session_id: str = ""
    # Set when the invocation should give up (timeout or stop)
    cancel_event: Optional[threading.Event] = None


@dataclass
class AgentResult:
    """Structured outcome of an agent invocation."""
    success: bool
    output: str = ""
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Agent(Protocol):
    """Performs the work of a task."""

    name: str

    def invoke(self, context: TaskContext, cancel_event: threading.Event) -> AgentResult:
        """
        Perform a task. Must return promptly once `cancel_event` is set and
        must be safe to call again for the same task after a failure.
        """
        ...


class NoopAgent:
    """Agent that reports success without doing anything (dry runs)."""

    name = "noop"

    def invoke(self, context: TaskContext, cancel_event: threading.Event) -> AgentResult:
        return AgentResult(success=True, output=f"dry run: {context.task.key}")


class CallableAgent:
    """
    Agent backed by a Python callable.

    The callable receives the TaskContext, whose `cancel_event` is set on
    timeout or stop, and returns an AgentResult, a bool, or None (success);
    exceptions propagate to the engine for classification.
    """

    def __init__(self, func: Callable[[TaskContext], Any], name: str = "callable"):
        self.func = func
        self.name = name

    def invoke(self, context: TaskContext, cancel_event: threading.Event) -> AgentResult:
        outcome = self.func(replace(context, cancel_event=cancel_event))
        if isinstance(outcome, AgentResult):
            return outcome
        if outcome is None or outcome is True:
            return AgentResult(success=True)
        if outcome is False:
            return AgentResult(success=False, error=f"Agent reported failure for task {context.task.key}")
        return AgentResult(success=True, output=str(outcome))


class CommandAgent:
    """
    Agent that runs a shell command template per task.

    The template must contain {prompt} and may use {task_id}, {task_title},
    {spec_name} and {workspace}; every value is shell-quoted.
    """

    name = "command"

    def __init__(self, command_template: str, env: Optional[Dict[str, str]] = None,
                 poll_interval: float = 0.1, graceful_shutdown: float = 2.0):
        stripped = command_template.strip()
        if not stripped:
            raise ConfigurationError("Agent command template is empty")
        if "{prompt}" not in stripped:
            raise ConfigurationError("Agent command template must include {prompt}")
        self.command_template = stripped
        self.env = env or {}
        self.poll_interval = poll_interval
        self.graceful_shutdown = graceful_shutdown
        self.logger = logging.getLogger(__name__)

    def build_args(self, context: TaskContext) -> list:
        """
        Render the command template into an argument list.

        Args:
            context: Task context

        Returns:
            argv list
        """
        try:
            rendered = self.command_template.format(
                prompt=shlex.quote(context.prompt),
                task_id=shlex.quote(context.task.id),
                task_title=shlex.quote(context.task.title),
                spec_name=shlex.quote(context.task.spec_name),
                workspace=shlex.quote(str(context.workspace)),
            )
        except (KeyError, IndexError) as error:
            raise ConfigurationError(f"Unsupported command template placeholder: {error}") from error

        argv = shlex.split(rendered)
        if not argv:
            raise ConfigurationError("Agent command template rendered an empty command")
        return argv

    def invoke(self, context: TaskContext, cancel_event: threading.Event) -> AgentResult:
        argv = self.build_args(context)
        env = os.environ.copy()
        env.update(self.env)
        env["TASKPILOT_TASK_ID"] = context.task.id
        env["TASKPILOT_SPEC_NAME"] = context.task.spec_name
        env["TASKPILOT_ATTEMPT"] = str(context.attempt)

        with tempfile.TemporaryFile(mode='w+', encoding='utf-8') as stdout_handle, \
                tempfile.TemporaryFile(mode='w+', encoding='utf-8') as stderr_handle:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=str(context.workspace),
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except FileNotFoundError as error:
                raise ConfigurationError(f"Agent command not found: {argv[0]}") from error

            self.logger.debug(f"Started agent command for task {context.task.key} (pid {process.pid})")
            returncode = self._wait(process, context, cancel_event)

            stdout_handle.seek(0)
            stderr_handle.seek(0)
            stdout = stdout_handle.read()
            stderr = stderr_handle.read()

        if returncode is None:
            return AgentResult(success=False, output=stdout, error="Agent invocation cancelled",
                               details={'cancelled': True})
        if returncode == 0:
            return AgentResult(success=True, output=stdout, details={'exit_code': 0})
        tail = stderr.strip().splitlines()[-5:] if stderr.strip() else []
        message = '\n'.join(tail) or f"Agent command exited with code {returncode}"
        return AgentResult(success=False, output=stdout, error=message, details={'exit_code': returncode})

    def _wait(self, process: subprocess.Popen, context: TaskContext,
              cancel_event: threading.Event) -> Optional[int]:
        start = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode
            if cancel_event.is_set():
                _terminate_process(process, self.graceful_shutdown)
                return None
            if time.monotonic() - start >= context.timeout:
                _terminate_process(process, self.graceful_shutdown)
                raise AgentTimeoutError(
                    f"Agent command timed out after {context.timeout}s", task_id=context.task.key)
            cancel_event.wait(self.poll_interval)


def _terminate_process(process: subprocess.Popen, grace: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace)


def create_agent(agent_config) -> Agent:
    """
    Build the agent selected by the `agent` configuration section.

    Args:
        agent_config: AgentConfig instance

    Returns:
        Agent instance

    Raises:
        ConfigurationError: If the agent type is unknown or misconfigured
    """
    agent_type = agent_config.type.lower()
    if agent_type == "command":
        if not agent_config.command:
            raise ConfigurationError("agent.command must be set when agent.type is 'command'")
        return CommandAgent(agent_config.command, env=dict(agent_config.env or {}))
    if agent_type == "noop":
        return NoopAgent()
    raise ConfigurationError(f"Unknown agent type: {agent_config.type}")
