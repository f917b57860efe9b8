"""
Automation engine module for TaskPilot.

One engine drives one workspace: it takes the next ready task from the task
store, hands it to the agent, retries retryable failures with backoff,
writes status back to the task documents and checkpoints the session so an
interrupted run can be resumed.

State machine::

    idle -> running <-> paused
    running/paused -> stopping -> stopped
    running/paused/stopping -> error
    running -> idle            (session completed)
"""

import threading
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging

from ..config.config import EngineConfig
from .agent import Agent, AgentResult, TaskContext
from .errors import (AgentProtocolError, AgentTimeoutError, AutomationError, DependencyError, ErrorType,
                     InvalidStateTransition, ParseError, ValidationError, classify_error, classify_message)
from .event_bus import EventType
from .models import (AutomationSession, EngineState, ErrorRecord, ResourceType, SessionError,
                     SessionStatus, Task, TaskStatus)
from .prompt_builder import PromptBuilder
from .session_store import SessionCheckpoint

# Seconds a cancelled agent invocation gets to exit, on top of its own shutdown grace
CANCEL_GRACE_SECONDS = 1.0


@dataclass
class RetryStrategy:
    """
    Backoff policy for retryable task failures.
    """
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    exponential: bool = True

    @classmethod
    def from_config(cls, engine_config: EngineConfig) -> 'RetryStrategy':
        return cls(
            max_attempts=engine_config.max_retries,
            base_delay_ms=engine_config.retry_base_delay_ms,
            max_delay_ms=engine_config.retry_max_delay_ms,
            multiplier=engine_config.retry_multiplier,
            exponential=engine_config.exponential_backoff,
        )

    def delay_for(self, retry_count: int) -> int:
        """
        Delay before the retry following `retry_count` earlier retries.

        Args:
            retry_count: Number of retries already made for the task

        Returns:
            Delay in milliseconds, capped at max_delay_ms
        """
        if self.exponential:
            delay = self.base_delay_ms * (self.multiplier ** retry_count)
        else:
            delay = self.base_delay_ms * (retry_count + 1)
        return int(min(self.max_delay_ms, delay))


class EngineStateMachine:
    """
    Enumerable engine states and the transitions allowed between them.
    """

    TRANSITIONS = {
        EngineState.IDLE: frozenset({EngineState.RUNNING}),
        EngineState.RUNNING: frozenset({EngineState.PAUSED, EngineState.STOPPING,
                                        EngineState.ERROR, EngineState.IDLE}),
        EngineState.PAUSED: frozenset({EngineState.RUNNING, EngineState.STOPPING, EngineState.ERROR}),
        EngineState.STOPPING: frozenset({EngineState.STOPPED, EngineState.ERROR}),
        EngineState.STOPPED: frozenset(),
        EngineState.ERROR: frozenset(),
    }

    def __init__(self, on_change: Optional[Callable[[EngineState, EngineState], None]] = None):
        self.state = EngineState.IDLE
        self.on_change = on_change

    def can_transition(self, target: EngineState) -> bool:
        return target in self.TRANSITIONS[self.state]

    def transition(self, target: EngineState) -> EngineState:
        """
        Move to `target`.

        Returns:
            The previous state

        Raises:
            InvalidStateTransition: If the transition is not allowed; the state is unchanged
        """
        if not self.can_transition(target):
            raise InvalidStateTransition(self.state.value, target.value)
        previous, self.state = self.state, target
        if self.on_change is not None:
            self.on_change(previous, target)
        return previous

    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.state]


class _Outcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class _Cancelled(Exception):
    """The in-flight invocation was aborted by stop()."""


class AutomationEngine:
    """
    Per-workspace task execution state machine.
    """

    def __init__(self, workspace_id: str, task_store, agent: Agent,
                 config: Optional[EngineConfig] = None, event_bus=None, resource_manager=None,
                 session_store=None, prompt_builder: Optional[PromptBuilder] = None,
                 retry_strategy: Optional[RetryStrategy] = None,
                 workspace_root: Optional[Path] = None):
        """
        Initialize the automation engine.

        Args:
            workspace_id: Identifier of the workspace
            task_store: TaskStore owned by this engine
            agent: Agent performing the tasks
            config: Engine configuration section
            event_bus: Optional event bus for lifecycle events
            resource_manager: Optional shared resource manager
            session_store: Optional session store for checkpoints
            prompt_builder: Prompt renderer (default template if omitted)
            retry_strategy: Backoff policy (derived from config if omitted)
            workspace_root: Working directory handed to the agent
        """
        self.workspace_id = workspace_id
        self.task_store = task_store
        self.agent = agent
        self.config = config or EngineConfig()
        self.event_bus = event_bus
        self.resource_manager = resource_manager
        self.session_store = session_store
        self.prompt_builder = prompt_builder or PromptBuilder(resource_manager=resource_manager)
        self.retry_strategy = retry_strategy or RetryStrategy.from_config(self.config)
        self.workspace_root = Path(workspace_root or getattr(task_store, 'workspace_root', '.'))
        self.logger = logging.getLogger(__name__)

        self._machine = EngineStateMachine(self._on_state_change)
        self._condition = threading.Condition(threading.RLock())
        self._stop_event = threading.Event()
        self._stop_requested = False
        self._current_cancel: Optional[threading.Event] = None
        # Agent invocation that outlived its cancel grace period
        self._lingering_worker: Optional[threading.Thread] = None

        self._session: Optional[AutomationSession] = None
        self._recovered: Optional[SessionCheckpoint] = None
        self._queue: List[str] = []
        self._retry_counts: Dict[str, int] = {}
        self._last_errors: Dict[str, str] = {}
        self._error_history: List[ErrorRecord] = []

        self._thread: Optional[threading.Thread] = None
        self._checkpoint_thread: Optional[threading.Thread] = None
        self._checkpoint_stop = threading.Event()

    # Introspection

    @property
    def state(self) -> EngineState:
        return self._machine.state

    @property
    def session(self) -> Optional[AutomationSession]:
        return self._session

    @property
    def queue(self) -> List[str]:
        with self._condition:
            return list(self._queue)

    def get_error_history(self) -> List[ErrorRecord]:
        with self._condition:
            return list(self._error_history)

    def get_last_error(self, task_key: str) -> Optional[str]:
        return self._last_errors.get(task_key)

    def get_progress(self) -> Dict[str, Any]:
        """
        Progress figures of the current session.

        Returns:
            Counts of completed, failed, skipped and remaining tasks and percent complete
        """
        with self._condition:
            session = self._session
            if session is None:
                return {'total': 0, 'completed': 0, 'failed': 0, 'skipped': 0,
                        'remaining': 0, 'percent': 0.0}
            total = session.total_tasks
            completed = len(session.completed_tasks)
            return {
                'total': total,
                'completed': completed,
                'failed': len(session.failed_tasks),
                'skipped': len(session.skipped_tasks),
                'remaining': len(self._queue),
                'percent': round(100.0 * completed / total, 1) if total else 0.0,
            }

    def get_status(self) -> Dict[str, Any]:
        with self._condition:
            return {
                'workspace_id': self.workspace_id,
                'state': self.state.value,
                'session': self._session.to_dict() if self._session else None,
                'progress': self.get_progress(),
                'queue': list(self._queue),
                'errors': len(self._error_history),
            }

    # Lifecycle

    def start(self) -> None:
        """
        Start a session on a background thread.

        Raises:
            InvalidStateTransition: If the engine is not idle
            ParseError: If the task documents cannot be parsed
        """
        self._begin()
        self._thread = threading.Thread(target=self._run_loop, name=f"engine-{Path(self.workspace_id).name}",
                                        daemon=True)
        self._thread.start()

    def run(self) -> AutomationSession:
        """
        Run a session on the calling thread until it completes, fails or is stopped.

        Returns:
            The finished session
        """
        self._begin()
        self._run_loop()
        return self._session

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for a session started with start().

        Returns:
            True if the session thread has finished
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def pause(self) -> None:
        """
        Stop picking up new tasks; a task in flight finishes normally.

        Raises:
            InvalidStateTransition: If the engine is not running
        """
        with self._condition:
            self._machine.transition(EngineState.PAUSED)
            self._session.status = SessionStatus.PAUSED
        self.logger.info(f"Paused automation for {self.workspace_id}")
        self._persist_checkpoint()
        self._emit(EventType.SESSION_PAUSED, {'session_id': self._session.id})

    def resume(self) -> None:
        """
        Continue a paused session from the same queue position.

        Raises:
            InvalidStateTransition: If the engine is not paused
        """
        with self._condition:
            if self.state != EngineState.PAUSED:
                raise InvalidStateTransition(self.state.value, EngineState.RUNNING.value)
            self._machine.transition(EngineState.RUNNING)
            self._session.status = SessionStatus.RUNNING
            self._condition.notify_all()
        self.logger.info(f"Resumed automation for {self.workspace_id}")
        self._emit(EventType.SESSION_RESUMED, {'session_id': self._session.id})

    def stop(self) -> None:
        """
        Abort the in-flight invocation and discard the remaining queue.

        Queued tasks that never started keep their status.

        Raises:
            InvalidStateTransition: If the engine is neither running nor paused
        """
        with self._condition:
            self._machine.transition(EngineState.STOPPING)
            self._stop_event.set()
            if self._current_cancel is not None:
                self._current_cancel.set()
            self._condition.notify_all()
        self.logger.info(f"Stopping automation for {self.workspace_id}")

    def request_stop(self) -> bool:
        """
        Stop the engine whether or not its session has started yet.

        A running or paused engine is stopped right away. An idle engine
        remembers the request and stops as soon as the next start() or run()
        has built its session, before any task is handed to the agent.

        Returns:
            False if the engine had already stopped or failed
        """
        with self._condition:
            if self.state in (EngineState.RUNNING, EngineState.PAUSED):
                self.stop()
                return True
            if self.state == EngineState.IDLE:
                self._stop_requested = True
                self.logger.info(f"Stop requested before session start for {self.workspace_id}")
                return True
        return False

    def recover_session(self) -> Optional[AutomationSession]:
        """
        Load the persisted checkpoint so the next start() resumes it.

        Completed tasks of the recovered session are not run again.

        Returns:
            The recovered session, or None if there is nothing to resume

        Raises:
            InvalidStateTransition: If the engine is not idle
            SessionVersionError: If the checkpoint needs manual migration
        """
        if self.session_store is None:
            return None
        checkpoint = self.session_store.load(self.workspace_id)
        if checkpoint is None or checkpoint.session.status == SessionStatus.COMPLETED:
            return None
        with self._condition:
            if self.state != EngineState.IDLE:
                raise InvalidStateTransition(self.state.value, 'recover')
            self._recovered = checkpoint
            self._session = checkpoint.session
            self._queue = list(checkpoint.execution_queue)
        self.logger.info(f"Recovered session {checkpoint.session.id} with "
                         f"{len(checkpoint.execution_queue)} queued tasks")
        return checkpoint.session

    # Failed task recovery

    def retry_task(self, task_key: str) -> None:
        """
        Re-admit a failed task with a fresh retry counter.

        Args:
            task_key: Key of the failed task

        Raises:
            KeyError: If the task is unknown
            ValueError: If the task has not failed
        """
        task = self._require_task(task_key)
        with self._condition:
            failed_in_session = self._session is not None and task.key in self._session.failed_tasks
            if not failed_in_session and task.status != TaskStatus.FAILED:
                raise ValueError(f"Task {task.key} has not failed")
            if failed_in_session:
                self._session.failed_tasks.remove(task.key)
            self._retry_counts.pop(task.key, None)
            self._last_errors.pop(task.key, None)
            if task.key not in self._queue:
                self._queue.append(task.key)
                self._sort_queue()
        self.task_store.update_status(task.key, TaskStatus.PENDING)
        self.logger.info(f"Task {task.key} re-admitted for retry")
        self._persist_checkpoint()

    def skip_task(self, task_key: str) -> None:
        """
        Mark a task skipped so the session continues without it.

        Args:
            task_key: Key of a failed or pending task

        Raises:
            KeyError: If the task is unknown
            ValueError: If the task is already completed
        """
        task = self._require_task(task_key)
        if task.status == TaskStatus.COMPLETED:
            raise ValueError(f"Task {task.key} is already completed")
        with self._condition:
            if self._session is not None:
                if task.key in self._session.failed_tasks:
                    self._session.failed_tasks.remove(task.key)
                if task.key not in self._session.skipped_tasks:
                    self._session.skipped_tasks.append(task.key)
            if task.key in self._queue:
                self._queue.remove(task.key)
        self.task_store.update_status(task.key, TaskStatus.SKIPPED)
        self.logger.info(f"Task {task.key} skipped")
        self._emit(EventType.TASK_SKIPPED, {'task_id': task.key, 'title': task.title})
        self._persist_checkpoint()

    def _require_task(self, task_key: str) -> Task:
        task = self.task_store.get_task(task_key)
        if task is None:
            if not self.task_store.get_all_tasks():
                self.task_store.load()
                task = self.task_store.get_task(task_key)
            if task is None:
                raise KeyError(f"Unknown task: {task_key}")
        return task

    # Session setup

    def _begin(self) -> None:
        self.task_store.refresh()
        for problem in self.task_store.validate_dependencies():
            self.logger.warning(problem)

        with self._condition:
            self._machine.transition(EngineState.RUNNING)
            self._stop_event.clear()
            self._retry_counts.clear()
            self._error_history = []

            recovered, self._recovered = self._recovered, None
            if recovered is not None:
                self._session = self._resume_checkpoint(recovered)
            else:
                self._session = AutomationSession(
                    id=f"session-{uuid.uuid4().hex[:12]}",
                    workspace_id=self.workspace_id,
                    configuration=asdict(self.config),
                )
                self._queue = self._build_queue(self._session)
            self._session.total_tasks = len(self.task_store.get_all_tasks())

            if self._stop_requested:
                self._stop_requested = False
                self._machine.transition(EngineState.STOPPING)
                self._stop_event.set()

        if self.resource_manager is not None:
            self.resource_manager.register_resource(
                ResourceType.SESSION, f"session:{self._session.id}",
                metadata={'session_id': self._session.id, 'workspace_id': self.workspace_id})
        self._emit(EventType.SESSION_STARTED, {
            'session_id': self._session.id,
            'queued': len(self._queue),
            'recovered': recovered is not None,
        })
        self.logger.info(f"Started session {self._session.id} for {self.workspace_id} "
                         f"({len(self._queue)} tasks queued)")

    def _resume_checkpoint(self, checkpoint: SessionCheckpoint) -> AutomationSession:
        session = checkpoint.session
        session.status = SessionStatus.RUNNING
        session.end_time = None
        session.error = None
        handled = set(session.handled_tasks())

        queue = [key for key in checkpoint.execution_queue if key not in handled]
        interrupted = checkpoint.current_task_id
        if interrupted and interrupted not in handled:
            task = self.task_store.get_task(interrupted)
            if task is not None and task.status == TaskStatus.IN_PROGRESS:
                self.task_store.update_status(task.key, TaskStatus.PENDING)
            if interrupted not in queue:
                queue.insert(0, interrupted)
        session.current_task_id = None

        self._queue = queue or self._build_queue(session)
        self._sort_queue()
        return session

    def _build_queue(self, session: AutomationSession) -> List[str]:
        handled = set(session.handled_tasks())
        return [task.key for task in self.task_store.get_all_tasks()
                if task.is_ready_status() and task.key not in handled]

    def _sort_queue(self):
        order = {task.key: index for index, task in enumerate(self.task_store.get_all_tasks())}
        self._queue.sort(key=lambda key: order.get(key, len(order)))

    # Execution loop

    def _run_loop(self) -> None:
        self._start_checkpoint_timer()
        try:
            while True:
                with self._condition:
                    while self.state == EngineState.PAUSED and not self._stop_event.is_set():
                        self._condition.wait(0.5)
                    if self._stop_event.is_set():
                        break
                    task = self.task_store.get_next_ready(
                        candidates=self._queue, exclude=self._session.handled_tasks())
                    if task is not None:
                        self._session.current_task_id = task.key
                if task is None:
                    self._complete_session()
                    return

                outcome = self._process_task(task)
                if outcome is _Outcome.STOPPED:
                    break
                if outcome is _Outcome.FAILED and not self.config.continue_on_failure:
                    self._fail_session(self._last_errors.get(task.key, "Task failed"), task.key)
                    return
                self._persist_checkpoint()
                if self.config.task_delay > 0 and self._stop_event.wait(self.config.task_delay):
                    break
            self._finish_stopped()
        except Exception as e:
            self.logger.exception(f"Automation loop for {self.workspace_id} crashed")
            self._fail_session(str(e), self._session.current_task_id if self._session else None)
        finally:
            self._stop_checkpoint_timer()
            if self.resource_manager is not None and self._session is not None:
                self.resource_manager.cleanup_session(self._session.id)

    def _process_task(self, task: Task) -> _Outcome:
        key = task.key
        while True:
            attempt = self._retry_counts.get(key, 0)
            try:
                task = self._pre_execution_check(key)
                if attempt == 0 and self.config.skip_optional_tasks:
                    self._skip_optional_subtasks(task)
                self.task_store.update_status(key, TaskStatus.IN_PROGRESS)
                self._emit(EventType.TASK_STARTED, {'task_id': key, 'title': task.title, 'attempt': attempt})
                self.logger.info(f"Executing task {key}: {task.title} (attempt {attempt + 1})")

                result = self._invoke_agent(task, attempt)
                if not result.success:
                    if result.details.get('cancelled') and self._stop_event.is_set():
                        raise _Cancelled()
                    raise self._error_from_result(key, result)
            except _Cancelled:
                self._reset_interrupted(key)
                return _Outcome.STOPPED
            except Exception as exc:
                if self._stop_event.is_set():
                    self._reset_interrupted(key)
                    return _Outcome.STOPPED

                error = classify_error(exc, key)
                self._record_error(error, attempt)
                if error.retryable and attempt < self.retry_strategy.max_attempts:
                    delay_ms = self.retry_strategy.delay_for(attempt)
                    self._retry_counts[key] = attempt + 1
                    self.logger.warning(f"Task {key} failed ({error.error_type.value}): {error.message}; "
                                        f"retrying in {delay_ms}ms")
                    if self._stop_event.wait(delay_ms / 1000.0):
                        self._reset_interrupted(key)
                        return _Outcome.STOPPED
                    continue

                self._fail_task(task, error)
                return _Outcome.FAILED

            self._complete_task(task)
            return _Outcome.COMPLETED

    def _pre_execution_check(self, key: str) -> Task:
        # Documents may have changed since the task was picked
        task = self.task_store.get_task(key)
        if task is None:
            raise ValidationError(f"Task {key} is no longer defined", task_id=key)
        if key in self.task_store.detect_cycles():
            raise DependencyError(f"Task {key} is part of a dependency cycle", task_id=key)
        unsatisfied = self.task_store.unsatisfied_dependencies(task)
        if unsatisfied:
            raise DependencyError(f"Task {key} has unsatisfied dependencies: {', '.join(unsatisfied)}",
                                  task_id=key)
        return task

    def _skip_optional_subtasks(self, task: Task):
        for subtask in task.subtasks:
            if subtask.optional and subtask.status == TaskStatus.PENDING:
                self.task_store.update_status(self._subtask_ref(task, subtask.id), TaskStatus.SKIPPED)

    @staticmethod
    def _subtask_ref(task: Task, subtask_id: str) -> str:
        return f"{task.spec_name}:{subtask_id}" if task.spec_name else subtask_id

    def _invoke_agent(self, task: Task, attempt: int) -> AgentResult:
        context = TaskContext(
            task=task,
            workspace=self.workspace_root,
            prompt=self.prompt_builder.build(task, session_id=self._session.id),
            timeout=self.config.task_timeout,
            attempt=attempt,
            session_id=self._session.id,
        )
        cancel = threading.Event()
        outcome: Dict[str, Any] = {}

        def invoke():
            try:
                outcome['result'] = self.agent.invoke(context, cancel)
            except Exception as e:
                outcome['error'] = e

        self._wait_for_lingering_worker()
        worker = threading.Thread(target=invoke, name=f"agent-{task.key}", daemon=True)
        with self._condition:
            self._current_cancel = cancel
            if self._stop_event.is_set():
                cancel.set()
        worker.start()

        deadline = time.monotonic() + self.config.task_timeout
        try:
            while worker.is_alive():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._cancel_worker(worker, cancel, task.key)
                    raise AgentTimeoutError(
                        f"Task {task.key} timed out after {self.config.task_timeout}s", task_id=task.key)
                worker.join(min(remaining, 0.1))
                if self._stop_event.is_set() and worker.is_alive():
                    self._cancel_worker(worker, cancel, task.key)
                    raise _Cancelled()
        finally:
            with self._condition:
                self._current_cancel = None

        if 'error' in outcome:
            raise outcome['error']
        result = outcome.get('result')
        if not isinstance(result, AgentResult):
            raise AgentProtocolError(f"Agent {getattr(self.agent, 'name', '?')} returned no result",
                                     task_id=task.key)
        return result

    def _cancel_worker(self, worker: threading.Thread, cancel: threading.Event, key: str):
        cancel.set()
        # CommandAgent waits up to its grace after SIGTERM and again after SIGKILL
        grace = 2 * getattr(self.agent, 'graceful_shutdown', 0.0) + CANCEL_GRACE_SECONDS
        worker.join(grace)
        if worker.is_alive():
            self.logger.error(f"Agent invocation for {key} ignored cancellation for {grace:.1f}s; "
                              f"the next invocation waits for it to exit")
            self._lingering_worker = worker

    def _wait_for_lingering_worker(self):
        worker = self._lingering_worker
        if worker is None:
            return
        if worker.is_alive():
            self.logger.warning(f"Waiting for abandoned agent invocation {worker.name} to exit")
        while worker.is_alive():
            if self._stop_event.is_set():
                raise _Cancelled()
            worker.join(0.1)
        self._lingering_worker = None

    @staticmethod
    def _error_from_result(key: str, result: AgentResult) -> AutomationError:
        message = result.error or f"Agent reported failure for task {key}"
        error_type = result.details.get('error_type')
        if error_type is not None:
            return AutomationError(message, task_id=key, error_type=ErrorType(error_type))
        return AutomationError(message, task_id=key, error_type=classify_message(message))

    def _record_error(self, error: AutomationError, attempt: int):
        record = ErrorRecord(
            task_id=error.task_id,
            error_type=error.error_type.value,
            message=error.message,
            retryable=error.retryable,
            attempt=attempt,
        )
        with self._condition:
            self._error_history.append(record)
            self._last_errors[error.task_id] = error.message
        self._emit(EventType.ERROR_OCCURRED, record.to_dict())

    def _complete_task(self, task: Task):
        for subtask in task.subtasks:
            if subtask.status not in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
                self.task_store.update_status(self._subtask_ref(task, subtask.id), TaskStatus.COMPLETED)
        self.task_store.update_status(task.key, TaskStatus.COMPLETED)
        with self._condition:
            self._retry_counts.pop(task.key, None)
            if task.key not in self._session.completed_tasks:
                self._session.completed_tasks.append(task.key)
            if task.key in self._queue:
                self._queue.remove(task.key)
            self._session.current_task_id = None
        self.logger.info(f"Task {task.key} completed")
        self._emit(EventType.TASK_COMPLETED, {'task_id': task.key, 'title': task.title})

    def _fail_task(self, task: Task, error: AutomationError):
        try:
            self.task_store.update_status(task.key, TaskStatus.FAILED)
        except (KeyError, OSError, ParseError) as e:
            self.logger.error(f"Could not record failure of {task.key}: {e}")
        with self._condition:
            if task.key not in self._session.failed_tasks:
                self._session.failed_tasks.append(task.key)
            if task.key in self._queue:
                self._queue.remove(task.key)
            self._session.current_task_id = None
        self.logger.error(f"Task {task.key} failed ({error.error_type.value}): {error.message}")
        self._emit(EventType.TASK_FAILED, {
            'task_id': task.key,
            'title': task.title,
            'error': error.message,
            'error_type': error.error_type.value,
            'retryable': error.retryable,
        })

    def _reset_interrupted(self, key: str):
        task = self.task_store.get_task(key)
        if task is not None and task.status == TaskStatus.IN_PROGRESS:
            self.task_store.update_status(key, TaskStatus.PENDING)

    # Session endings

    def _complete_session(self):
        with self._condition:
            if self.state == EngineState.STOPPING:
                self._finish_stopped()
                return
            session = self._session
            session.status = SessionStatus.COMPLETED
            session.end_time = datetime.now()
            session.current_task_id = None
            if self.state == EngineState.PAUSED:
                # Paused after the last task finished; nothing is left to resume
                self._machine.transition(EngineState.RUNNING)
            self._machine.transition(EngineState.IDLE)

        blocked = self._build_queue(session)
        if blocked:
            self.logger.warning(f"Session {session.id} finished with blocked tasks: {', '.join(blocked)}")
        if self.session_store is not None:
            self.session_store.clear(self.workspace_id)
            self.session_store.add_to_history(self.workspace_id, session.id)
        self.logger.info(f"Session {session.id} completed: {len(session.completed_tasks)} completed, "
                         f"{len(session.failed_tasks)} failed, {len(session.skipped_tasks)} skipped")
        self._emit(EventType.SESSION_COMPLETED, {'session_id': session.id, 'session': session.to_dict()})

    def _fail_session(self, message: str, task_key: Optional[str]):
        with self._condition:
            session = self._session
            session.status = SessionStatus.FAILED
            session.end_time = datetime.now()
            session.error = SessionError(message=message, task_id=task_key)
            if self._machine.can_transition(EngineState.ERROR):
                self._machine.transition(EngineState.ERROR)
        self._persist_checkpoint()
        if self.session_store is not None:
            self.session_store.add_to_history(self.workspace_id, session.id)
        self.logger.error(f"Session {session.id} failed at task {task_key}: {message}")
        self._emit(EventType.SESSION_FAILED, {
            'session_id': session.id,
            'task_id': task_key,
            'error': message,
            'session': session.to_dict(),
        })

    def _finish_stopped(self):
        with self._condition:
            session = self._session
            session.status = SessionStatus.STOPPED
            session.end_time = datetime.now()
        # The checkpoint keeps the queue so the run can be resumed later
        self._persist_checkpoint()
        with self._condition:
            self._queue.clear()
            if self._machine.can_transition(EngineState.STOPPED):
                self._machine.transition(EngineState.STOPPED)
        self.logger.info(f"Session {session.id} stopped")
        self._emit(EventType.SESSION_STOPPED, {'session_id': session.id, 'session': session.to_dict()})

    # Checkpoints

    def _persist_checkpoint(self) -> None:
        if self.session_store is None or self._session is None:
            return
        with self._condition:
            checkpoint = SessionCheckpoint(
                session=AutomationSession.from_dict(self._session.to_dict()),
                execution_queue=list(self._queue),
                current_task_id=self._session.current_task_id,
            )
        try:
            self.session_store.save(self.workspace_id, checkpoint)
        except OSError as e:
            self.logger.error(f"Failed to persist session checkpoint: {e}")

    def _start_checkpoint_timer(self):
        if self.session_store is None or self.config.checkpoint_interval <= 0:
            return
        self._checkpoint_stop.clear()
        self._checkpoint_thread = threading.Thread(target=self._checkpoint_loop, name="engine-checkpoint",
                                                   daemon=True)
        self._checkpoint_thread.start()
        if self.resource_manager is not None:
            self.resource_manager.register_resource(
                ResourceType.TIMER, f"checkpoint:{self._session.id}",
                metadata={'session_id': self._session.id, 'workspace_id': self.workspace_id},
                dispose=self._checkpoint_stop.set)

    def _checkpoint_loop(self):
        while not self._checkpoint_stop.wait(self.config.checkpoint_interval):
            self._persist_checkpoint()

    def _stop_checkpoint_timer(self):
        self._checkpoint_stop.set()
        thread, self._checkpoint_thread = self._checkpoint_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    # Events

    def _on_state_change(self, previous: EngineState, current: EngineState):
        self.logger.debug(f"Engine {self.workspace_id}: {previous.value} -> {current.value}")
        self._emit(EventType.STATE_CHANGED, {'previous': previous.value, 'state': current.value})

    def _emit(self, event_type: str, data: Dict[str, Any]):
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data, source=self.workspace_id)
