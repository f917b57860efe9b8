"""
Core data models for TaskPilot.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class TaskStatus(str, Enum):
    """Status of a task or subtask."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that make a task eligible for execution
READY_STATUSES = (TaskStatus.PENDING, TaskStatus.FAILED)


def id_sort_key(task_id: str) -> Tuple[int, ...]:
    """
    Numeric sort key for a dotted task id ("2.10" sorts after "2.9").

    Args:
        task_id: Dotted task id

    Returns:
        Tuple of integer segments
    """
    parts = []
    for segment in task_id.split('.'):
        try:
            parts.append(int(segment))
        except ValueError:
            parts.append(0)
    return tuple(parts)


@dataclass
class SourceLocation:
    """
    Location of a task line inside its document.
    """
    path: str
    line_number: int  # 0-based index into the document lines


@dataclass
class SubTask:
    """
    Represents a subtask owned by a task.
    """
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    optional: bool = False
    description: List[str] = field(default_factory=list)
    line_number: int = -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'status': self.status.value,
            'optional': self.optional,
            'description': list(self.description),
            'line_number': self.line_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubTask':
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            status=TaskStatus(data.get('status', 'pending')),
            optional=data.get('optional', False),
            description=list(data.get('description', [])),
            line_number=data.get('line_number', -1),
        )


@dataclass
class Task:
    """
    Represents a checklist task parsed from a task document.
    """
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    subtasks: List[SubTask] = field(default_factory=list)
    requirement_refs: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    description: List[str] = field(default_factory=list)
    source: Optional[SourceLocation] = None
    spec_name: str = ""

    @property
    def key(self) -> str:
        """Workspace-unique key; ids are only unique within one document."""
        return f"{self.spec_name}:{self.id}" if self.spec_name else self.id

    def is_ready_status(self) -> bool:
        return self.status in READY_STATUSES

    def required_subtasks(self) -> List[SubTask]:
        return [subtask for subtask in self.subtasks if not subtask.optional]

    def subtasks_satisfied(self) -> bool:
        """Check that every non-optional subtask is finished."""
        return all(subtask.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)
                   for subtask in self.required_subtasks())

    def is_satisfied(self) -> bool:
        """Check whether this task satisfies tasks that depend on it."""
        return self.status == TaskStatus.COMPLETED and self.subtasks_satisfied()

    def get_subtask(self, subtask_id: str) -> Optional[SubTask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'key': self.key,
            'title': self.title,
            'status': self.status.value,
            'subtasks': [subtask.to_dict() for subtask in self.subtasks],
            'requirement_refs': list(self.requirement_refs),
            'dependencies': list(self.dependencies),
            'description': list(self.description),
            'source': {
                'path': self.source.path,
                'line_number': self.source.line_number,
            } if self.source else None,
            'spec_name': self.spec_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        source = data.get('source')
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            status=TaskStatus(data.get('status', 'pending')),
            subtasks=[SubTask.from_dict(item) for item in data.get('subtasks', [])],
            requirement_refs=list(data.get('requirement_refs', [])),
            dependencies=list(data.get('dependencies', [])),
            description=list(data.get('description', [])),
            source=SourceLocation(source['path'], source['line_number']) if source else None,
            spec_name=data.get('spec_name', ''),
        )


@dataclass
class TaskDocumentRef:
    """
    Reference to a discovered task document.
    """
    path: str
    spec_name: str


class SessionStatus(str, Enum):
    """Status of an automation session."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class EngineState(str, Enum):
    """States of the automation engine."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SessionError:
    """
    Error that closed a session.
    """
    message: str
    task_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AutomationSession:
    """
    One run of an automation engine over a workspace's task queue.
    """
    id: str
    workspace_id: str = ""
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RUNNING
    completed_tasks: List[str] = field(default_factory=list)
    failed_tasks: List[str] = field(default_factory=list)
    skipped_tasks: List[str] = field(default_factory=list)
    total_tasks: int = 0
    current_task_id: Optional[str] = None
    configuration: Dict[str, Any] = field(default_factory=dict)
    error: Optional[SessionError] = None

    @property
    def is_closed(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.STOPPED)

    def handled_tasks(self) -> List[str]:
        """Task keys this session has already finished with."""
        return self.completed_tasks + self.failed_tasks + self.skipped_tasks

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'workspace_id': self.workspace_id,
            'start_time': _format_time(self.start_time),
            'end_time': _format_time(self.end_time),
            'status': self.status.value,
            'completed_tasks': list(self.completed_tasks),
            'failed_tasks': list(self.failed_tasks),
            'skipped_tasks': list(self.skipped_tasks),
            'total_tasks': self.total_tasks,
            'current_task_id': self.current_task_id,
            'configuration': dict(self.configuration),
            'error': {
                'message': self.error.message,
                'task_id': self.error.task_id,
                'timestamp': _format_time(self.error.timestamp),
            } if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AutomationSession':
        error_data = data.get('error')
        error = None
        if error_data:
            error = SessionError(
                message=error_data.get('message', ''),
                task_id=error_data.get('task_id'),
                timestamp=_parse_time(error_data.get('timestamp')) or datetime.now(),
            )
        return cls(
            id=data['id'],
            workspace_id=data.get('workspace_id', ''),
            start_time=_parse_time(data['start_time']),
            end_time=_parse_time(data.get('end_time')),
            status=SessionStatus(data.get('status', 'running')),
            completed_tasks=list(data.get('completed_tasks', [])),
            failed_tasks=list(data.get('failed_tasks', [])),
            skipped_tasks=list(data.get('skipped_tasks', [])),
            total_tasks=data.get('total_tasks', 0),
            current_task_id=data.get('current_task_id'),
            configuration=dict(data.get('configuration', {})),
            error=error,
        )


@dataclass
class ErrorRecord:
    """
    Entry in an engine's error history.
    """
    task_id: Optional[str]
    error_type: str
    message: str
    retryable: bool
    attempt: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'error_type': self.error_type,
            'message': self.message,
            'retryable': self.retryable,
            'attempt': self.attempt,
            'timestamp': self.timestamp.isoformat(),
        }


class ResourceType(str, Enum):
    """Kinds of ephemeral resources tracked by the resource manager."""
    WATCHER = "watcher"
    LISTENER = "listener"
    TIMER = "timer"
    CACHE_ENTRY = "cache-entry"
    SESSION = "session"


@dataclass
class ResourceEntry:
    """
    A registered ephemeral resource.
    """
    id: str
    type: ResourceType
    name: str
    created_at: float
    last_accessed_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    dispose: Optional[Callable[[], None]] = field(default=None, repr=False)


@dataclass
class WorkspaceAllocation:
    """
    Scheduling allocation for one workspace.
    """
    workspace_id: str
    max_memory_budget: float = 100.0  # MB
    max_concurrency_share: int = 1
    priority: int = 5
    current_usage: float = 0.0  # MB
