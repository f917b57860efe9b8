"""Core functionality module for TaskPilot."""

from .models import AutomationSession, EngineState, SessionStatus, SubTask, Task, TaskStatus
from .errors import AutomationError, ErrorType, TaskPilotError, classify_error
from .event_bus import EventBus, EventType

__all__ = [
    'AutomationSession', 'EngineState', 'SessionStatus', 'SubTask', 'Task', 'TaskStatus',
    'AutomationError', 'ErrorType', 'TaskPilotError', 'classify_error',
    'EventBus', 'EventType',
]
