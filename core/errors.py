"""
Error taxonomy for TaskPilot.

Automation errors carry an ErrorType that decides whether the engine retries
the failed task or escalates to a fatal session error.
"""

import re
from enum import Enum
from typing import Optional, Tuple


class ErrorType(str, Enum):
    """Classified error kinds."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    AGENT_PROTOCOL = "agent_protocol"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


NON_RETRYABLE_TYPES = frozenset({
    ErrorType.VALIDATION,
    ErrorType.DEPENDENCY,
    ErrorType.CONFIGURATION,
})


def is_retryable(error_type: ErrorType) -> bool:
    """Unknown errors are retried optimistically."""
    return error_type not in NON_RETRYABLE_TYPES


class TaskPilotError(Exception):
    """Base class for all TaskPilot errors."""


class ParseError(TaskPilotError):
    """Raised when a task document line cannot be parsed."""

    def __init__(self, message: str, path: Optional[str] = None, line_number: Optional[int] = None):
        location = ""
        if path is not None:
            location = f"{path}:{line_number}: " if line_number is not None else f"{path}: "
        super().__init__(f"{location}{message}")
        self.path = path
        self.line_number = line_number


class InvalidStateTransition(TaskPilotError):
    """Raised when an engine operation is not allowed from its current state."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class SessionVersionError(TaskPilotError):
    """Persisted session has a format version that needs manual migration."""


class SessionFormatError(TaskPilotError):
    """Persisted session is missing required data."""


class AutomationError(TaskPilotError):
    """
    Error raised while executing a task.

    Subclasses pin the error type; a plain AutomationError is unknown.
    """

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(self, message: str, task_id: Optional[str] = None,
                 cause: Optional[BaseException] = None,
                 error_type: Optional[ErrorType] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.cause = cause
        if error_type is not None:
            self.error_type = error_type

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_type)


class NetworkError(AutomationError):
    error_type = ErrorType.NETWORK


class AgentTimeoutError(AutomationError):
    error_type = ErrorType.TIMEOUT


class AgentProtocolError(AutomationError):
    error_type = ErrorType.AGENT_PROTOCOL


class ValidationError(AutomationError):
    error_type = ErrorType.VALIDATION


class DependencyError(AutomationError):
    error_type = ErrorType.DEPENDENCY


class ConfigurationError(AutomationError):
    error_type = ErrorType.CONFIGURATION


_NETWORK_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\bnetwork\b"),
    re.compile(r"\bconnection(?:s)?\b"),
    re.compile(r"\bcould not resolve host\b"),
    re.compile(r"\btemporarily unavailable\b"),
)
_TIMEOUT_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\btimeout\b"),
    re.compile(r"\btimed out\b"),
)
_AGENT_PROTOCOL_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\bagent\b"),
    re.compile(r"\bprotocol\b"),
    re.compile(r"\bapi\b"),
)
_VALIDATION_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\bvalidation\b"),
    # not the "invalid literal" of int() and float() parse failures
    re.compile(r"\binvalid\b(?!\s+literal)"),
)
_DEPENDENCY_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\bdependency\b"),
    re.compile(r"\bdependencies\b"),
)
_CONFIGURATION_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"\bconfiguration\b"),
    re.compile(r"\bconfig\b"),
)

_RULES: Tuple[Tuple[ErrorType, Tuple[re.Pattern[str], ...]], ...] = (
    (ErrorType.NETWORK, _NETWORK_PATTERNS),
    (ErrorType.TIMEOUT, _TIMEOUT_PATTERNS),
    (ErrorType.AGENT_PROTOCOL, _AGENT_PROTOCOL_PATTERNS),
    (ErrorType.VALIDATION, _VALIDATION_PATTERNS),
    (ErrorType.DEPENDENCY, _DEPENDENCY_PATTERNS),
    (ErrorType.CONFIGURATION, _CONFIGURATION_PATTERNS),
)

_ERROR_CLASSES = {
    ErrorType.NETWORK: NetworkError,
    ErrorType.TIMEOUT: AgentTimeoutError,
    ErrorType.AGENT_PROTOCOL: AgentProtocolError,
    ErrorType.VALIDATION: ValidationError,
    ErrorType.DEPENDENCY: DependencyError,
    ErrorType.CONFIGURATION: ConfigurationError,
}


def classify_message(message: str) -> ErrorType:
    """
    Classify free-form error text by keyword.

    Args:
        message: Error message

    Returns:
        Matching error type, or UNKNOWN
    """
    haystack = message.lower()
    for error_type, patterns in _RULES:
        if _first_match(haystack, patterns) is not None:
            return error_type
    return ErrorType.UNKNOWN


def classify_error(error: BaseException, task_id: Optional[str] = None) -> AutomationError:
    """
    Turn any exception into a classified AutomationError.

    Args:
        error: Exception raised while executing a task
        task_id: Key of the task being executed

    Returns:
        AutomationError carrying the error type
    """
    if isinstance(error, AutomationError):
        if error.task_id is None:
            error.task_id = task_id
        return error

    message = str(error) or error.__class__.__name__
    if isinstance(error, TimeoutError):
        error_type = ErrorType.TIMEOUT
    elif isinstance(error, ConnectionError):
        error_type = ErrorType.NETWORK
    else:
        error_type = classify_message(message)

    error_class = _ERROR_CLASSES.get(error_type)
    if error_class is None:
        return AutomationError(message, task_id=task_id, cause=error, error_type=ErrorType.UNKNOWN)
    return error_class(message, task_id=task_id, cause=error)


def _first_match(haystack: str, patterns: Tuple[re.Pattern[str], ...]) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(haystack)
        if match:
            return match.group(0)
    return None
