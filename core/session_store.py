"""
Session persistence module for TaskPilot.

Checkpoints are versioned JSON files, one per workspace, so an interrupted
run can be resumed. A reader that meets an unknown format version refuses it
instead of guessing.
"""

import hashlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from ..utils.file_utils import FileUtils
from .errors import SessionFormatError, SessionVersionError
from .models import AutomationSession

SESSION_FORMAT_VERSION = "1.0.0"
SUPPORTED_VERSIONS = (SESSION_FORMAT_VERSION,)

_REQUIRED_SESSION_FIELDS = ('id', 'start_time', 'status', 'completed_tasks', 'failed_tasks', 'skipped_tasks')


@dataclass
class SessionCheckpoint:
    """A persisted session plus its remaining queue."""
    session: AutomationSession
    execution_queue: List[str] = field(default_factory=list)
    current_task_id: Optional[str] = None
    persisted_at: datetime = field(default_factory=datetime.now)
    version: str = SESSION_FORMAT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'session': self.session.to_dict(),
            'execution_queue': list(self.execution_queue),
            'current_task_id': self.current_task_id,
            'persisted_at': self.persisted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionCheckpoint':
        """
        Rebuild a checkpoint from its serialized form.

        Raises:
            SessionVersionError: If the format version is not supported
            SessionFormatError: If required data is missing
        """
        if not isinstance(data, dict):
            raise SessionFormatError("Session checkpoint must be a JSON object")
        version = data.get('version')
        if version not in SUPPORTED_VERSIONS:
            raise SessionVersionError(
                f"Unsupported session format version {version!r}; manual migration to "
                f"{SESSION_FORMAT_VERSION} is required")

        session_data = data.get('session')
        if not isinstance(session_data, dict):
            raise SessionFormatError("Session checkpoint has no session")
        missing = [name for name in _REQUIRED_SESSION_FIELDS if name not in session_data]
        if missing:
            raise SessionFormatError(f"Session checkpoint is missing fields: {', '.join(missing)}")
        queue = data.get('execution_queue')
        if not isinstance(queue, list):
            raise SessionFormatError("Session checkpoint has no execution queue")

        try:
            session = AutomationSession.from_dict(session_data)
            persisted_at = datetime.fromisoformat(data['persisted_at']) if data.get('persisted_at') else datetime.now()
        except (KeyError, TypeError, ValueError) as e:
            raise SessionFormatError(f"Malformed session checkpoint: {e}") from e

        return cls(
            session=session,
            execution_queue=[str(item) for item in queue],
            current_task_id=data.get('current_task_id'),
            persisted_at=persisted_at,
            version=version,
        )


def session_statistics(session: AutomationSession) -> Dict[str, float]:
    """
    Duration and rates of a session.

    Args:
        session: Session to analyze

    Returns:
        duration (seconds), completion_rate, failure_rate, average_task_time (seconds)
    """
    end_time = session.end_time or datetime.now()
    duration = (end_time - session.start_time).total_seconds()
    processed = len(session.completed_tasks) + len(session.failed_tasks)
    return {
        'duration': duration,
        'completion_rate': len(session.completed_tasks) / processed if processed else 0.0,
        'failure_rate': len(session.failed_tasks) / processed if processed else 0.0,
        'average_task_time': duration / processed if processed else 0.0,
    }


class SessionStore:
    """
    Stores session checkpoints and session history below a state directory.
    """

    def __init__(self, state_dir: Path, history_size: int = 10):
        """
        Initialize the session store.

        Args:
            state_dir: Directory holding one sub-directory per workspace
            history_size: Number of session ids kept in each workspace's history
        """
        self.state_dir = Path(state_dir).expanduser()
        self.history_size = history_size
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def workspace_dir(self, workspace_id: str) -> Path:
        digest = hashlib.sha1(workspace_id.encode('utf-8')).hexdigest()[:12]
        name = Path(workspace_id).name or 'workspace'
        return self.state_dir / f"{name}-{digest}"

    def _session_path(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / 'session.json'

    def _history_path(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / 'history.json'

    def save(self, workspace_id: str, checkpoint: SessionCheckpoint) -> Path:
        """
        Persist a checkpoint, replacing the previous one atomically.

        Args:
            workspace_id: Workspace the session belongs to
            checkpoint: Checkpoint to persist

        Returns:
            Path of the checkpoint file
        """
        path = self._session_path(workspace_id)
        with self._lock:
            FileUtils.atomic_write_file(path, json.dumps(checkpoint.to_dict(), indent=2))
        self.logger.debug(f"Persisted session {checkpoint.session.id} to {path}")
        return path

    def load(self, workspace_id: str) -> Optional[SessionCheckpoint]:
        """
        Load the persisted checkpoint of a workspace.

        Args:
            workspace_id: Workspace identifier

        Returns:
            The checkpoint, or None if nothing is persisted

        Raises:
            SessionVersionError: If the format version is not supported
            SessionFormatError: If the file is corrupt or incomplete
        """
        path = self._session_path(workspace_id)
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise SessionFormatError(f"Corrupt session file {path}: {e}") from e
        return SessionCheckpoint.from_dict(data)

    def has_session(self, workspace_id: str) -> bool:
        return self._session_path(workspace_id).exists()

    def clear(self, workspace_id: str) -> bool:
        """Delete the persisted checkpoint of a workspace."""
        path = self._session_path(workspace_id)
        with self._lock:
            if path.exists():
                path.unlink()
                self.logger.info(f"Cleared persisted session for {workspace_id}")
                return True
        return False

    def last_persisted_at(self, workspace_id: str) -> Optional[datetime]:
        checkpoint = self.load(workspace_id)
        return checkpoint.persisted_at if checkpoint else None

    def get_history(self, workspace_id: str) -> List[str]:
        """Most recent session ids first."""
        path = self._history_path(workspace_id)
        if not path.exists():
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                history = json.load(f)
        except json.JSONDecodeError as e:
            self.logger.warning(f"Ignoring corrupt session history {path}: {e}")
            return []
        return [str(item) for item in history] if isinstance(history, list) else []

    def add_to_history(self, workspace_id: str, session_id: str) -> None:
        with self._lock:
            history = [item for item in self.get_history(workspace_id) if item != session_id]
            history.insert(0, session_id)
            FileUtils.atomic_write_file(self._history_path(workspace_id),
                                        json.dumps(history[:self.history_size], indent=2))

    def clear_history(self, workspace_id: str) -> None:
        with self._lock:
            path = self._history_path(workspace_id)
            if path.exists():
                path.unlink()

    def export_session(self, checkpoint: SessionCheckpoint, file_path: Path) -> None:
        """Write a checkpoint to an arbitrary file."""
        FileUtils.atomic_write_file(Path(file_path), json.dumps(checkpoint.to_dict(), indent=2))

    def import_session(self, file_path: Path) -> SessionCheckpoint:
        """
        Read a checkpoint written by export_session.

        Raises:
            SessionVersionError: If the format version is not supported
            SessionFormatError: If the file is corrupt or incomplete
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise SessionFormatError(f"Corrupt session file {file_path}: {e}") from e
        return SessionCheckpoint.from_dict(data)
