"""
Change detection for TaskPilot.

Pure functions comparing two task snapshots, or two raw document contents.
Tasks are matched by key; nothing here touches disk or holds state.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..parsers.task_parser import TaskParser
from .models import Task, TaskStatus


@dataclass
class StatusChange:
    """A status transition of a task or one of its subtasks."""
    task_id: str
    old_status: TaskStatus
    new_status: TaskStatus
    subtask_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'subtask_id': self.subtask_id,
            'old_status': self.old_status.value,
            'new_status': self.new_status.value,
        }


@dataclass
class ContentChange:
    """Fields of a task whose content differs between snapshots."""
    task_id: str
    fields: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {'task_id': self.task_id, 'fields': list(self.fields)}


@dataclass
class TaskChanges:
    """Structured diff between two task snapshots."""
    added: List[Task] = field(default_factory=list)
    removed: List[Task] = field(default_factory=list)
    status_changes: List[StatusChange] = field(default_factory=list)
    content_changes: List[ContentChange] = field(default_factory=list)

    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.status_changes or self.content_changes)

    def summary(self) -> Dict[str, int]:
        return {
            'added': len(self.added),
            'removed': len(self.removed),
            'status_changes': len(self.status_changes),
            'content_changes': len(self.content_changes),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'added': [task.key for task in self.added],
            'removed': [task.key for task in self.removed],
            'status_changes': [change.to_dict() for change in self.status_changes],
            'content_changes': [change.to_dict() for change in self.content_changes],
        }


@dataclass
class ContentDiff:
    """Line-level summary of a raw document change."""
    lines_added: int = 0
    lines_removed: int = 0
    lines_modified: int = 0

    def has_changes(self) -> bool:
        return bool(self.lines_added or self.lines_removed or self.lines_modified)


def diff(old_tasks: Iterable[Task], new_tasks: Iterable[Task]) -> TaskChanges:
    """
    Compute the difference between two task snapshots.

    Args:
        old_tasks: Tasks before the change
        new_tasks: Tasks after the change

    Returns:
        TaskChanges with added, removed, status and content changes
    """
    old_by_key = {task.key: task for task in old_tasks}
    new_by_key = {task.key: task for task in new_tasks}
    changes = TaskChanges()

    for key, new_task in new_by_key.items():
        old_task = old_by_key.get(key)
        if old_task is None:
            changes.added.append(new_task)
            continue

        changes.status_changes.extend(_status_changes(old_task, new_task))
        changed_fields = _content_fields(old_task, new_task)
        if changed_fields:
            changes.content_changes.append(ContentChange(task_id=key, fields=changed_fields))

    for key, old_task in old_by_key.items():
        if key not in new_by_key:
            changes.removed.append(old_task)

    return changes


def _status_changes(old_task: Task, new_task: Task) -> List[StatusChange]:
    result = []
    if old_task.status != new_task.status:
        result.append(StatusChange(new_task.key, old_task.status, new_task.status))

    old_subtasks = {subtask.id: subtask for subtask in old_task.subtasks}
    for subtask in new_task.subtasks:
        previous = old_subtasks.get(subtask.id)
        if previous is not None and previous.status != subtask.status:
            result.append(StatusChange(new_task.key, previous.status, subtask.status,
                                       subtask_id=subtask.id))
    return result


def _content_fields(old_task: Task, new_task: Task) -> List[str]:
    fields = []
    if old_task.title != new_task.title:
        fields.append('title')
    if old_task.requirement_refs != new_task.requirement_refs:
        fields.append('requirement_refs')
    if old_task.dependencies != new_task.dependencies:
        fields.append('dependencies')
    if old_task.description != new_task.description:
        fields.append('description')
    if _subtask_shape(old_task) != _subtask_shape(new_task):
        fields.append('subtasks')
    return fields


def _subtask_shape(task: Task) -> List[tuple]:
    return [(subtask.id, subtask.title, subtask.optional, tuple(subtask.description))
            for subtask in task.subtasks]


def diff_content(old_text: str, new_text: str) -> ContentDiff:
    """
    Summarize a raw content change by positional line comparison.

    Args:
        old_text: Document content before the change
        new_text: Document content after the change

    Returns:
        ContentDiff with added, removed and modified line counts
    """
    old_lines = old_text.splitlines()
    new_lines = new_text.splitlines()
    common = min(len(old_lines), len(new_lines))
    modified = sum(1 for index in range(common) if old_lines[index] != new_lines[index])
    return ContentDiff(
        lines_added=max(0, len(new_lines) - len(old_lines)),
        lines_removed=max(0, len(old_lines) - len(new_lines)),
        lines_modified=modified,
    )


def diff_status_markers(old_text: str, new_text: str, parser: Optional[TaskParser] = None) -> List[StatusChange]:
    """
    Compute status changes directly from two document contents.

    Args:
        old_text: Document content before the change
        new_text: Document content after the change
        parser: Parser to use (a default TaskParser if omitted)

    Returns:
        Status changes of tasks and subtasks present in both contents
    """
    parser = parser or TaskParser()
    old_tasks = parser.parse_content(old_text)
    new_tasks = parser.parse_content(new_text)
    return diff(old_tasks, new_tasks).status_changes
