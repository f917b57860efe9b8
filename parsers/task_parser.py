"""
Task parser module for TaskPilot.

This module parses markdown checklist documents into Task objects. A task
line looks like ``- [ ] 2. Title``; subtasks are indented two spaces and may
carry a ``*`` after the marker to flag them optional. Indented text below an
item is its description, with two annotations recognised:
``_Requirements: 1.1, 2.3_`` and ``_Depends: 1, 2_``.
"""

import re
from typing import Dict, List, Optional

from .base_parser import BaseParser
from ..core.errors import ParseError
from ..core.models import SourceLocation, SubTask, Task, TaskStatus


CHECKBOX_PATTERN = re.compile(
    r'^(?P<indent>[ \t]*)-\s*\[(?P<marker>[ ~xX])\](?P<optional>\*)?\s*(?P<rest>.*)$'
)
ITEM_PATTERN = re.compile(r'^(?P<id>\d+(?:\.\d+)*)\.?\s+(?P<title>\S.*)$')
REQUIREMENTS_PATTERN = re.compile(r'^_?\s*requirements?\s*:\s*(?P<refs>.*?)\s*_?$', re.IGNORECASE)
DEPENDS_PATTERN = re.compile(
    r'^_?\s*(?:depends(?:\s+on)?|dependencies)\s*:\s*(?P<refs>.*?)\s*_?$', re.IGNORECASE
)
TASK_ID_PATTERN = re.compile(r'\d+(?:\.\d+)*')

MARKER_TO_STATUS = {
    ' ': TaskStatus.PENDING,
    '~': TaskStatus.IN_PROGRESS,
    'x': TaskStatus.COMPLETED,
    'X': TaskStatus.COMPLETED,
}

# failed and skipped have no marker of their own in the document
STATUS_TO_MARKER = {
    TaskStatus.PENDING: ' ',
    TaskStatus.IN_PROGRESS: '~',
    TaskStatus.COMPLETED: 'x',
    TaskStatus.FAILED: ' ',
    TaskStatus.SKIPPED: ' ',
}

SUBTASK_INDENT = 2
DESCRIPTION_INDENT = 4


def marker_for(status: TaskStatus) -> str:
    """Marker character written to the document for a status."""
    return STATUS_TO_MARKER[TaskStatus(status)]


def replace_marker(line: str, status: TaskStatus) -> str:
    """
    Replace only the status marker character of a checklist line.

    Args:
        line: Checklist line, with or without its line terminator
        status: New status

    Returns:
        The line with its marker replaced

    Raises:
        ValueError: If the line is not a checklist line
    """
    match = CHECKBOX_PATTERN.match(line.rstrip('\r\n'))
    if match is None:
        raise ValueError(f"Not a checklist line: {line!r}")
    position = match.start('marker')
    return line[:position] + marker_for(status) + line[position + 1:]


def line_item_id(line: str) -> Optional[str]:
    """Return the task or subtask id carried by a checklist line, if any."""
    match = CHECKBOX_PATTERN.match(line.rstrip('\r\n'))
    if match is None:
        return None
    item = ITEM_PATTERN.match(match.group('rest'))
    return item.group('id') if item else None


def _indent_width(indent: str) -> int:
    return len(indent.expandtabs(4))


class TaskParser(BaseParser):
    """
    Parser for markdown task documents.
    """

    def parse(self, source: str, spec_name: str = "", **kwargs) -> List[Task]:
        """
        Parse tasks from a document on disk.

        Args:
            source: Path to the task document
            spec_name: Name of the spec the document belongs to

        Returns:
            Tasks in document order
        """
        if not self.validate_source(source):
            raise ParseError("Task document is not readable", path=source)
        content = self.read_file(source)
        return self.parse_content(content, path=source, spec_name=spec_name)

    def parse_content(self, content: str, path: str = "<string>", spec_name: str = "",
                      **kwargs) -> List[Task]:
        """
        Parse tasks from document content.

        Lines that are not checklist items, descriptions or annotations are
        skipped. A checklist line whose id starts with a digit but is not a
        valid dotted id raises ParseError.

        Args:
            content: Document text
            path: Document path recorded in each task's source location
            spec_name: Name of the spec the document belongs to

        Returns:
            Tasks in document order
        """
        tasks: List[Task] = []
        seen_ids: Dict[str, int] = {}
        current_task: Optional[Task] = None
        current_subtask: Optional[SubTask] = None

        for index, raw_line in enumerate(content.splitlines()):
            line_number = index + 1
            if not raw_line.strip():
                continue

            checkbox = CHECKBOX_PATTERN.match(raw_line)
            if checkbox is not None:
                rest = checkbox.group('rest')
                item = ITEM_PATTERN.match(rest)
                if item is None:
                    if rest[:1].isdigit():
                        raise ParseError(f"Unparsable task id in line: {raw_line.strip()!r}",
                                         path=path, line_number=line_number)
                    self.logger.debug(f"Skipping checklist line without id at {path}:{line_number}")
                    continue

                item_id = item.group('id')
                if item_id in seen_ids:
                    raise ParseError(f"Duplicate task id {item_id} (first defined on line "
                                     f"{seen_ids[item_id]})", path=path, line_number=line_number)
                seen_ids[item_id] = line_number

                status = MARKER_TO_STATUS[checkbox.group('marker')]
                title = item.group('title').strip()

                if _indent_width(checkbox.group('indent')) < SUBTASK_INDENT:
                    current_task = Task(
                        id=item_id,
                        title=title,
                        status=status,
                        source=SourceLocation(path=path, line_number=index),
                        spec_name=spec_name,
                    )
                    current_subtask = None
                    tasks.append(current_task)
                    continue

                if current_task is None:
                    raise ParseError(f"Subtask {item_id} has no parent task",
                                     path=path, line_number=line_number)
                if '.' not in item_id or item_id.rsplit('.', 1)[0] != current_task.id:
                    raise ParseError(f"Subtask id {item_id} does not extend parent id {current_task.id}",
                                     path=path, line_number=line_number)
                current_subtask = SubTask(
                    id=item_id,
                    title=title,
                    status=status,
                    optional=checkbox.group('optional') is not None,
                    line_number=index,
                )
                current_task.subtasks.append(current_subtask)
                continue

            indent = _indent_width(raw_line[:len(raw_line) - len(raw_line.lstrip())])
            if indent < SUBTASK_INDENT:
                # Headings and prose end the current task's context
                current_task = None
                current_subtask = None
                continue
            if current_task is None:
                continue

            self._apply_description_line(current_task, current_subtask, raw_line.strip(), indent)

        return tasks

    def _apply_description_line(self, task: Task, subtask: Optional[SubTask], text: str, indent: int):
        text_body = text[2:].strip() if text.startswith('- ') else text

        requirements = REQUIREMENTS_PATTERN.match(text_body)
        if requirements is not None:
            for ref in requirements.group('refs').split(','):
                ref = ref.strip().strip('_').strip()
                if ref and ref not in task.requirement_refs:
                    task.requirement_refs.append(ref)
            return

        depends = DEPENDS_PATTERN.match(text_body)
        if depends is not None:
            for dep_id in TASK_ID_PATTERN.findall(depends.group('refs')):
                if dep_id not in task.dependencies:
                    task.dependencies.append(dep_id)
            return

        if subtask is not None and indent >= DESCRIPTION_INDENT:
            subtask.description.append(text_body)
        else:
            task.description.append(text_body)
