"""Prompt rendering for task invocations."""

from pathlib import Path
from typing import List, Optional
import logging

from ..utils.file_utils import FileUtils
from .models import SubTask, Task

DEFAULT_TEMPLATE = """Implement the task from the markdown document at {spec_name}/tasks.md:

Task: {task_id} - {task_title}

{subtasks}

Requirements: {requirements}

## Context

### Requirements
{requirements_content}

### Design
{design_content}

## Instructions
Implement the task according to the requirements and design.
Only focus on ONE task at a time. Do NOT implement functionality for other tasks.
If the task has sub-tasks, implement the sub-tasks first.
Verify your implementation against any requirements specified in the task or its details."""

TRUNCATION_NOTICE = "\n\n[Content truncated due to length]"


class PromptBuilder:
    """
    Fills a prompt template with task details and the spec's context documents.
    """

    def __init__(self, template: Optional[str] = None, max_length: int = 10000, resource_manager=None):
        self.template = template or DEFAULT_TEMPLATE
        self.max_length = max_length
        self.resource_manager = resource_manager
        self.logger = logging.getLogger(__name__)

    def build(self, task: Task, session_id: str = "") -> str:
        """
        Render the prompt for a task.

        Args:
            task: Task to describe
            session_id: Session the prompt belongs to; scopes cached context documents

        Returns:
            Rendered prompt, truncated to max_length
        """
        spec_dir = Path(task.source.path).parent if task.source else None
        values = {
            'task_id': task.id,
            'task_title': task.title,
            'spec_name': task.spec_name,
            'subtasks': self.format_subtasks(task.subtasks),
            'requirements': ', '.join(task.requirement_refs) if task.requirement_refs else 'None specified',
            'requirements_content': self._context_document(spec_dir, 'requirements.md', session_id),
            'design_content': self._context_document(spec_dir, 'design.md', session_id),
        }

        # Plain replacement; document content may itself contain braces
        prompt = self.template
        for name, value in values.items():
            prompt = prompt.replace('{' + name + '}', value)
        return self.truncate(prompt)

    @staticmethod
    def format_subtasks(subtasks: List[SubTask]) -> str:
        if not subtasks:
            return ''
        lines = ['Subtasks:']
        for subtask in subtasks:
            lines.append(f"- {subtask.id} {subtask.title}")
            lines.extend(f"  {line}" for line in subtask.description)
            if subtask.optional:
                lines.append("  (Optional)")
        return '\n'.join(lines)

    def truncate(self, prompt: str) -> str:
        """
        Cut a prompt to max_length, preferring a sentence or line boundary.

        Args:
            prompt: Prompt text

        Returns:
            The prompt, or its truncated form followed by a notice
        """
        if len(prompt) <= self.max_length:
            return prompt
        truncated = prompt[:self.max_length]
        cut_point = max(truncated.rfind('.'), truncated.rfind('\n'))
        if cut_point > self.max_length * 0.8:
            truncated = truncated[:cut_point + 1]
        return truncated + TRUNCATION_NOTICE

    def _context_document(self, spec_dir: Optional[Path], filename: str, session_id: str) -> str:
        if spec_dir is None:
            return ''
        path = spec_dir / filename
        cache_key = f"context:{session_id}:{path}"
        if self.resource_manager is not None:
            cached = self.resource_manager.cache_get(cache_key)
            if cached is not None:
                return cached

        content = FileUtils.safe_read_file(path) or ''
        if self.resource_manager is not None:
            self.resource_manager.cache_set(cache_key, content)
        return content

