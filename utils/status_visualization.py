"""
Status visualization utilities for TaskPilot.

This module provides utilities for visualizing task, session and workspace
statuses with color coding and progress indicators.
"""

from typing import Any, Dict, List, Optional
from itertools import groupby
import logging

from rich.table import Table
from rich.text import Text
from rich.tree import Tree as RichTree

from .formatting import FormattingUtils
from ..core.models import AutomationSession, Task, TaskStatus
from ..core.session_store import session_statistics


class StatusVisualization:
    """
    Utility class for status visualization in TaskPilot.
    """

    logger = logging.getLogger(__name__)

    # Status symbols
    STATUS_SYMBOLS = {
        'completed': '✔',
        'in_progress': '▶',
        'pending': '○',
        'failed': '✘',
        'skipped': '↷',
    }

    @classmethod
    def get_status_symbol(cls, status: str) -> str:
        """
        Get the symbol for a given status.

        Args:
            status: Status string

        Returns:
            Symbol for the status
        """
        value = getattr(status, 'value', status)
        return cls.STATUS_SYMBOLS.get(str(value).lower(), '?')

    @classmethod
    def format_status_text(cls, status: str, include_symbol: bool = True) -> Text:
        """
        Format status text with color and symbol.

        Args:
            status: Status string
            include_symbol: Whether to include symbol

        Returns:
            Formatted Text object
        """
        value = str(getattr(status, 'value', status)).lower()
        color = FormattingUtils.STATUS_STYLES.get(value, 'blue')
        label = value.upper().replace('_', ' ')
        if include_symbol:
            return Text(f"{cls.get_status_symbol(value)} {label}", style=f"bold {color}")
        return Text(label, style=f"bold {color}")

    @classmethod
    def create_progress_bar(cls, completed: int, total: int, width: int = 30) -> str:
        """
        Create a text-based progress bar.

        Args:
            completed: Completed task count
            total: Total task count
            width: Width of the progress bar

        Returns:
            Progress bar in rich markup
        """
        progress_percent = (completed / total) * 100 if total else 0.0
        filled_chars = int((progress_percent / 100) * width)
        filled = '█' * filled_chars
        empty = '░' * (width - filled_chars)

        if progress_percent >= 80:
            bar_color = 'green'
        elif progress_percent >= 50:
            bar_color = 'yellow'
        else:
            bar_color = 'red'

        return f"[{bar_color}]{filled}{empty}[/] {progress_percent:.1f}%"

    @classmethod
    def create_task_table(cls, tasks: List[Task], title: str = "Tasks",
                          blocked: Optional[Dict[str, List[str]]] = None) -> Table:
        """
        Create a Rich table listing tasks.

        Args:
            tasks: Tasks in execution order
            title: Table title
            blocked: Unsatisfied dependencies per task key

        Returns:
            Rich Table object
        """
        blocked = blocked or {}
        table = Table(title=title, show_header=True, header_style="bold magenta")
        table.add_column("Task", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Subtasks", justify="right")
        table.add_column("Depends on", style="dim")

        if not tasks:
            table.add_row("-", "No tasks found", "", "", "")
            return table

        for task in tasks:
            done = sum(1 for subtask in task.subtasks
                       if subtask.status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED))
            subtasks = f"{done}/{len(task.subtasks)}" if task.subtasks else ""
            depends = ', '.join(task.dependencies)
            if task.key in blocked:
                depends = f"{depends} [red](waiting: {', '.join(blocked[task.key])})[/red]"
            table.add_row(task.key, task.title, cls.format_status_text(task.status), subtasks, depends)

        return table

    @classmethod
    def create_task_tree(cls, tasks: List[Task]) -> RichTree:
        """
        Create a tree of documents, tasks and subtasks.

        Args:
            tasks: Tasks in execution order

        Returns:
            Rich Tree object
        """
        root = RichTree("[bold]Task documents[/bold]")
        for spec_name, spec_tasks in groupby(tasks, key=lambda task: task.spec_name):
            spec_branch = root.add(f"[bold cyan]{spec_name or 'tasks'}[/bold cyan]")
            for task in spec_tasks:
                label = Text.assemble(cls.format_status_text(task.status), f"  {task.id} {task.title}")
                task_branch = spec_branch.add(label)
                for subtask in task.subtasks:
                    suffix = " (optional)" if subtask.optional else ""
                    task_branch.add(Text.assemble(cls.format_status_text(subtask.status),
                                                  f"  {subtask.id} {subtask.title}{suffix}"))
        return root

    @classmethod
    def create_status_summary_table(cls, statistics: Dict[str, Any]) -> Table:
        """
        Create a Rich table showing status summary.

        Args:
            statistics: Output of TaskStore.get_statistics()

        Returns:
            Rich Table object
        """
        table = Table(title="Task Status Summary", show_header=True, header_style="bold magenta")
        table.add_column("Status", style="dim")
        table.add_column("Count", justify="right")
        table.add_column("Percentage", justify="right")

        total = statistics.get('total', 0)
        if not total:
            table.add_row("No tasks", "0", "0.0%")
            return table

        for status, count in statistics.get('by_status', {}).items():
            if count:
                table.add_row(cls.format_status_text(status), str(count),
                              FormattingUtils.format_percentage(count, total))

        table.add_row("[bold]TOTAL[/]", str(total), "100.0%")
        return table

    @classmethod
    def create_session_table(cls, session: AutomationSession, queue: Optional[List[str]] = None) -> Table:
        """
        Create a Rich table describing an automation session.

        Args:
            session: Session to describe
            queue: Remaining execution queue, if known

        Returns:
            Rich Table object
        """
        stats = session_statistics(session)
        table = Table(title=f"Session {session.id}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")

        table.add_row("Workspace", session.workspace_id)
        table.add_row("Status", cls.format_status_text(session.status, include_symbol=False))
        table.add_row("Started", session.start_time.strftime("%Y-%m-%d %H:%M:%S"))
        if session.end_time:
            table.add_row("Ended", session.end_time.strftime("%Y-%m-%d %H:%M:%S"))
        table.add_row("Duration", FormattingUtils.format_duration(stats['duration']))
        table.add_row("Progress", cls.create_progress_bar(len(session.completed_tasks), session.total_tasks))
        table.add_row("Completed", ', '.join(session.completed_tasks) or '-')
        table.add_row("Failed", ', '.join(session.failed_tasks) or '-')
        table.add_row("Skipped", ', '.join(session.skipped_tasks) or '-')
        if session.current_task_id:
            table.add_row("Current task", session.current_task_id)
        if queue is not None:
            table.add_row("Queued", ', '.join(queue) or '-')
        if session.error:
            table.add_row("Error", f"[red]{session.error.message}[/red]")
        return table

    @classmethod
    def create_workspace_results_table(cls, results: List[Any]) -> Table:
        """
        Create a Rich table of per-workspace scheduler results.

        Args:
            results: WorkspaceResult objects

        Returns:
            Rich Table object
        """
        table = Table(title="Workspace Results", show_header=True, header_style="bold magenta")
        table.add_column("Workspace", style="cyan")
        table.add_column("Status")
        table.add_column("Completed", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error", style="red")

        for result in results:
            table.add_row(
                result.workspace_id,
                cls.format_status_text(result.status, include_symbol=False),
                str(result.completed),
                str(result.failed),
                FormattingUtils.format_duration(result.elapsed),
                result.error or "",
            )
        return table
