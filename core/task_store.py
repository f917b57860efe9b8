"""
Task store module for TaskPilot.

The task store owns the tasks of one workspace: it discovers task documents,
parses them, answers dependency and readiness questions, writes status
changes back to the documents and re-parses documents when they change on
disk.
"""

import os
import threading
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union
import logging

from ..parsers.task_parser import TaskParser, line_item_id, replace_marker
from ..utils.file_utils import FileUtils
from .change_detector import TaskChanges, diff
from .errors import ParseError
from .event_bus import EventType
from .file_monitor import FileMonitor
from .models import ResourceType, SubTask, Task, TaskDocumentRef, TaskStatus, id_sort_key

DEFAULT_PATTERNS = ('.kiro/specs/*/tasks.md', 'specs/*/tasks.md')

DocumentSource = Union[TaskDocumentRef, str, Path]


class TaskStore:
    """
    Tasks of one workspace, backed by markdown task documents.
    """

    def __init__(self, workspace_root: Path, patterns: Optional[Iterable[str]] = None,
                 parser: Optional[TaskParser] = None, event_bus=None, resource_manager=None,
                 debounce_ms: int = 500, documents: Optional[Iterable[Path]] = None,
                 workspace_id: Optional[str] = None):
        """
        Initialize the task store.

        Args:
            workspace_root: Root directory of the workspace
            patterns: Glob patterns locating task documents below the root
            parser: Task document parser
            event_bus: Optional event bus receiving tasks_changed events
            resource_manager: Optional resource manager for the watcher and parse cache
            debounce_ms: Quiet period before a changed document is re-parsed
            documents: Explicit document paths, used instead of discovery
            workspace_id: Identifier used as event source
        """
        self.workspace_root = Path(workspace_root).resolve()
        self.patterns = tuple(patterns) if patterns else DEFAULT_PATTERNS
        self.parser = parser or TaskParser()
        self.event_bus = event_bus
        self.resource_manager = resource_manager
        self.debounce_ms = debounce_ms
        self.workspace_id = workspace_id or str(self.workspace_root)
        self.logger = logging.getLogger(__name__)

        self._explicit_documents = [Path(path).resolve() for path in documents] if documents else None
        self._lock = threading.RLock()
        self._documents: Dict[str, List[Task]] = {}
        self._doc_refs: Dict[str, TaskDocumentRef] = {}
        self._content_hashes: Dict[str, str] = {}
        self._file_monitor: Optional[FileMonitor] = None
        self._watcher_resource_id: Optional[str] = None

    # Discovery and parsing

    def discover(self) -> List[TaskDocumentRef]:
        """
        Find the task documents of the workspace.

        Returns:
            Document references sorted by spec name
        """
        if self._explicit_documents is not None:
            paths = [path for path in self._explicit_documents if path.is_file()]
        else:
            paths = FileUtils.find_files(self.workspace_root, self.patterns)

        refs = [TaskDocumentRef(path=os.path.abspath(str(path)), spec_name=path.parent.name)
                for path in paths]
        refs.sort(key=lambda ref: (ref.spec_name, ref.path))
        self.logger.debug(f"Discovered {len(refs)} task documents in {self.workspace_root}")
        return refs

    def parse(self, doc: DocumentSource) -> List[Task]:
        """
        Parse one task document.

        Args:
            doc: Document reference or path

        Returns:
            Tasks of the document

        Raises:
            ParseError: If a task line has an unparsable id
        """
        ref = self._to_ref(doc)
        content = self.parser.read_file(ref.path)
        return self._parse_content(content, ref)

    def load(self) -> List[Task]:
        """
        Discover and parse every document, replacing the current tasks.

        Returns:
            All tasks in execution order
        """
        self.refresh()
        return self.get_all_tasks()

    def refresh(self) -> TaskChanges:
        """
        Re-read every document and report what changed.

        Returns:
            Changes relative to the previously loaded tasks
        """
        refs = self.discover()
        loaded: Dict[str, List[Task]] = {}
        hashes: Dict[str, str] = {}
        for ref in refs:
            content = self.parser.read_file(ref.path)
            hashes[ref.path] = FileUtils.get_content_hash(content)
            loaded[ref.path] = self._parse_content(content, ref)

        with self._lock:
            old_tasks = self._all_tasks_unlocked()
            for path, tasks in loaded.items():
                self._merge_statuses(self._documents.get(path, []), tasks)
            self._documents = loaded
            self._doc_refs = {ref.path: ref for ref in refs}
            self._content_hashes = hashes
            changes = diff(old_tasks, self._all_tasks_unlocked())

        self._publish_changes(changes, None)
        return changes

    def _parse_content(self, content: str, ref: TaskDocumentRef) -> List[Task]:
        cache_key = None
        if self.resource_manager is not None:
            cache_key = f"parse:{self.workspace_id}:{ref.path}:{FileUtils.get_content_hash(content)}"
            cached = self.resource_manager.cache_get(cache_key)
            if cached is not None:
                return [Task.from_dict(item) for item in cached]

        tasks = self.parser.parse_content(content, path=ref.path, spec_name=ref.spec_name)
        if cache_key is not None:
            self.resource_manager.cache_set(cache_key, [task.to_dict() for task in tasks])
        return tasks

    def _to_ref(self, doc: DocumentSource) -> TaskDocumentRef:
        if isinstance(doc, TaskDocumentRef):
            return doc
        path = os.path.abspath(str(doc))
        known = self._doc_refs.get(path)
        return known or TaskDocumentRef(path=path, spec_name=Path(path).parent.name)

    @staticmethod
    def _merge_statuses(old_tasks: List[Task], new_tasks: List[Task]):
        # failed and skipped are written as pending markers; keep the richer in-memory value
        previous = {task.id: task for task in old_tasks}
        for task in new_tasks:
            old = previous.get(task.id)
            if old is None:
                continue
            if task.status == TaskStatus.PENDING and old.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                task.status = old.status
            old_subtasks = {subtask.id: subtask for subtask in old.subtasks}
            for subtask in task.subtasks:
                old_subtask = old_subtasks.get(subtask.id)
                if (old_subtask is not None and subtask.status == TaskStatus.PENDING
                        and old_subtask.status in (TaskStatus.FAILED, TaskStatus.SKIPPED)):
                    subtask.status = old_subtask.status

    # Queries

    def _all_tasks_unlocked(self) -> List[Task]:
        tasks = [task for doc_tasks in self._documents.values() for task in doc_tasks]
        tasks.sort(key=lambda task: (task.spec_name, id_sort_key(task.id)))
        return tasks

    def get_all_tasks(self) -> List[Task]:
        """All tasks ordered by spec name, then numeric id."""
        with self._lock:
            return self._all_tasks_unlocked()

    def get_documents(self) -> List[TaskDocumentRef]:
        with self._lock:
            return list(self._doc_refs.values())

    def resolve(self, task_ref: str) -> Tuple[Task, Optional[SubTask]]:
        """
        Resolve a task key, bare task id or subtask id.

        Args:
            task_ref: "spec:id", or an id that is unique in the workspace

        Returns:
            The task, and the subtask when the reference names one

        Raises:
            KeyError: If nothing, or more than one item, matches
        """
        spec_name = None
        item_id = task_ref
        if ':' in task_ref:
            spec_name, item_id = task_ref.rsplit(':', 1)

        matches = []
        with self._lock:
            for task in self._all_tasks_unlocked():
                if spec_name is not None and task.spec_name != spec_name:
                    continue
                if task.id == item_id:
                    matches.append((task, None))
                    continue
                subtask = task.get_subtask(item_id)
                if subtask is not None:
                    matches.append((task, subtask))

        if not matches:
            raise KeyError(f"Unknown task: {task_ref}")
        if len(matches) > 1:
            raise KeyError(f"Ambiguous task id {task_ref}; qualify it as spec:id")
        return matches[0]

    def get_task(self, task_ref: str) -> Optional[Task]:
        try:
            task, subtask = self.resolve(task_ref)
        except KeyError:
            return None
        return task if subtask is None else None

    def get_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        return [task for task in self.get_all_tasks() if task.status == status]

    def _document_tasks(self, task: Task) -> Dict[str, Task]:
        path = task.source.path if task.source else None
        with self._lock:
            return {item.id: item for item in self._documents.get(path, [task])}

    def unsatisfied_dependencies(self, task: Task) -> List[str]:
        """
        Dependencies of a task that are not yet satisfied.

        Args:
            task: Task to check

        Returns:
            Dependency ids that are missing or not completed
        """
        siblings = self._document_tasks(task)
        unsatisfied = []
        for dep_id in task.dependencies:
            dependency = siblings.get(dep_id)
            if dependency is not None:
                if not dependency.is_satisfied():
                    unsatisfied.append(dep_id)
                continue
            parent = siblings.get(dep_id.rsplit('.', 1)[0]) if '.' in dep_id else None
            subtask = parent.get_subtask(dep_id) if parent else None
            if subtask is None or subtask.status not in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
                unsatisfied.append(dep_id)
        return unsatisfied

    def dependencies_satisfied(self, task: Task) -> bool:
        return not self.unsatisfied_dependencies(task)

    def detect_cycles(self) -> Set[str]:
        """
        Find every task that takes part in a dependency cycle.

        Returns:
            Keys of all tasks on a cycle, self-dependencies included
        """
        in_cycle: Set[str] = set()
        with self._lock:
            documents = list(self._documents.values())

        for tasks in documents:
            by_id = {task.id: task for task in tasks}
            graph = {task.id: [dep for dep in task.dependencies if dep in by_id] for task in tasks}
            for start in graph:
                if self._reaches(graph, start, start):
                    in_cycle.add(by_id[start].key)
        return in_cycle

    @staticmethod
    def _reaches(graph: Dict[str, List[str]], start: str, target: str) -> bool:
        stack = list(graph.get(start, []))
        visited: Set[str] = set()
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(graph.get(node, []))
        return False

    def validate_dependencies(self) -> List[str]:
        """
        Describe dependency problems: missing targets and cycles.

        Returns:
            Human-readable problems, empty when the graph is sound
        """
        problems = []
        for task in self.get_all_tasks():
            siblings = self._document_tasks(task)
            for dep_id in task.dependencies:
                parent_id = dep_id.rsplit('.', 1)[0] if '.' in dep_id else None
                known_subtask = (parent_id in siblings and
                                 siblings[parent_id].get_subtask(dep_id) is not None)
                if dep_id not in siblings and not known_subtask:
                    problems.append(f"Task {task.key} depends on missing task {dep_id}")
        for key in sorted(self.detect_cycles()):
            problems.append(f"Task {key} is part of a dependency cycle")
        return problems

    def get_next_ready(self, candidates: Optional[Iterable[str]] = None,
                       exclude: Optional[Iterable[str]] = None) -> Optional[Task]:
        """
        Return the first pending or failed task whose dependencies are completed.

        Tasks on a dependency cycle are never returned.

        Args:
            candidates: Restrict the choice to these task keys
            exclude: Task keys to leave out

        Returns:
            The next ready task, or None when no task qualifies
        """
        candidate_keys = set(candidates) if candidates is not None else None
        excluded = set(exclude or ())
        cycles = self.detect_cycles()

        for task in self.get_all_tasks():
            if candidate_keys is not None and task.key not in candidate_keys:
                continue
            if task.key in excluded or task.key in cycles:
                continue
            if not task.is_ready_status():
                continue
            if self.dependencies_satisfied(task):
                return task
        return None

    def get_statistics(self):
        """
        Count tasks by status.

        Returns:
            Dictionary with totals, per-status counts and completion percentage
        """
        tasks = self.get_all_tasks()
        by_status = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            by_status[task.status.value] += 1
        total = len(tasks)
        return {
            'total': total,
            'by_status': by_status,
            'documents': len(self._doc_refs),
            'percent_complete': round(100.0 * by_status['completed'] / total, 1) if total else 0.0,
        }

    # Status write-back

    def update_status(self, task_ref: str, new_status: TaskStatus) -> None:
        """
        Atomically write a status change back to the task's document.

        Reads the whole document, replaces only the marker of the stored line
        (re-locating it by id if the document shifted), and replaces the file.

        Args:
            task_ref: Task key, task id or subtask id
            new_status: New status

        Raises:
            KeyError: If the task is unknown
            ParseError: If the task's line is no longer in the document
        """
        new_status = TaskStatus(new_status)
        with self._lock:
            task, subtask = self.resolve(task_ref)
            if task.source is None:
                raise ParseError(f"Task {task.key} has no source document")

            path = task.source.path
            item_id = subtask.id if subtask else task.id
            line_index = subtask.line_number if subtask else task.source.line_number

            content = self.parser.read_file(path)
            lines = content.splitlines(keepends=True)
            if line_index >= len(lines) or line_item_id(lines[line_index]) != item_id:
                line_index = self._locate_line(lines, item_id)
                if line_index is None:
                    raise ParseError(f"Task {item_id} is no longer defined", path=path)

            lines[line_index] = replace_marker(lines[line_index], new_status)
            new_content = ''.join(lines)
            FileUtils.atomic_write_file(Path(path), new_content)
            self._content_hashes[path] = FileUtils.get_content_hash(new_content)

            if subtask is not None:
                subtask.status = new_status
                subtask.line_number = line_index
            else:
                task.status = new_status
                task.source.line_number = line_index

        self.logger.debug(f"Updated {task.key}{'/' + subtask.id if subtask else ''} to {new_status.value}")

    @staticmethod
    def _locate_line(lines: List[str], item_id: str) -> Optional[int]:
        for index, line in enumerate(lines):
            if line_item_id(line) == item_id:
                return index
        return None

    # Change notification

    def _matches_patterns(self, file_path: str) -> bool:
        path = Path(os.path.abspath(file_path))
        if self._explicit_documents is not None:
            return path in self._explicit_documents
        try:
            relative = PurePosixPath(path.relative_to(self.workspace_root).as_posix())
        except ValueError:
            return False
        return any(relative.match(pattern) for pattern in self.patterns)

    def start_watching(self) -> None:
        """Watch the task documents and re-parse them after changes settle."""
        if self._file_monitor is not None:
            return

        monitor = FileMonitor(self._on_document_changed, debounce_seconds=self.debounce_ms / 1000.0,
                              path_filter=self._matches_patterns)
        if self._explicit_documents is not None:
            watch_dirs = {path.parent for path in self._explicit_documents}
        else:
            watch_dirs = {self.workspace_root / FileUtils.static_prefix(pattern) for pattern in self.patterns}
        for directory in sorted(watch_dirs):
            if directory.exists():
                monitor.add_path(directory)
        if not monitor.monitoring_paths:
            monitor.add_path(self.workspace_root)

        monitor.start()
        self._file_monitor = monitor
        if self.resource_manager is not None:
            self._watcher_resource_id = self.resource_manager.register_resource(
                ResourceType.WATCHER, f"task-documents:{self.workspace_id}",
                metadata={'workspace_id': self.workspace_id}, dispose=monitor.stop)

    def stop_watching(self) -> None:
        """Stop watching task documents."""
        monitor, self._file_monitor = self._file_monitor, None
        if monitor is None:
            return
        if self.resource_manager is not None and self._watcher_resource_id is not None:
            self.resource_manager.release_resource(self._watcher_resource_id)
            self._watcher_resource_id = None
        else:
            monitor.stop()

    def is_watching(self) -> bool:
        return self._file_monitor is not None

    def _on_document_changed(self, file_path: str, event_type: str) -> None:
        """
        Re-parse one document after its debounce period.

        Args:
            file_path: Changed document
            event_type: Last file system event seen for it
        """
        path = os.path.abspath(file_path)
        with self._lock:
            old_tasks = list(self._documents.get(path, []))
            if event_type == 'deleted' or not os.path.exists(path):
                self._documents.pop(path, None)
                self._doc_refs.pop(path, None)
                self._content_hashes.pop(path, None)
                new_tasks: List[Task] = []
            else:
                try:
                    content = self.parser.read_file(path)
                except ParseError as e:
                    self.logger.error(f"Cannot re-read {path}: {e}")
                    return
                content_hash = FileUtils.get_content_hash(content)
                if self._content_hashes.get(path) == content_hash:
                    return
                ref = self._to_ref(path)
                try:
                    new_tasks = self._parse_content(content, ref)
                except ParseError as e:
                    self.logger.error(f"Keeping previous tasks of {path}: {e}")
                    return
                self._merge_statuses(old_tasks, new_tasks)
                self._documents[path] = new_tasks
                self._doc_refs[path] = ref
                self._content_hashes[path] = content_hash
            changes = diff(old_tasks, new_tasks)

        self._publish_changes(changes, path)

    def _publish_changes(self, changes: TaskChanges, path: Optional[str]) -> None:
        if not changes.has_changes():
            return
        self.logger.info(f"Task changes in {path or self.workspace_root}: {changes.summary()}")
        if self.event_bus is not None:
            self.event_bus.publish(EventType.TASKS_CHANGED,
                                   {'path': path, 'changes': changes},
                                   source=self.workspace_id)
