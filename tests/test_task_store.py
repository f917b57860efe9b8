"""
Tests for the task store and file monitoring in TaskPilot.
"""

import time
import pytest
from unittest.mock import Mock

from taskpilot.core.errors import ParseError
from taskpilot.core.event_bus import EventBus, EventType
from taskpilot.core.file_monitor import FileMonitor, TaskDocumentHandler
from taskpilot.core.models import ResourceType, TaskStatus
from taskpilot.core.resource_manager import ResourceManager
from taskpilot.core.task_store import TaskStore

from conftest import write_spec


CYCLIC_TASKS = """- [ ] 1. First
  - _Depends: 2_
- [ ] 2. Second
  - _Depends: 1_
- [ ] 3. Self
  - _Depends: 3_
- [ ] 4. Free
"""


class TestTaskStoreQueries:
    """Tests for discovery, lookup and readiness."""

    def test_load_discovers_documents(self, task_store, tasks_file):
        """Test that the spec document is found and parsed."""
        tasks = task_store.get_all_tasks()

        assert [task.key for task in tasks] == ['demo:1', 'demo:2', 'demo:3']
        assert task_store.get_documents()[0].path == str(tasks_file)
        assert task_store.get_documents()[0].spec_name == 'demo'

    def test_load_orders_by_spec_then_numeric_id(self, tmp_path):
        """Test ordering across documents and multi-digit ids."""
        write_spec(tmp_path, 'beta', "- [ ] 1. Beta one\n")
        write_spec(tmp_path, 'alpha', "- [ ] 10. Ten\n- [ ] 9. Nine\n")
        store = TaskStore(tmp_path)

        keys = [task.key for task in store.load()]

        assert keys == ['alpha:9', 'alpha:10', 'beta:1']

    def test_specs_directory_is_discovered(self, tmp_path):
        """Test the second default discovery pattern."""
        spec_dir = tmp_path / 'specs' / 'plain'
        spec_dir.mkdir(parents=True)
        (spec_dir / 'tasks.md').write_text("- [ ] 1. Only\n")

        store = TaskStore(tmp_path)

        assert [task.key for task in store.load()] == ['plain:1']

    def test_resolve_references(self, task_store):
        """Test resolving keys, bare ids and subtask ids."""
        task, subtask = task_store.resolve('demo:2')
        assert task.id == '2' and subtask is None

        task, subtask = task_store.resolve('3')
        assert task.id == '3' and subtask is None

        task, subtask = task_store.resolve('2.1')
        assert task.id == '2'
        assert subtask.id == '2.1'

        with pytest.raises(KeyError):
            task_store.resolve('demo:99')

    def test_resolve_ambiguous_bare_id(self, tmp_path):
        """Test that an id used by two specs must be qualified."""
        write_spec(tmp_path, 'alpha', "- [ ] 1. A\n")
        write_spec(tmp_path, 'beta', "- [ ] 1. B\n")
        store = TaskStore(tmp_path)
        store.load()

        with pytest.raises(KeyError, match='Ambiguous'):
            store.resolve('1')
        assert store.resolve('beta:1')[0].title == 'B'

    def test_get_task_ignores_subtasks(self, task_store):
        """Test that get_task only returns top-level tasks."""
        assert task_store.get_task('demo:1').title == 'Set up project structure'
        assert task_store.get_task('2.1') is None
        assert task_store.get_task('nope') is None

    def test_next_ready_follows_dependencies(self, task_store):
        """Test that readiness waits for completed dependencies."""
        assert task_store.get_next_ready().key == 'demo:1'

        task_store.update_status('demo:1', TaskStatus.COMPLETED)
        assert task_store.get_next_ready().key == 'demo:2'

        task_store.update_status('demo:2', TaskStatus.COMPLETED)
        # 2.1 is required and still pending
        assert task_store.get_next_ready() is None

        task_store.update_status('demo:2.1', TaskStatus.COMPLETED)
        assert task_store.get_next_ready().key == 'demo:3'

    def test_next_ready_respects_candidates_and_exclude(self, task_store):
        """Test restricting and excluding candidates."""
        assert task_store.get_next_ready(exclude=['demo:1']) is None
        assert task_store.get_next_ready(candidates=['demo:3']) is None
        assert task_store.get_next_ready(candidates=['demo:1', 'demo:3']).key == 'demo:1'

    def test_failed_task_is_ready_again(self, task_store):
        """Test that failed tasks are eligible for another attempt."""
        task_store.update_status('demo:1', TaskStatus.FAILED)

        assert task_store.get_next_ready().key == 'demo:1'

    def test_subtask_dependency(self, tmp_path):
        """Test depending on a subtask of another task."""
        write_spec(tmp_path, 'sub', (
            "- [ ] 1. Parent\n"
            "  - [ ] 1.1 Child\n"
            "- [ ] 2. Needs child\n"
            "  - _Depends: 1.1_\n"
        ))
        store = TaskStore(tmp_path)
        store.load()
        task = store.get_task('sub:2')

        assert store.unsatisfied_dependencies(task) == ['1.1']
        store.update_status('sub:1.1', TaskStatus.COMPLETED)
        assert store.dependencies_satisfied(task)

    def test_detect_cycles(self, tmp_path):
        """Test that every task on a cycle is flagged and never scheduled."""
        write_spec(tmp_path, 'cyc', CYCLIC_TASKS)
        store = TaskStore(tmp_path)
        store.load()

        assert store.detect_cycles() == {'cyc:1', 'cyc:2', 'cyc:3'}
        assert store.get_next_ready().key == 'cyc:4'

        problems = store.validate_dependencies()
        assert "Task cyc:1 is part of a dependency cycle" in problems
        assert "Task cyc:3 is part of a dependency cycle" in problems

    def test_validate_reports_missing_dependency(self, tmp_path):
        """Test that a dependency on an undefined task is reported."""
        write_spec(tmp_path, 'gap', "- [ ] 1. Lonely\n  - _Depends: 9_\n")
        store = TaskStore(tmp_path)
        store.load()

        assert store.validate_dependencies() == ["Task gap:1 depends on missing task 9"]
        assert store.get_next_ready() is None

    def test_statistics(self, task_store):
        """Test counting tasks by status."""
        task_store.update_status('demo:1', TaskStatus.COMPLETED)
        stats = task_store.get_statistics()

        assert stats['total'] == 3
        assert stats['by_status']['completed'] == 1
        assert stats['by_status']['pending'] == 2
        assert stats['percent_complete'] == 33.3

    def test_explicit_documents(self, tmp_path):
        """Test using explicit document paths instead of discovery."""
        document = tmp_path / 'plan' / 'tasks.md'
        document.parent.mkdir()
        document.write_text("- [ ] 1. Explicit\n")

        store = TaskStore(tmp_path, documents=[document])

        assert [task.key for task in store.load()] == ['plan:1']


class TestTaskStoreWriteBack:
    """Tests for writing status changes to documents."""

    def test_update_status_changes_only_the_marker(self, task_store, tasks_file, sample_tasks_content):
        """Test that exactly one character of the document changes."""
        task_store.update_status('demo:1', TaskStatus.COMPLETED)

        expected = sample_tasks_content.replace("- [ ] 1. Set up", "- [x] 1. Set up")
        assert tasks_file.read_text() == expected
        assert task_store.get_task('demo:1').status == TaskStatus.COMPLETED

    def test_update_subtask_status(self, task_store, tasks_file):
        """Test writing a subtask marker."""
        task_store.update_status('demo:2.2', TaskStatus.IN_PROGRESS)

        assert "  - [~]* 2.2 Write model tests" in tasks_file.read_text()

    def test_update_status_relocates_shifted_line(self, task_store, tasks_file):
        """Test writing back after lines were inserted above the task."""
        tasks_file.write_text("Intro line\n\n" + tasks_file.read_text())

        task_store.update_status('demo:3', TaskStatus.COMPLETED)

        lines = tasks_file.read_text().splitlines()
        assert "- [x] 3. Wire everything together" in lines
        assert lines[0] == "Intro line"
        assert task_store.get_task('demo:3').source.line_number == 15

    def test_update_status_preserves_crlf(self, tmp_path):
        """Test that Windows line endings survive a status write."""
        document = write_spec(tmp_path, 'win', "")
        document.write_bytes(b"- [ ] 1. First\r\n- [ ] 2. Second\r\n")
        store = TaskStore(tmp_path)
        store.load()

        store.update_status('win:2', TaskStatus.COMPLETED)

        assert document.read_bytes() == b"- [ ] 1. First\r\n- [x] 2. Second\r\n"

    def test_update_status_of_removed_task(self, task_store, tasks_file):
        """Test that a task deleted from disk cannot be written."""
        tasks_file.write_text("- [ ] 1. Set up project structure\n")

        with pytest.raises(ParseError):
            task_store.update_status('demo:3', TaskStatus.COMPLETED)

    def test_update_unknown_task(self, task_store):
        """Test that unknown references raise KeyError."""
        with pytest.raises(KeyError):
            task_store.update_status('demo:42', TaskStatus.COMPLETED)

    def test_failed_status_survives_refresh(self, task_store, tasks_file):
        """Test that failed is kept in memory although the document shows a blank box."""
        task_store.update_status('demo:1', TaskStatus.FAILED)
        assert "- [ ] 1. Set up" in tasks_file.read_text()

        task_store.refresh()

        assert task_store.get_task('demo:1').status == TaskStatus.FAILED

    def test_no_temporary_files_left(self, task_store, tasks_file):
        """Test that the atomic write cleans up after itself."""
        task_store.update_status('demo:1', TaskStatus.COMPLETED)

        assert sorted(path.name for path in tasks_file.parent.iterdir()) == ['tasks.md']


class TestTaskStoreChangeNotification:
    """Tests for re-parsing documents after changes."""

    @pytest.fixture
    def watched_store(self, workspace):
        bus = EventBus()
        events = []
        bus.subscribe(EventType.TASKS_CHANGED, events.append)
        store = TaskStore(workspace, event_bus=bus)
        store.load()
        return store, events

    def test_external_edit_publishes_changes(self, watched_store, tasks_file):
        """Test that an edited document is re-parsed and announced."""
        store, events = watched_store
        tasks_file.write_text(tasks_file.read_text().replace("- [ ] 1.", "- [x] 1.") +
                              "\n- [ ] 4. Ship it\n")

        store._on_document_changed(str(tasks_file), 'modified')

        assert store.get_task('demo:1').status == TaskStatus.COMPLETED
        assert store.get_task('demo:4') is not None
        changes = events[-1].data['changes']
        assert [task.key for task in changes.added] == ['demo:4']
        assert changes.status_changes[0].new_status == TaskStatus.COMPLETED

    def test_unchanged_content_is_ignored(self, watched_store, tasks_file):
        """Test that events without a content change do nothing."""
        store, events = watched_store

        store._on_document_changed(str(tasks_file), 'modified')

        assert events == []

    def test_own_writes_are_ignored(self, watched_store, tasks_file):
        """Test that a status write does not trigger a re-parse event."""
        store, events = watched_store
        store.update_status('demo:1', TaskStatus.COMPLETED)

        store._on_document_changed(str(tasks_file), 'modified')

        assert events == []

    def test_deleted_document_removes_tasks(self, watched_store, tasks_file):
        """Test that deleting a document drops its tasks."""
        store, events = watched_store
        tasks_file.unlink()

        store._on_document_changed(str(tasks_file), 'deleted')

        assert store.get_all_tasks() == []
        assert len(events[-1].data['changes'].removed) == 3

    def test_unparsable_edit_keeps_previous_tasks(self, watched_store, tasks_file):
        """Test that a broken document does not wipe the known tasks."""
        store, events = watched_store
        tasks_file.write_text("- [ ] 1. Fine\n- [ ] 1x. Broken\n")

        store._on_document_changed(str(tasks_file), 'modified')

        assert len(store.get_all_tasks()) == 3
        assert events == []

    def test_pattern_matching(self, task_store, workspace, tasks_file):
        """Test which paths count as task documents."""
        assert task_store._matches_patterns(str(tasks_file))
        assert not task_store._matches_patterns(str(workspace / 'README.md'))
        assert not task_store._matches_patterns(str(tasks_file.parent / 'design.md'))

    def test_watching_registers_resource(self, workspace):
        """Test that the watcher is tracked by the resource manager."""
        manager = ResourceManager()
        store = TaskStore(workspace, resource_manager=manager)
        store.load()

        store.start_watching()
        try:
            assert store.is_watching()
            assert len(manager.get_resources(ResourceType.WATCHER)) == 1
        finally:
            store.stop_watching()

        assert not store.is_watching()
        assert manager.get_resources(ResourceType.WATCHER) == []


class TestFileMonitor:
    """Tests for the FileMonitor class."""

    def test_rapid_events_collapse(self):
        """Test that bursts of events produce one callback with the last event type."""
        callback = Mock()
        monitor = FileMonitor(callback, debounce_seconds=30, observer_factory=Mock())

        monitor.notify('modified', '/ws/tasks.md')
        monitor.notify('modified', '/ws/tasks.md')
        monitor.notify('deleted', '/ws/tasks.md')
        assert monitor.pending_count() == 1

        monitor.flush()

        callback.assert_called_once_with('/ws/tasks.md', 'deleted')
        assert monitor.pending_count() == 0

    def test_debounce_fires_after_quiet_period(self):
        """Test that the timer fires on its own."""
        callback = Mock()
        monitor = FileMonitor(callback, debounce_seconds=0.05, observer_factory=Mock())

        monitor.notify('modified', '/ws/tasks.md')
        deadline = time.time() + 2
        while not callback.called and time.time() < deadline:
            time.sleep(0.02)

        callback.assert_called_once_with('/ws/tasks.md', 'modified')

    def test_files_debounce_independently(self):
        """Test that each file has its own timer."""
        callback = Mock()
        monitor = FileMonitor(callback, debounce_seconds=30, observer_factory=Mock())

        monitor.notify('modified', '/ws/a/tasks.md')
        monitor.notify('created', '/ws/b/tasks.md')
        monitor.flush()

        assert callback.call_count == 2

    def test_start_and_stop(self, tmp_path):
        """Test that the observer is scheduled, started and stopped."""
        observer = Mock()
        monitor = FileMonitor(Mock(), observer_factory=lambda: observer)
        monitor.add_path(tmp_path)

        monitor.start()
        assert monitor.running
        observer.schedule.assert_called_once_with(monitor.event_handler, str(tmp_path), recursive=True)
        observer.start.assert_called_once()

        monitor.notify('modified', str(tmp_path / 'tasks.md'))
        monitor.stop()
        assert not monitor.running
        assert monitor.pending_count() == 0
        observer.stop.assert_called_once()

    def test_add_missing_path(self, tmp_path):
        """Test that a missing directory is not watched."""
        monitor = FileMonitor(Mock(), observer_factory=Mock())
        monitor.add_path(tmp_path / 'missing')

        assert not monitor.is_monitoring(tmp_path / 'missing')


class TestTaskDocumentHandler:
    """Tests for the watchdog event handler."""

    def test_filtered_events(self):
        """Test that only accepted paths reach the callback."""
        callback = Mock()
        handler = TaskDocumentHandler(callback, path_filter=lambda path: path.endswith('tasks.md'))

        handler.on_modified(Mock(is_directory=False, src_path='/ws/tasks.md'))
        handler.on_modified(Mock(is_directory=False, src_path='/ws/notes.txt'))
        handler.on_created(Mock(is_directory=True, src_path='/ws/dir'))

        callback.assert_called_once_with('modified', '/ws/tasks.md')

    def test_move_is_delete_plus_create(self):
        """Test the events produced by an atomic replace."""
        callback = Mock()
        handler = TaskDocumentHandler(callback)

        handler.on_moved(Mock(is_directory=False, src_path='/ws/.tmp', dest_path='/ws/tasks.md'))

        assert [call.args for call in callback.call_args_list] == [
            ('deleted', '/ws/.tmp'),
            ('created', '/ws/tasks.md'),
        ]
