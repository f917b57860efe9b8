"""
File monitoring module for TaskPilot.

This module watches task documents for changes and reports each changed file
once its writes have gone quiet for the debounce period.
"""

import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Set
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
import logging


class TaskDocumentHandler(FileSystemEventHandler):
    """
    Event handler for task document changes.
    """

    def __init__(self, callback: Callable[[str, str], None],
                 path_filter: Optional[Callable[[str], bool]] = None):
        """
        Initialize the file handler.

        Args:
            callback: Function to call with (event_type, file_path)
            path_filter: Predicate selecting the paths worth reporting
        """
        super().__init__()
        self.callback = callback
        self.path_filter = path_filter
        self.logger = logging.getLogger(__name__)

    def on_modified(self, event):
        if not event.is_directory:
            self._handle_event('modified', str(event.src_path))

    def on_created(self, event):
        if not event.is_directory:
            self._handle_event('created', str(event.src_path))

    def on_deleted(self, event):
        if not event.is_directory:
            self._handle_event('deleted', str(event.src_path))

    def on_moved(self, event):
        if not event.is_directory:
            # A move is a deletion of the old path plus a creation of the new one
            self._handle_event('deleted', str(event.src_path))
            dest_path = getattr(event, 'dest_path', None)
            if dest_path:
                self._handle_event('created', str(dest_path))

    def _handle_event(self, event_type: str, file_path: str):
        if self.path_filter is not None and not self.path_filter(file_path):
            return
        try:
            self.callback(event_type, file_path)
        except Exception as e:
            self.logger.error(f"Error in file event callback: {str(e)}")


class FileMonitor:
    """
    Watches directories with watchdog and debounces events per file.

    Rapid successive events for one file collapse into a single callback
    fired after `debounce_seconds` without further events; the callback
    receives the last event type seen for the file.
    """

    def __init__(self, callback: Callable[[str, str], None], debounce_seconds: float = 0.5,
                 path_filter: Optional[Callable[[str], bool]] = None,
                 observer_factory: Callable[[], Observer] = Observer):
        """
        Initialize the file monitor.

        Args:
            callback: Function called with (file_path, event_type) after the quiet period
            debounce_seconds: Quiet period before a change is reported
            path_filter: Predicate selecting the paths worth reporting
            observer_factory: Factory for the watchdog observer
        """
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self.logger = logging.getLogger(__name__)

        self._observer_factory = observer_factory
        self.observer = None
        self.monitoring_paths: Set[Path] = set()
        self.event_handler = TaskDocumentHandler(self.notify, path_filter)
        self.running = False

        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}
        self._pending_events: Dict[str, str] = {}

    def notify(self, event_type: str, file_path: str):
        """
        Record a file event and (re)start that file's debounce timer.

        Args:
            event_type: Type of file system event
            file_path: Path to the changed file
        """
        with self._lock:
            existing = self._timers.get(file_path)
            if existing is not None:
                existing.cancel()
            self._pending_events[file_path] = event_type
            timer = threading.Timer(self.debounce_seconds, self._fire, args=(file_path,))
            timer.daemon = True
            self._timers[file_path] = timer
            timer.start()
        self.logger.debug(f"File {event_type}: {file_path} (debouncing)")

    def _fire(self, file_path: str):
        with self._lock:
            self._timers.pop(file_path, None)
            event_type = self._pending_events.pop(file_path, None)
        if event_type is None:
            return
        self.logger.info(f"File {event_type}: {file_path}")
        try:
            self.callback(file_path, event_type)
        except Exception as e:
            self.logger.error(f"Error handling change of {file_path}: {str(e)}")

    def pending_count(self) -> int:
        """Number of files waiting out their quiet period."""
        with self._lock:
            return len(self._timers)

    def flush(self):
        """Fire every pending debounce timer immediately."""
        with self._lock:
            pending = list(self._timers.items())
        for file_path, timer in pending:
            timer.cancel()
            self._fire(file_path)

    def start(self):
        """Start watching the registered paths."""
        if self.running:
            self.logger.warning("File monitor already running")
            return

        self.observer = self._observer_factory()
        for path in self.monitoring_paths:
            if path.exists():
                self.observer.schedule(self.event_handler, str(path), recursive=True)
                self.logger.info(f"Monitoring path: {path}")

        self.observer.start()
        self.running = True
        self.logger.info("File monitoring started")

    def stop(self):
        """Stop watching and drop pending notifications."""
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending_events.clear()

        if not self.running:
            return

        self.observer.stop()
        self.observer.join(timeout=5)  # Wait up to 5 seconds for cleanup
        self.running = False
        self.logger.info("File monitoring stopped")

    def add_path(self, path: Path):
        """
        Add a directory to watch.

        Args:
            path: Directory to watch recursively
        """
        if not path.exists():
            self.logger.warning(f"Path does not exist, cannot monitor: {path}")
            return

        if path not in self.monitoring_paths:
            self.monitoring_paths.add(path)
            if self.running:
                self.observer.schedule(self.event_handler, str(path), recursive=True)
                self.logger.info(f"Added monitoring path: {path}")

    def is_monitoring(self, path: Path) -> bool:
        return path in self.monitoring_paths
