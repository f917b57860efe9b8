"""
Concurrent workspace scheduling for TaskPilot.

Runs one automation engine per workspace, admitting at most
`max_concurrent` of them at a time in priority order.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import logging

from .errors import InvalidStateTransition
from .event_bus import EventType
from .models import SessionStatus, WorkspaceAllocation


@dataclass
class WorkspaceResult:
    """Outcome of one workspace run."""
    workspace_id: str
    status: str
    elapsed: float = 0.0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workspace_id': self.workspace_id,
            'status': self.status,
            'elapsed': self.elapsed,
            'completed': self.completed,
            'failed': self.failed,
            'skipped': self.skipped,
            'error': self.error,
        }


@dataclass
class _Slot:
    allocation: WorkspaceAllocation
    engine: Any = None
    thread: Optional[threading.Thread] = None
    started_at: float = field(default_factory=time.monotonic)
    stop_requested: bool = False


class ConcurrentWorkspaceScheduler:
    """
    Admits workspaces into a bounded pool of running engines.
    """

    def __init__(self, engine_factory: Callable[[str], Any], max_concurrent: int = 2, event_bus=None,
                 default_priority: int = 5, default_memory_mb: float = 100.0):
        """
        Initialize the scheduler.

        Args:
            engine_factory: Builds an AutomationEngine for a workspace id
            max_concurrent: Maximum number of engines running at once
            event_bus: Optional event bus for admission events
            default_priority: Priority of workspaces without an explicit one
            default_memory_mb: Memory budget of workspaces without an explicit one
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.engine_factory = engine_factory
        self.max_concurrent = max_concurrent
        self.event_bus = event_bus
        self.default_priority = default_priority
        self.default_memory_mb = default_memory_mb
        self.logger = logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._pending: List[WorkspaceAllocation] = []
        self._active: Dict[str, _Slot] = {}
        self._results: Dict[str, WorkspaceResult] = {}
        self._stopping = False

    def start_concurrent(self, workspace_ids: List[str], priorities: Optional[Dict[str, int]] = None,
                         resource_limits: Optional[Dict[str, float]] = None) -> None:
        """
        Queue workspaces and admit as many as the concurrency limit allows.

        Higher priorities are admitted first; equal priorities keep their
        input order.

        Args:
            workspace_ids: Workspaces to run
            priorities: Priority per workspace id
            resource_limits: Memory budget in MB per workspace id
        """
        priorities = priorities or {}
        resource_limits = resource_limits or {}
        allocations = [
            WorkspaceAllocation(
                workspace_id=workspace_id,
                max_memory_budget=resource_limits.get(workspace_id, self.default_memory_mb),
                priority=priorities.get(workspace_id, self.default_priority),
            )
            for workspace_id in workspace_ids
        ]
        with self._lock:
            self._stopping = False
            self._pending.extend(allocations)
            self._pending.sort(key=lambda allocation: -allocation.priority)
        self.logger.info(f"Scheduling {len(allocations)} workspaces with max {self.max_concurrent} concurrent")
        self._admit()

    def run_concurrent(self, workspace_ids: List[str], priorities: Optional[Dict[str, int]] = None,
                       resource_limits: Optional[Dict[str, float]] = None,
                       timeout: Optional[float] = None) -> List[WorkspaceResult]:
        """
        Run workspaces to completion and return their results.

        Returns:
            Results in input order
        """
        self.start_concurrent(workspace_ids, priorities, resource_limits)
        self.wait(timeout)
        with self._lock:
            return [self._results[workspace_id] for workspace_id in workspace_ids
                    if workspace_id in self._results]

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no workspace is queued or running.

        Returns:
            True if everything finished within the timeout
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._idle:
            while self._pending or self._active:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining if remaining is not None else 1.0)
        return True

    def _admit(self):
        admitted = []
        with self._lock:
            while not self._stopping and self._pending and len(self._active) < self.max_concurrent:
                allocation = self._pending.pop(0)
                allocation.max_concurrency_share = 1
                slot = _Slot(allocation=allocation)
                self._active[allocation.workspace_id] = slot
                admitted.append(slot)

        for slot in admitted:
            workspace_id = slot.allocation.workspace_id
            try:
                engine = self.engine_factory(workspace_id)
            except Exception as e:
                self.logger.error(f"Could not create engine for {workspace_id}: {e}")
                self._finish(slot, WorkspaceResult(workspace_id=workspace_id, status='error', error=str(e)))
                continue
            with self._lock:
                slot.engine = engine
                stop_requested = slot.stop_requested
            if stop_requested:
                engine.request_stop()
            slot.thread = threading.Thread(target=self._run_workspace, args=(slot,),
                                           name=f"workspace-{workspace_id}", daemon=True)
            self.logger.info(f"Admitted workspace {workspace_id} (priority {slot.allocation.priority})")
            self._emit(EventType.WORKSPACE_ADMITTED, {
                'workspace_id': workspace_id,
                'priority': slot.allocation.priority,
                'memory_budget_mb': slot.allocation.max_memory_budget,
            })
            slot.thread.start()

    def _run_workspace(self, slot: _Slot):
        workspace_id = slot.allocation.workspace_id
        try:
            session = slot.engine.run()
            result = WorkspaceResult(
                workspace_id=workspace_id,
                status=session.status.value,
                completed=len(session.completed_tasks),
                failed=len(session.failed_tasks),
                skipped=len(session.skipped_tasks),
                error=session.error.message if session.error else None,
            )
        except Exception as e:
            self.logger.error(f"Workspace {workspace_id} failed: {e}")
            result = WorkspaceResult(workspace_id=workspace_id, status=SessionStatus.FAILED.value, error=str(e))
        self._finish(slot, result)

    def _finish(self, slot: _Slot, result: WorkspaceResult):
        result.elapsed = time.monotonic() - slot.started_at
        self.logger.info(f"Workspace {result.workspace_id} finished: {result.status}")
        self._emit(EventType.WORKSPACE_FINISHED, result.to_dict())
        with self._lock:
            self._active.pop(result.workspace_id, None)
            self._results[result.workspace_id] = result
            self._idle.notify_all()
        self._admit()
        with self._lock:
            self._idle.notify_all()

    def pause_all(self) -> int:
        """Pause every running engine; returns how many were paused."""
        return self._for_each_engine('pause')

    def resume_all(self) -> int:
        """Resume every paused engine; returns how many were resumed."""
        return self._for_each_engine('resume')

    def stop_all(self) -> int:
        """
        Stop admitted engines and drop workspaces that were not admitted yet.

        Engines still being set up stop before their first task.

        Returns:
            Number of engines stopped
        """
        with self._lock:
            self._stopping = True
            dropped = len(self._pending)
            self._pending.clear()
            pending_setup = 0
            for slot in self._active.values():
                slot.stop_requested = True
                if slot.engine is None:
                    pending_setup += 1
            self._idle.notify_all()
        if dropped:
            self.logger.info(f"Dropped {dropped} queued workspaces")
        return pending_setup + self._for_each_engine('request_stop')

    def _for_each_engine(self, action: str) -> int:
        with self._lock:
            engines = [(workspace_id, slot.engine) for workspace_id, slot in self._active.items()
                       if slot.engine is not None]
        count = 0
        for workspace_id, engine in engines:
            try:
                if getattr(engine, action)() is not False:
                    count += 1
            except InvalidStateTransition as e:
                self.logger.debug(f"Skipping {action} for {workspace_id}: {e}")
        return count

    def get_results(self) -> List[WorkspaceResult]:
        with self._lock:
            return list(self._results.values())

    def estimate_completion_seconds(self) -> Optional[float]:
        """
        Rough time until every workspace is done.

        Average elapsed time of finished workspaces times the number of
        remaining admission rounds.

        Returns:
            Seconds, or None before any workspace has finished
        """
        with self._lock:
            finished = list(self._results.values())
            remaining = len(self._pending) + len(self._active)
        if not finished:
            return None
        if remaining == 0:
            return 0.0
        average = sum(result.elapsed for result in finished) / len(finished)
        rounds = -(-remaining // self.max_concurrent)
        return average * rounds

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'max_concurrent': self.max_concurrent,
                'running': sorted(self._active),
                'queued': [allocation.workspace_id for allocation in self._pending],
                'finished': {workspace_id: result.status for workspace_id, result in self._results.items()},
                'engines': {workspace_id: slot.engine.state.value
                            for workspace_id, slot in self._active.items() if slot.engine is not None},
                'estimated_seconds_remaining': self.estimate_completion_seconds(),
            }

    def _emit(self, event_type: str, data: Dict[str, Any]):
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data, source='scheduler')
