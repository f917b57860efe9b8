"""
Event bus module for TaskPilot.

This module provides the observer list used to deliver lifecycle
notifications from engines, task stores and schedulers to any number of
consumers. Publishing is fire-and-forget: handler failures are logged and
never reach the publisher.
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
import logging


class EventType:
    """Event type names published by TaskPilot components."""
    STATE_CHANGED = "state_changed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_STOPPED = "session_stopped"
    ERROR_OCCURRED = "error_occurred"
    TASKS_CHANGED = "tasks_changed"
    WORKSPACE_ADMITTED = "workspace_admitted"
    WORKSPACE_FINISHED = "workspace_finished"


ALL_EVENTS = "*"


@dataclass
class Event:
    """
    Base event class for the event bus system.
    """
    type: str
    data: Any = None
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None


class Subscription:
    """
    Handle returned by subscribe(); call unsubscribe() to detach the handler.
    """

    def __init__(self, bus: 'EventBus', event_type: str, handler: Callable[[Event], None]):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """
    Typed observer list with explicit unsubscribe handles.
    """

    def __init__(self):
        """Initialize the event bus."""
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: str, handler: Callable[[Event], None]) -> Subscription:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to, or ALL_EVENTS
            handler: Function to call when event is published

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, event_type, handler)
        with self._lock:
            self._subscriptions.setdefault(event_type, []).append(subscription)
        self.logger.debug(f"Subscribed to event type: {event_type}")
        return subscription

    def subscribe_all(self, handler: Callable[[Event], None]) -> Subscription:
        """Subscribe to every event type."""
        return self.subscribe(ALL_EVENTS, handler)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.event_type, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
                self.logger.debug(f"Unsubscribed from event type: {subscription.event_type}")

    def publish(self, event: Union[Event, str], data: Any = None, source: Optional[str] = None) -> None:
        """
        Publish an event to all subscribed handlers.

        Args:
            event: Event object or event type string
            data: Data to include with the event (if event is a string)
            source: Source identifier for the event
        """
        if isinstance(event, str):
            event = Event(type=event, data=data, source=source)

        self.logger.debug(f"Publishing event: {event.type} from {event.source or 'unknown'}")

        with self._lock:
            handlers = list(self._subscriptions.get(event.type, []))
            handlers.extend(self._subscriptions.get(ALL_EVENTS, []))

        # Execute handlers outside the lock so they may publish or unsubscribe
        for subscription in handlers:
            try:
                subscription.handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler for {event.type}: {str(e)}")

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._subscriptions.get(event_type, []))
            return sum(len(items) for items in self._subscriptions.values())

    def clear_subscribers(self, event_type: Optional[str] = None) -> None:
        """
        Clear subscribers for a specific event type or all types.

        Args:
            event_type: Event type to clear, or None to clear all
        """
        with self._lock:
            if event_type:
                for subscription in self._subscriptions.pop(event_type, []):
                    subscription.active = False
                self.logger.debug(f"Cleared subscribers for event type: {event_type}")
            else:
                for subscriptions in self._subscriptions.values():
                    for subscription in subscriptions:
                        subscription.active = False
                self._subscriptions.clear()
                self.logger.debug("Cleared all subscribers")
