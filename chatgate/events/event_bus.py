"""Event bus implementation for decoupled event handling."""

import asyncio
import logging
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Set

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]
WildcardHandler = Callable[["EventType", Dict[str, Any]], Awaitable[None]]


class EventType(str, Enum):
    """Standardized event types emitted by the gateway."""

    # Analysis job lifecycle
    JOB_QUEUED = "job.queued"
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_CANCELLED = "job.cancelled"

    # Discovery scans
    SCAN_RESULT = "scan.result"

    # Rate limiting
    RATE_LIMIT_WAITING = "rateLimit.waiting"

    # Connection state
    CONNECTION_STATE_CHANGED = "connection.state_changed"

    # User-facing notifications (toasts / banners)
    NOTIFICATION = "notification"


class EventBus:
    """Gateway-scoped bus for publishing and subscribing to events."""

    def __init__(self):
        """Initialize an empty event bus."""
        self._subscribers: Dict[EventType, Set[EventHandler]] = {}
        self._wildcard_subscribers: Set[WildcardHandler] = set()

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Publish an event to all subscribers.

        Subscribers run concurrently; a failing subscriber is logged and never
        propagates into the publisher.  The call returns once every subscriber
        has finished, so events published in sequence by one task are observed
        in that order.

        Args:
            event_type: The type of event being published
            data: Event payload data
        """
        handlers = list(self._subscribers.get(event_type, ()))
        wildcards = list(self._wildcard_subscribers)

        if not handlers and not wildcards:
            return

        logger.debug("Publishing event %s with data: %s", event_type.value, data)

        tasks = [callback(data) for callback in handlers]
        tasks.extend(callback(event_type, data) for callback in wildcards)

        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, Exception):
                logger.error("Error in event handler for %s: %s", event_type.value, result)

    def subscribe(self, event_type: EventType, callback: EventHandler) -> None:
        """Subscribe to an event type.

        Args:
            event_type: The event type to subscribe to
            callback: Async callback function to handle the event
        """
        self._subscribers.setdefault(event_type, set()).add(callback)
        logger.debug("Added subscriber for event %s", event_type.value)

    def unsubscribe(self, event_type: EventType, callback: EventHandler) -> None:
        """Unsubscribe from an event type.

        Args:
            event_type: The event type to unsubscribe from
            callback: The callback function to remove
        """
        if event_type in self._subscribers:
            self._subscribers[event_type].discard(callback)
            logger.debug("Removed subscriber for event %s", event_type.value)

            # Clean up empty subscriber sets
            if not self._subscribers[event_type]:
                del self._subscribers[event_type]

    def subscribe_all(self, callback: WildcardHandler) -> Callable[[], None]:
        """Receive every event; returns a callable that removes the subscription."""

        self._wildcard_subscribers.add(callback)

        def _unsubscribe() -> None:
            self._wildcard_subscribers.discard(callback)

        return _unsubscribe

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, ())) + len(self._wildcard_subscribers)
