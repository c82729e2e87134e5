"""Event system for the gateway."""

from chatgate.events.event_bus import EventBus
from chatgate.events.event_bus import EventType
from chatgate.events.publisher import EventPublisher

__all__ = ["EventBus", "EventPublisher", "EventType"]
