from inbox_triage.infrastructure.events.bus import (
    EventSink,
    InMemoryEventBroadcaster,
    LoggingEventSink,
)
from inbox_triage.infrastructure.events.schemas import DomainEvent

__all__ = [
    "DomainEvent",
    "EventSink",
    "InMemoryEventBroadcaster",
    "LoggingEventSink",
]
