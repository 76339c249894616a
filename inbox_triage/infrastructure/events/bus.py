"""Event sinks for triage notifications.

Provides an abstract interface for event distribution, a sink that only logs,
and an in-memory broadcaster for single-process deployments that fans events
out to per-subscriber queues (consumed by SSE or websocket adapters).
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator

from inbox_triage.infrastructure.events.schemas import DomainEvent
from inbox_triage.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EventSink(ABC):
    """
    Destination for domain events.

    Publishing must never fail the caller's work; implementations log and
    drop on internal errors.
    """

    @abstractmethod
    async def publish(self, event: DomainEvent) -> int:
        """
        Publish an event.

        Returns:
            Number of consumers that received the event.
        """
        ...


class LoggingEventSink(EventSink):
    """Writes every event to the structured log."""

    async def publish(self, event: DomainEvent) -> int:
        logger.info(
            "Domain event",
            topic=event.topic,
            subject_id=event.subject_id,
            **event.payload,
        )
        return 1


class InMemoryEventBroadcaster(EventSink):
    """
    In-memory broadcaster for single-process deployments.

    Features:
    - Subject-scoped delivery (subscribers only see their own events)
    - Bounded recent-event buffer for inspection

    Limitations:
    - Events only reach subscribers in the same process
    - Buffer lost on restart
    """

    def __init__(self, buffer_size: int = 500, subscriber_queue_size: int = 100):
        self._subscribers: dict[str, tuple[str | None, asyncio.Queue[DomainEvent]]] = {}
        self._buffer: deque[DomainEvent] = deque(maxlen=buffer_size)
        self._queue_size = subscriber_queue_size
        self._lock = asyncio.Lock()

    async def publish(self, event: DomainEvent) -> int:
        self._buffer.append(event)
        delivered = 0

        async with self._lock:
            targets = list(self._subscribers.items())

        for subscriber_id, (subject_id, queue) in targets:
            # Unscoped events (batch summaries) only reach unfiltered subscribers
            if subject_id is not None and event.subject_id != subject_id:
                continue
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping event",
                    subscriber_id=subscriber_id,
                    topic=event.topic,
                )

        return delivered

    async def subscribe(self, subscriber_id: str, subject_id: str | None = None) -> AsyncIterator[DomainEvent]:
        """
        Stream events for one subscriber until the consumer stops iterating.

        Args:
            subscriber_id: Unique subscriber identifier (for cleanup)
            subject_id: Only deliver this subject's events (None = all)
        """
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers[subscriber_id] = (subject_id, queue)

        logger.info(
            "Event subscriber added",
            subscriber_id=subscriber_id,
            subject_id=subject_id,
            total_subscribers=len(self._subscribers),
        )

        try:
            while True:
                yield await queue.get()
        finally:
            await self.unsubscribe(subscriber_id)

    async def unsubscribe(self, subscriber_id: str) -> None:
        async with self._lock:
            self._subscribers.pop(subscriber_id, None)
        logger.info("Event subscriber removed", subscriber_id=subscriber_id)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def recent_events(self, topic: str | None = None) -> list[DomainEvent]:
        """Buffered events, oldest first, optionally filtered by topic."""
        return [e for e in self._buffer if topic is None or e.topic == topic]
