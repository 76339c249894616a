import asyncio

import pytest

from inbox_triage.infrastructure.events import InMemoryEventBroadcaster, LoggingEventSink
from inbox_triage.infrastructure.events.schemas import batch_completed, notification


async def _collect(broadcaster, subscriber_id, subject_id, sink: list):
    async for event in broadcaster.subscribe(subscriber_id, subject_id=subject_id):
        sink.append(event)


@pytest.mark.asyncio
async def test_subscribers_only_see_their_subject():
    broadcaster = InMemoryEventBroadcaster()
    mine, admin = [], []
    tasks = [
        asyncio.create_task(_collect(broadcaster, "sse-1", "user-123", mine)),
        asyncio.create_task(_collect(broadcaster, "admin", None, admin)),
    ]
    while broadcaster.subscriber_count() < 2:
        await asyncio.sleep(0)

    await broadcaster.publish(notification("user-999", "e9", "not yours"))
    await broadcaster.publish(batch_completed(["user-123", "user-999"], 2, 0, 0, 0, 1.0))
    delivered = await broadcaster.publish(notification("user-123", "e1", "yours"))
    await asyncio.sleep(0.01)

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    assert delivered == 2
    assert [e.payload["message"] for e in mine] == ["yours"]
    assert [e.topic for e in admin] == ["notification", "batch.completed", "notification"]
    assert broadcaster.subscriber_count() == 0


@pytest.mark.asyncio
async def test_recent_events_buffer_is_bounded():
    broadcaster = InMemoryEventBroadcaster(buffer_size=2)

    for i in range(3):
        await broadcaster.publish(notification("user-123", f"e{i}", "hi"))
    await broadcaster.publish(batch_completed(["user-123"], 1, 0, 0, 0, 1.0))

    assert [e.topic for e in broadcaster.recent_events()] == ["notification", "batch.completed"]
    assert len(broadcaster.recent_events("notification")) == 1


@pytest.mark.asyncio
async def test_logging_sink_reports_one_consumer():
    assert await LoggingEventSink().publish(notification("user-123", "e1", "hi")) == 1


def test_event_sse_format():
    event = notification("user-123", "e1", "hello")

    message = event.to_sse()

    assert message.startswith("event: notification\ndata: {")
    assert message.endswith("\n\n")
    assert '"subject_id":"user-123"' in message
