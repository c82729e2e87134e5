"""Tests for the event bus and the typed publisher."""

import pytest

from chatgate.events import EventBus
from chatgate.events import EventPublisher
from chatgate.events import EventType


@pytest.mark.asyncio
async def test_event_bus_basic_publish_subscribe():
    bus = EventBus()
    received_data = None

    async def test_handler(data: dict):
        nonlocal received_data
        received_data = data

    bus.subscribe(EventType.JOB_QUEUED, test_handler)

    test_data = {"job_id": "j1", "project_id": "p1"}
    await bus.publish(EventType.JOB_QUEUED, test_data)

    assert received_data == test_data


@pytest.mark.asyncio
async def test_event_bus_unsubscribe():
    bus = EventBus()
    call_count = 0

    async def test_handler(_):
        nonlocal call_count
        call_count += 1

    bus.subscribe(EventType.SCAN_RESULT, test_handler)
    bus.unsubscribe(EventType.SCAN_RESULT, test_handler)

    await bus.publish(EventType.SCAN_RESULT, {"newSuggestionCount": 1})

    assert call_count == 0
    assert bus.subscriber_count(EventType.SCAN_RESULT) == 0


@pytest.mark.asyncio
async def test_event_bus_error_handling():
    """A failing subscriber neither breaks the publisher nor other subscribers."""
    bus = EventBus()
    success_handler_called = False

    async def error_handler(_):
        raise ValueError("Test error")

    async def success_handler(_):
        nonlocal success_handler_called
        success_handler_called = True

    bus.subscribe(EventType.JOB_FAILED, error_handler)
    bus.subscribe(EventType.JOB_FAILED, success_handler)

    await bus.publish(EventType.JOB_FAILED, {"job_id": "j1"})

    assert success_handler_called


@pytest.mark.asyncio
async def test_wildcard_subscription_sees_every_event_and_can_unsubscribe():
    bus = EventBus()
    seen = []

    async def wildcard(event_type, data):
        seen.append(event_type)

    unsubscribe = bus.subscribe_all(wildcard)
    await bus.publish(EventType.JOB_STARTED, {})
    await bus.publish(EventType.NOTIFICATION, {})
    unsubscribe()
    await bus.publish(EventType.JOB_COMPLETED, {})

    assert seen == [EventType.JOB_STARTED, EventType.NOTIFICATION]


@pytest.mark.asyncio
async def test_publisher_payload_shapes(bus, recorder):
    publisher = EventPublisher(bus, source="test")

    await publisher.job_failed("j1", "boom", "processing", can_retry=False)
    await publisher.scan_result(3, "manual")
    await publisher.rate_limit_waiting("conversations.list", "T1", 1500, 20)

    failed = recorder.of_type(EventType.JOB_FAILED)[0]
    assert failed["canRetry"] is False
    assert failed["stage"] == "processing"
    assert failed["source"] == "test"
    assert "timestamp" in failed

    assert recorder.of_type(EventType.SCAN_RESULT)[0]["newSuggestionCount"] == 3
    waiting = recorder.of_type(EventType.RATE_LIMIT_WAITING)[0]
    assert waiting == {**waiting, "endpoint": "conversations.list", "waitMs": 1500, "tier": 20}


@pytest.mark.asyncio
async def test_publisher_never_raises_when_bus_fails(monkeypatch):
    bus = EventBus()
    publisher = EventPublisher(bus)

    async def broken_publish(event_type, data):
        raise RuntimeError("bus down")

    monkeypatch.setattr(bus, "publish", broken_publish)

    await publisher.notification("error", "Title", "Message")
