"""
Ops Desk - Event Bus Tests
==========================
"""

import asyncio
import json

import pytest

from opsdesk.core.events import (
    DomainEvent,
    EventBus,
    EventType,
    QueueSubscriber,
    SubscriberClosed,
)
from tests.conftest import RecordingSubscriber


class ExplodingSubscriber:
    def deliver(self, event: DomainEvent) -> None:
        raise RuntimeError("socket gone")


class SelfRemovingSubscriber:
    def __init__(self, bus: EventBus):
        self.bus = bus
        self.calls = 0

    def deliver(self, event: DomainEvent) -> None:
        self.calls += 1
        self.bus.unsubscribe(self)


class TestDomainEvent:

    def test_to_json(self):
        event = DomainEvent(type=EventType.PROJECT_UPDATED, data={"id": "abc"})

        parsed = json.loads(event.to_json())

        assert parsed["type"] == "project.updated"
        assert parsed["data"] == {"id": "abc"}
        assert "timestamp" in parsed


class TestEventBus:

    def test_publish_reaches_every_subscriber(self):
        bus = EventBus()
        first = bus.subscribe(RecordingSubscriber())
        second = bus.subscribe(RecordingSubscriber())

        delivered = bus.emit(EventType.NEW_APPROVAL, id="1")

        assert delivered == 2
        assert first.types == [EventType.NEW_APPROVAL]
        assert second.events[0].data == {"id": "1"}

    def test_publish_without_subscribers(self):
        assert EventBus().emit(EventType.SOP_UPDATED) == 0

    def test_failing_subscriber_is_dropped(self):
        bus = EventBus()
        bus.subscribe(ExplodingSubscriber())
        healthy = bus.subscribe(RecordingSubscriber())

        assert bus.emit(EventType.AGENT_EVENT) == 1
        assert bus.subscriber_count == 1

        bus.emit(EventType.AGENT_EVENT)
        assert len(healthy.events) == 2

    def test_unsubscribe_during_publish(self):
        bus = EventBus()
        leaving = bus.subscribe(SelfRemovingSubscriber(bus))
        staying = bus.subscribe(RecordingSubscriber())

        bus.emit(EventType.USER_CREATED)
        bus.emit(EventType.USER_UPDATED)

        assert leaving.calls == 1
        assert staying.types == [EventType.USER_CREATED, EventType.USER_UPDATED]

    def test_unsubscribe_unknown_is_noop(self):
        bus = EventBus()
        bus.unsubscribe(RecordingSubscriber())
        assert bus.subscriber_count == 0


class TestQueueSubscriber:

    async def test_delivers_in_order(self):
        bus = EventBus()
        subscriber = bus.subscribe(QueueSubscriber(maxsize=8))

        bus.emit(EventType.PROJECT_CREATED, n=1)
        bus.emit(EventType.PROJECT_UPDATED, n=2)

        first = await subscriber.get(timeout=1)
        second = await subscriber.get(timeout=1)
        assert (first.data["n"], second.data["n"]) == (1, 2)

    async def test_full_queue_drops_subscriber(self):
        bus = EventBus()
        slow = bus.subscribe(QueueSubscriber(maxsize=1))

        assert bus.emit(EventType.AGENT_EVENT) == 1
        assert bus.emit(EventType.AGENT_EVENT) == 0

        assert slow.closed
        assert bus.subscriber_count == 0

    async def test_closed_subscriber_rejects(self):
        subscriber = QueueSubscriber()
        subscriber.close()

        with pytest.raises(SubscriberClosed):
            subscriber.deliver(DomainEvent(type=EventType.AGENT_EVENT))

    async def test_publish_from_worker_thread(self):
        bus = EventBus()
        subscriber = bus.subscribe(QueueSubscriber())

        await asyncio.to_thread(bus.emit, EventType.APPROVAL_SENT, id="x")

        event = await subscriber.get(timeout=1)
        assert event.type == EventType.APPROVAL_SENT
