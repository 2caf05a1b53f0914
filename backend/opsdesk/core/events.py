"""
Ops Desk - Event Notifier
=========================

In-process, best-effort fan-out of domain events to dashboard subscribers.

Events are a prompt-to-refresh signal, not a source of truth: there is no
persistence, no replay and no queueing for absent subscribers. A subscriber
that cannot accept an event is dropped from the registry.

The bus lives on ``app.state`` and is handed to services explicitly. It is
scoped to one process; running several API instances needs an external
broker in front of the dashboards.
"""

import asyncio
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import uuid4

import structlog

logger = structlog.get_logger()


# ==========================================================================
# Event Types
# ==========================================================================

class EventType(str, Enum):
    """Closed vocabulary of published event types."""
    # Projects
    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_NOTE_ADDED = "project.note_added"
    PROJECT_TRANSITION_BLOCKED = "project.transition_blocked"

    # Escalations
    ESCALATION_CREATED = "escalation.created"
    ESCALATION_RESOLVED = "escalation.resolved"

    # Approvals
    NEW_APPROVAL = "new_approval"
    APPROVAL_DECIDED = "approval.decided"
    APPROVAL_POLICY_BLOCKED = "approval.policy_blocked"
    APPROVAL_SENT = "approval.sent"

    # Agents
    AGENT_TRIGGERED = "agent.triggered"
    AGENT_EVENT = "agent.event"

    # Delivery
    SOP_UPDATED = "sop.updated"
    CLIENT_REQUEST_UPDATED = "client_request.updated"

    # Users
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_REMOVED = "user.removed"


@dataclass
class DomainEvent:
    """A single published event."""
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# ==========================================================================
# Subscribers
# ==========================================================================

class SubscriberClosed(Exception):
    """Raised by a subscriber that can no longer receive events."""


class Subscriber(Protocol):
    def deliver(self, event: DomainEvent) -> None:
        ...


class QueueSubscriber:
    """
    Subscriber backed by a bounded asyncio queue.

    ``deliver`` never blocks; a full queue means the consumer has fallen
    behind and the subscriber is treated as closed. Must be created inside
    the event loop that consumes it; publishers on other threads are
    handed over to that loop.
    """

    def __init__(self, maxsize: int = 256):
        self.id = str(uuid4())
        self.queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self._loop = asyncio.get_running_loop()

    def deliver(self, event: DomainEvent) -> None:
        if self.closed or self._loop.is_closed():
            raise SubscriberClosed(self.id)
        if self.queue.full():
            self.closed = True
            raise SubscriberClosed(self.id)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self.queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._put_threadsafe, event)

    def _put_threadsafe(self, event: DomainEvent) -> None:
        if self.queue.full():
            self.closed = True
            return
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> DomainEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        self.closed = True


# ==========================================================================
# Event Bus
# ==========================================================================

class EventBus:
    """
    Publish/subscribe registry.

    Safe to subscribe and unsubscribe while another caller is publishing:
    publish iterates a snapshot taken under the lock.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(subscriber)
        logger.debug("event_subscriber_added", total=self.subscriber_count)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to every current subscriber.

        Returns the number of subscribers that accepted it. Subscribers that
        raise (``SubscriberClosed`` or anything else) are removed; publish
        itself never fails because of a subscriber.
        """
        with self._lock:
            snapshot = list(self._subscribers)

        delivered = 0
        dead: list[Subscriber] = []
        for subscriber in snapshot:
            try:
                subscriber.deliver(event)
                delivered += 1
            except SubscriberClosed:
                dead.append(subscriber)
            except Exception as e:
                logger.warning("event_delivery_failed", error=str(e), event_type=event.type.value)
                dead.append(subscriber)

        for subscriber in dead:
            self.unsubscribe(subscriber)
        if dead:
            logger.info("event_subscribers_dropped", count=len(dead), event_type=event.type.value)

        return delivered

    def emit(self, event_type: EventType, **data: Any) -> int:
        """Shorthand for ``publish(DomainEvent(event_type, data))``."""
        return self.publish(DomainEvent(type=event_type, data=data))
