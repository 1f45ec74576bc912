"""Outbound domain events for audit and notification consumers.

Consumers subscribe explicitly and receive events through their own
queue, in publish order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .models import utcnow

logger = logging.getLogger("calendar-integration")


class DomainEventType(str, Enum):
    CONNECTION_CREATED = "connectionCreated"
    CONNECTION_UPDATED = "connectionUpdated"
    CONNECTION_DELETED = "connectionDeleted"
    EVENT_CREATED = "eventCreated"
    EVENT_UPDATED = "eventUpdated"
    EVENT_DELETED = "eventDeleted"
    SYNC_COMPLETED = "syncCompleted"
    SYNC_CANCELLED = "syncCancelled"
    SYNC_ERROR = "syncError"
    PROVIDER_STATUS_CHANGED = "providerStatusChanged"


@dataclass
class DomainEvent:
    type: DomainEventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


class Subscription:
    """A consumer's view of the channel, optionally filtered by event type."""

    def __init__(self, types: frozenset[DomainEventType], maxsize: int = 0):
        self.types = types
        self.queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=maxsize)

    def accepts(self, event: DomainEvent) -> bool:
        return not self.types or event.type in self.types

    async def get(self) -> DomainEvent:
        return await self.queue.get()

    def drain(self) -> list[DomainEvent]:
        """Return every queued event without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class DomainEventChannel:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, *types: DomainEventType, maxsize: int = 0) -> Subscription:
        sub = Subscription(frozenset(types), maxsize=maxsize)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event_type: DomainEventType, **payload: Any) -> DomainEvent:
        event = DomainEvent(type=event_type, payload=payload)
        for sub in self._subscriptions:
            if not sub.accepts(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping %s event", event_type.value)
        return event
