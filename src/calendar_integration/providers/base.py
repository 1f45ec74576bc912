"""Base types and protocol for provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Protocol, runtime_checkable

from ..models import Attendee, CalendarEvent, Connection

DELTA_OPERATIONS = {"create", "update", "delete"}


def ensure_aware(value: date | datetime) -> datetime:
    """Normalise provider date/datetime values to aware datetimes.

    All-day dates become midnight UTC; naive datetimes are taken as UTC.
    """
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class RemoteEvent:
    """Provider-side event representation, normalised by the adapters."""

    external_id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    categories: set[str] = field(default_factory=set)
    attendees: list[Attendee] = field(default_factory=list)
    availability: str = "busy"
    status: str = "confirmed"


@dataclass
class RemoteDelta:
    operation: str  # create, update, delete
    remote_event: RemoteEvent


@dataclass
class PushResult:
    external_id: str
    synced_at: datetime


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol that all provider adapters must satisfy."""

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult: ...

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None: ...

    async def pull_deltas(
        self, connection: Connection, since: datetime | None = None
    ) -> list[RemoteDelta]: ...
