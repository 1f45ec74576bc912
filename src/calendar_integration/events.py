"""Event store operations: permission-gated CRUD with best-effort provider sync."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable

from .channel import DomainEventChannel, DomainEventType
from .errors import InvalidDurationError, NotFoundError, PermissionDeniedError
from .models import (
    EVENT_AVAILABILITIES,
    EVENT_STATUSES,
    Attendee,
    CalendarEvent,
    Connection,
    utcnow,
)
from .providers.base import ProviderAdapter, PushResult, RemoteEvent
from .repository import Repository

logger = logging.getLogger("calendar-integration")

UPDATABLE_FIELDS = {
    "title",
    "description",
    "location",
    "time_zone",
    "all_day",
    "start_time",
    "end_time",
    "categories",
    "attendees",
    "availability",
    "status",
}


def _coerce_attendees(attendees: Iterable[Attendee | dict | str] | None) -> list[Attendee]:
    result = []
    for a in attendees or []:
        if isinstance(a, Attendee):
            result.append(a)
        elif isinstance(a, str):
            result.append(Attendee(email=a))
        else:
            result.append(Attendee(**a))
    return result


class EventManager:
    def __init__(
        self,
        events: Repository[CalendarEvent],
        connections: Repository[Connection],
        adapter: ProviderAdapter,
        channel: DomainEventChannel,
        max_event_duration_hours: float = 24,
    ):
        self._events = events
        self._connections = connections
        self._adapter = adapter
        self._channel = channel
        self.max_event_duration_hours = max_event_duration_hours

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_window(self, start_time: datetime, end_time: datetime) -> None:
        if start_time.tzinfo is None or end_time.tzinfo is None:
            raise ValueError("start_time and end_time must be timezone-aware")
        if start_time >= end_time:
            raise InvalidDurationError("Event start must be before its end")
        hours = (end_time - start_time).total_seconds() / 3600
        if hours > self.max_event_duration_hours:
            raise InvalidDurationError(
                f"Event duration exceeds maximum allowed ({self.max_event_duration_hours:g} hours)"
            )

    @staticmethod
    def _validate_classification(availability: str, status: str) -> None:
        if availability not in EVENT_AVAILABILITIES:
            raise ValueError(f"Invalid availability '{availability}'. Must be one of: {EVENT_AVAILABILITIES}")
        if status not in EVENT_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Must be one of: {EVENT_STATUSES}")

    async def _require_connection(self, connection_id: str, permission: str) -> Connection:
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)
        if not getattr(connection.permissions, permission):
            raise PermissionDeniedError(connection_id, permission)
        return connection

    # ------------------------------------------------------------------
    # Best-effort provider sync
    # ------------------------------------------------------------------

    def _report_sync_error(self, event: CalendarEvent, connection: Connection, error: Exception) -> None:
        logger.warning("Failed to sync event %s to provider %s: %s", event.id, connection.provider_id, error)
        self._channel.publish(
            DomainEventType.SYNC_ERROR,
            event_id=event.id,
            connection_id=connection.id,
            error=str(error),
        )

    async def _push(self, event: CalendarEvent, connection: Connection) -> CalendarEvent:
        if connection.status != "connected":
            return event
        try:
            result: PushResult = await self._adapter.push_event(event, connection)
        except Exception as e:
            self._report_sync_error(event, connection, e)
            return event

        def mark_synced(ev: CalendarEvent) -> None:
            ev.external_id = result.external_id
            ev.synced_at = result.synced_at

        return await self._events.update(event.id, mark_synced) or event

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        connection_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        description: str = "",
        location: str = "",
        time_zone: str = "UTC",
        all_day: bool = False,
        categories: Iterable[str] | None = None,
        attendees: Iterable[Attendee | dict | str] | None = None,
        availability: str = "busy",
        status: str = "confirmed",
    ) -> CalendarEvent:
        connection = await self._require_connection(connection_id, "write")
        self.validate_window(start_time, end_time)
        self._validate_classification(availability, status)

        event = CalendarEvent(
            id=str(uuid.uuid4()),
            connection_id=connection_id,
            tenant_id=connection.tenant_id,
            title=title,
            start_time=start_time,
            end_time=end_time,
            description=description,
            location=location,
            time_zone=time_zone,
            all_day=all_day,
            categories=set(categories or []),
            attendees=_coerce_attendees(attendees),
            availability=availability,
            status=status,
        )
        await self._events.set(event.id, event)
        event = await self._push(event, connection)

        self._channel.publish(
            DomainEventType.EVENT_CREATED,
            event_id=event.id,
            connection_id=connection_id,
            tenant_id=event.tenant_id,
        )
        return event

    async def get(self, event_id: str) -> CalendarEvent:
        event = await self._events.get(event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    async def update(self, event_id: str, **changes: Any) -> CalendarEvent:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        event = await self.get(event_id)
        connection = await self._require_connection(event.connection_id, "write")

        if "categories" in changes:
            changes["categories"] = set(changes["categories"] or [])
        if "attendees" in changes:
            changes["attendees"] = _coerce_attendees(changes["attendees"])

        candidate = replace(event, **changes)
        self.validate_window(candidate.start_time, candidate.end_time)
        self._validate_classification(candidate.availability, candidate.status)

        def apply(ev: CalendarEvent) -> None:
            for key, value in changes.items():
                setattr(ev, key, value)
            ev.updated_at = utcnow()

        updated = await self._events.update(event_id, apply)
        if updated is None:
            raise NotFoundError("Event", event_id)
        updated = await self._push(updated, connection)

        self._channel.publish(
            DomainEventType.EVENT_UPDATED,
            event_id=event_id,
            connection_id=event.connection_id,
            updates=sorted(changes),
        )
        return updated

    async def delete(self, event_id: str) -> None:
        event = await self.get(event_id)
        connection = await self._require_connection(event.connection_id, "delete")

        if not await self._events.delete(event_id):
            raise NotFoundError("Event", event_id)

        if connection.status == "connected" and event.external_id:
            try:
                await self._adapter.delete_remote_event(event, connection)
            except Exception as e:
                self._report_sync_error(event, connection, e)

        self._channel.publish(
            DomainEventType.EVENT_DELETED,
            event_id=event_id,
            connection_id=event.connection_id,
            tenant_id=event.tenant_id,
        )

    async def list(
        self,
        connection_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        categories: Iterable[str] | None = None,
        attendees: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[CalendarEvent]:
        """List a connection's events ordered by start time.

        The date range keeps events whose half-open window [start_time,
        end_time) intersects [start, end). Categories and attendee emails
        match if any value matches.
        """
        wanted_categories = set(categories or [])
        wanted_attendees = {a.lower() for a in attendees or []}
        wanted_statuses = set(statuses or [])

        def matches(ev: CalendarEvent) -> bool:
            if ev.connection_id != connection_id:
                return False
            if start is not None and ev.end_time <= start:
                return False
            if end is not None and ev.start_time >= end:
                return False
            if wanted_categories and not (ev.categories & wanted_categories):
                return False
            if wanted_attendees and not any(a.email.lower() in wanted_attendees for a in ev.attendees):
                return False
            if wanted_statuses and ev.status not in wanted_statuses:
                return False
            return True

        events = await self._events.list(matches)
        events.sort(key=lambda ev: (ev.start_time, ev.end_time))
        return events

    # ------------------------------------------------------------------
    # Sync-side writes (no permission gating, no push back to the provider)
    # ------------------------------------------------------------------

    async def find_by_external_id(self, connection_id: str, external_id: str) -> CalendarEvent | None:
        found = await self._events.list(
            lambda ev: ev.connection_id == connection_id and ev.external_id == external_id
        )
        return found[0] if found else None

    async def store_remote(
        self, connection: Connection, remote: RemoteEvent, existing: CalendarEvent | None
    ) -> CalendarEvent:
        """Create or overwrite the local copy of a remote event."""
        if remote.start is None or remote.end is None:
            raise InvalidDurationError(f"Remote event {remote.external_id} has no time window")
        self.validate_window(remote.start, remote.end)
        now = utcnow()
        event = CalendarEvent(
            id=existing.id if existing else str(uuid.uuid4()),
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            title=remote.title,
            start_time=remote.start,
            end_time=remote.end,
            description=remote.description,
            location=remote.location,
            time_zone=existing.time_zone if existing else "UTC",
            all_day=remote.all_day,
            categories=set(remote.categories),
            attendees=list(remote.attendees),
            availability=remote.availability if remote.availability in EVENT_AVAILABILITIES else "busy",
            status=remote.status if remote.status in EVENT_STATUSES else "confirmed",
            external_id=remote.external_id,
            synced_at=now,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        await self._events.set(event.id, event)

        event_type = DomainEventType.EVENT_UPDATED if existing else DomainEventType.EVENT_CREATED
        self._channel.publish(
            event_type, event_id=event.id, connection_id=connection.id, tenant_id=connection.tenant_id, source="sync"
        )
        return event

    async def remove_local(self, event: CalendarEvent) -> bool:
        removed = await self._events.delete(event.id)
        if removed:
            self._channel.publish(
                DomainEventType.EVENT_DELETED,
                event_id=event.id,
                connection_id=event.connection_id,
                tenant_id=event.tenant_id,
                source="sync",
            )
        return removed

    async def remove_connection_events(self, connection_id: str) -> int:
        events = await self._events.list(lambda ev: ev.connection_id == connection_id)
        removed = 0
        for event in events:
            if await self._events.delete(event.id):
                removed += 1
        return removed
