"""Per-user daily free/busy grids built from the event store."""

from __future__ import annotations

import copy
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Awaitable, Callable

from dateutil import tz

from .models import (
    BreakWindow,
    CalendarEvent,
    Connection,
    DayAvailability,
    Slot,
    WorkingHours,
)
from .repository import Repository

logger = logging.getLogger("calendar-integration")

SLOT_MINUTES = 15
SLOTS_PER_DAY = 24 * 60 // SLOT_MINUTES

EventQuery = Callable[[str, datetime, datetime], Awaitable[list[CalendarEvent]]]


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval intersection: touching boundaries do not overlap."""
    return start_a < end_b and end_a > start_b


def resolve_zone(name: str) -> tzinfo:
    zone = tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown time zone: {name}")
    return zone


def parse_clock(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


def local_midnight(day: date, zone: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=zone)


def slot_edges(start: datetime, end: datetime, minutes: int = SLOT_MINUTES, step_minutes: int | None = None):
    """Yield UTC (start, end) windows of ``minutes`` that fit between two instants.

    Windows advance by ``step_minutes`` (default: back to back). Stepping
    happens in UTC, so a local day with a daylight-saving change yields 92
    or 100 quarter-hour slots instead of 96.
    """
    length = timedelta(minutes=minutes)
    step = timedelta(minutes=step_minutes or minutes)
    cursor = start.astimezone(timezone.utc)
    stop = end.astimezone(timezone.utc)
    while cursor + length <= stop:
        yield cursor, cursor + length
        cursor += step


class AvailabilityEngine:
    """Builds DayAvailability grids for a user's connected calendars.

    Events are read through ``list_events(connection_id, start, end)`` so the
    engine stays read-only over the stores.
    """

    def __init__(
        self,
        connections: Repository[Connection],
        list_events: EventQuery,
        working_hours: WorkingHours | None = None,
        breaks: list[BreakWindow] | None = None,
    ):
        self._connections = connections
        self._list_events = list_events
        self.working_hours = working_hours or WorkingHours()
        if breaks is None:
            breaks = [BreakWindow(start="12:00", end="13:00", title="Lunch Break")]
        self.breaks = breaks

    async def _user_connections(self, user_id: str, tenant_id: str | None) -> list[Connection]:
        return await self._connections.list(
            lambda c: c.user_id == user_id
            and c.status == "connected"
            and (tenant_id is None or c.tenant_id == tenant_id)
        )

    async def get_availability(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        time_zone: str = "UTC",
        tenant_id: str | None = None,
    ) -> list[DayAvailability]:
        zone = resolve_zone(time_zone)
        connections = await self._user_connections(user_id, tenant_id)

        days = []
        current = start_date
        while current <= end_date:
            day_start = local_midnight(current, zone)
            day_end = local_midnight(current + timedelta(days=1), zone)

            day_events: list[CalendarEvent] = []
            for connection in connections:
                day_events.extend(await self._list_events(connection.id, day_start, day_end))
            day_events.sort(key=lambda ev: ev.start_time)

            days.append(
                DayAvailability(
                    user_id=user_id,
                    date=current,
                    time_zone=time_zone,
                    slots=self._build_slots(day_start, day_end, day_events),
                    working_hours=copy.deepcopy(self.working_hours),
                    breaks=copy.deepcopy(self.breaks),
                    exceptions=[],
                )
            )
            current += timedelta(days=1)

        logger.debug("Built %d day(s) of availability for user %s", len(days), user_id)
        return days

    @staticmethod
    def _build_slots(day_start: datetime, day_end: datetime, events: list[CalendarEvent]) -> list[Slot]:
        zone = day_start.tzinfo
        slots = []
        for utc_start, utc_end in slot_edges(day_start, day_end):
            blocking = next(
                (
                    ev for ev in events
                    if ev.availability != "available"
                    and overlaps(utc_start, utc_end, ev.start_time, ev.end_time)
                ),
                None,
            )
            slot_start = utc_start.astimezone(zone)
            slot_end = utc_end.astimezone(zone)

            if blocking is None:
                slots.append(Slot(start_time=slot_start, end_time=slot_end))
            else:
                slots.append(
                    Slot(
                        start_time=slot_start,
                        end_time=slot_end,
                        status=blocking.availability,
                        event_id=blocking.id,
                        event_title=blocking.title,
                    )
                )
        return slots
