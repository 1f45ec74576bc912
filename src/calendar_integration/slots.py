"""Common free-window search across several users."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo

from .availability import (
    SLOT_MINUTES,
    AvailabilityEngine,
    local_midnight,
    parse_clock,
    resolve_zone,
    slot_edges,
)
from .models import DayAvailability, Slot, SlotCandidate, WorkingHours

logger = logging.getLogger("calendar-integration")


@dataclass
class _UserGrid:
    slots: dict[datetime, Slot] = field(default_factory=dict)
    working_hours: dict[date, WorkingHours] = field(default_factory=dict)

    @classmethod
    def from_days(cls, days: list[DayAvailability]) -> "_UserGrid":
        grid = cls()
        for day in days:
            grid.working_hours[day.date] = day.working_hours
            for slot in day.slots:
                grid.slots[slot.start_time.astimezone(timezone.utc)] = slot
        return grid


class SlotFinder:
    def __init__(self, engine: AvailabilityEngine):
        self._engine = engine

    async def find_available_slots(
        self,
        user_ids: list[str],
        duration_minutes: int,
        start_date: date,
        end_date: date,
        working_hours_only: bool = True,
        time_zone: str = "UTC",
    ) -> list[SlotCandidate]:
        """Return every window of ``duration_minutes`` in which at least one user is free.

        Windows start on 15-minute boundaries from local midnight of
        ``start_date`` and end no later than midnight after ``end_date``.
        Each candidate lists the users free for the whole window, in request
        order.
        """
        if duration_minutes <= 0 or duration_minutes % SLOT_MINUTES:
            raise ValueError(f"duration_minutes must be a positive multiple of {SLOT_MINUTES}")

        zone = resolve_zone(time_zone)
        users = list(dict.fromkeys(user_ids))

        # One availability computation per user for the whole range
        grids = {
            user_id: _UserGrid.from_days(
                await self._engine.get_availability(user_id, start_date, end_date, time_zone)
            )
            for user_id in users
        }

        range_start = local_midnight(start_date, zone)
        range_end = local_midnight(end_date + timedelta(days=1), zone)

        candidates = []
        for window_start, window_end in slot_edges(range_start, range_end, duration_minutes, SLOT_MINUTES):
            available = [
                user_id for user_id in users
                if self._is_free(grids[user_id], window_start, window_end, working_hours_only, zone)
            ]
            if available:
                candidates.append(
                    SlotCandidate(
                        start_time=window_start.astimezone(zone),
                        end_time=window_end.astimezone(zone),
                        available_users=available,
                    )
                )

        logger.debug("Found %d candidate window(s) for %d user(s)", len(candidates), len(users))
        return candidates

    @staticmethod
    def _within_working_hours(hours: WorkingHours | None, start: datetime, end: datetime) -> bool:
        if hours is None:
            return False
        if not hours.enabled:
            return True
        if end.date() != start.date():
            return False
        work_start = parse_clock(hours.start)
        work_end = parse_clock(hours.end)
        return work_start <= start.time() <= work_end and work_start <= end.time() <= work_end

    def _is_free(
        self, grid: _UserGrid, start: datetime, end: datetime, working_hours_only: bool, zone: tzinfo
    ) -> bool:
        """``start``/``end`` are UTC; working hours are checked on local clock times."""
        if working_hours_only:
            local_start = start.astimezone(zone)
            local_end = end.astimezone(zone)
            hours = grid.working_hours.get(local_start.date())
            if not self._within_working_hours(hours, local_start, local_end):
                return False

        cursor = start
        while cursor < end:
            slot = grid.slots.get(cursor)
            if slot is None or slot.status != "available":
                return False
            cursor += timedelta(minutes=SLOT_MINUTES)
        return True
