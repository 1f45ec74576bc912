"""CalDAV adapter (Nextcloud, ownCloud, Radicale, etc.)."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any

from ..models import Attendee, CalendarEvent, Connection, utcnow
from .base import PushResult, RemoteDelta, RemoteEvent, ensure_aware

logger = logging.getLogger("calendar-integration")

_PARTSTAT_RESPONSES = {
    "ACCEPTED": "accepted",
    "DECLINED": "declined",
    "TENTATIVE": "tentative",
    "NEEDS-ACTION": "pending",
}


class CalDAVAdapter:
    """Provider adapter for CalDAV servers.

    ``url`` may contain an ``{account}`` placeholder that is filled with the
    connection's account email.
    """

    def __init__(self, provider_id: str, config: dict[str, Any]):
        self._provider_id = provider_id
        self._config = config
        self._past_days = int(config.get("sync_past_days", 30))
        self._future_days = int(config.get("sync_future_days", 365))
        self._calendars: dict[str, Any] = {}  # connection id -> caldav.Calendar

    def _get_calendar(self, connection: Connection):
        """Lazy-initialize the CalDAV client and calendar for a connection."""
        if connection.id in self._calendars:
            return self._calendars[connection.id]

        import caldav

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Adapter '{self._provider_id}': CalDAV credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        url = self._config["url"].format(account=connection.account_email)
        client = caldav.DAVClient(url=url, username=username, password=password)

        calendar = None
        calendar_name_filter = self._config.get("calendar_name")
        if calendar_name_filter:
            calendars = client.principal().calendars()
            for cal in calendars:
                if cal.name == calendar_name_filter:
                    calendar = cal
                    break
            if calendar is None:
                available = [c.name for c in calendars]
                raise ValueError(
                    f"Adapter '{self._provider_id}': CalDAV calendar '{calendar_name_filter}' not found. "
                    f"Available: {available}"
                )
        else:
            # URL points directly to a calendar
            calendar = caldav.Calendar(client=client, url=url)

        self._calendars[connection.id] = calendar
        logger.info("CalDAV connected: %s -> %s", connection.id, url)
        return calendar

    def _parse_vevent(self, vevent: Any) -> RemoteEvent:
        """Parse a VEVENT component into a RemoteEvent."""
        dtstart = vevent.get("dtstart")
        dtend = vevent.get("dtend")
        start = ensure_aware(dtstart.dt) if dtstart else None
        end = ensure_aware(dtend.dt) if dtend else start
        all_day = dtstart is not None and not isinstance(dtstart.dt, datetime)

        categories: set[str] = set()
        raw_categories = vevent.get("categories")
        for group in raw_categories if isinstance(raw_categories, list) else [raw_categories]:
            if group is not None:
                categories.update(str(c) for c in group.cats)

        raw_attendees = vevent.get("attendee") or []
        if not isinstance(raw_attendees, list):
            raw_attendees = [raw_attendees]
        attendees = [
            Attendee(
                email=str(a).replace("mailto:", "").replace("MAILTO:", ""),
                name=str(a.params.get("CN", "")),
                response=_PARTSTAT_RESPONSES.get(str(a.params.get("PARTSTAT", "")).upper()),
            )
            for a in raw_attendees
        ]

        transparent = str(vevent.get("transp", "")).upper() == "TRANSPARENT"
        status = str(vevent.get("status", "CONFIRMED")).lower()

        return RemoteEvent(
            external_id=str(vevent.get("uid", "")),
            title=str(vevent.get("summary", "")),
            start=start,
            end=end,
            description=str(vevent.get("description", "")),
            location=str(vevent.get("location", "")),
            all_day=all_day,
            categories=categories,
            attendees=attendees,
            availability="available" if transparent else ("tentative" if status == "tentative" else "busy"),
            status=status if status in ("confirmed", "tentative", "cancelled") else "confirmed",
        )

    def _pull_deltas_sync(self, connection: Connection, since: datetime | None) -> list[RemoteDelta]:
        cal = self._get_calendar(connection)
        now = utcnow()
        results = cal.date_search(
            start=now - timedelta(days=self._past_days),
            end=now + timedelta(days=self._future_days),
            expand=False,
        )

        deltas = []
        for event_obj in results:
            for vevent in event_obj.icalendar_instance.walk("VEVENT"):
                modified = vevent.get("last-modified")
                if since and modified and ensure_aware(modified.dt) < since:
                    continue
                remote = self._parse_vevent(vevent)
                if remote.status == "cancelled":
                    operation = "delete"
                else:
                    created = vevent.get("created")
                    is_new = since is None or (created is not None and ensure_aware(created.dt) >= since)
                    operation = "create" if is_new else "update"
                deltas.append(RemoteDelta(operation=operation, remote_event=remote))

        deltas.sort(key=lambda d: d.remote_event.start or now)
        return deltas

    def _apply_fields(self, vevent: Any, event: CalendarEvent) -> None:
        from icalendar import vCalAddress

        for key in ("summary", "dtstart", "dtend", "description", "location", "categories",
                    "attendee", "transp", "status", "dtstamp"):
            if key in vevent:
                del vevent[key]
        vevent.add("summary", event.title)
        vevent.add("dtstart", event.start_time)
        vevent.add("dtend", event.end_time)
        vevent.add("dtstamp", utcnow())
        if event.description:
            vevent.add("description", event.description)
        if event.location:
            vevent.add("location", event.location)
        if event.categories:
            vevent.add("categories", sorted(event.categories))
        for attendee in event.attendees:
            address = vCalAddress(f"mailto:{attendee.email}")
            if attendee.name:
                address.params["CN"] = attendee.name
            vevent.add("attendee", address, encode=0)
        vevent.add("transp", "TRANSPARENT" if event.availability == "available" else "OPAQUE")
        vevent.add("status", event.status.upper())

    def _push_event_sync(self, event: CalendarEvent, connection: Connection) -> PushResult:
        from icalendar import Calendar, Event as VEvent

        cal = self._get_calendar(connection)

        if event.external_id:
            event_obj = cal.event_by_uid(event.external_id)
            vevents = event_obj.icalendar_instance.walk("VEVENT")
            if not vevents:
                raise ValueError(f"Remote event not found: {event.external_id}")
            self._apply_fields(vevents[0], event)
            event_obj.save()
            return PushResult(external_id=event.external_id, synced_at=utcnow())

        uid = str(uuid.uuid4())
        vcal = Calendar()
        vcal.add("prodid", "-//calendar-integration//EN")
        vcal.add("version", "2.0")
        vevent = VEvent()
        vevent.add("uid", uid)
        self._apply_fields(vevent, event)
        vcal.add_component(vevent)

        cal.save_event(vcal.to_ical().decode())
        logger.info("CalDAV event created: %s for connection %s", event.title, connection.id)
        return PushResult(external_id=uid, synced_at=utcnow())

    def _delete_remote_event_sync(self, event: CalendarEvent, connection: Connection) -> None:
        from caldav.lib.error import NotFoundError as DAVNotFoundError

        cal = self._get_calendar(connection)
        try:
            event_obj = cal.event_by_uid(event.external_id)
        except DAVNotFoundError:
            logger.info("CalDAV event %s already gone", event.external_id)
            return
        event_obj.delete()

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._push_event_sync, event, connection)

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._delete_remote_event_sync, event, connection)

    async def pull_deltas(self, connection: Connection, since: datetime | None = None) -> list[RemoteDelta]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._pull_deltas_sync, connection, since)
