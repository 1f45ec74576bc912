"""Google Calendar API adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any

from dateutil.parser import parse as parse_dt

from ..models import Attendee, CalendarEvent, Connection, utcnow
from .base import PushResult, RemoteDelta, RemoteEvent, ensure_aware

logger = logging.getLogger("calendar-integration")

SCOPES = ["https://www.googleapis.com/auth/calendar"]

_RESPONSES = {
    "accepted": "accepted",
    "declined": "declined",
    "tentative": "tentative",
    "needsAction": "pending",
}


def parse_google_item(item: dict[str, Any]) -> RemoteEvent:
    """Convert a Google Calendar API event resource into a RemoteEvent."""
    start_raw = item.get("start", {})
    end_raw = item.get("end", {})

    # All-day events use 'date', timed events use 'dateTime'
    all_day = "date" in start_raw and "dateTime" not in start_raw
    if all_day:
        start = ensure_aware(parse_dt(start_raw["date"]).date())
        end = ensure_aware(parse_dt(end_raw.get("date", start_raw["date"])).date())
    elif start_raw:
        start = ensure_aware(parse_dt(start_raw.get("dateTime", "")))
        end = ensure_aware(parse_dt(end_raw.get("dateTime", start_raw.get("dateTime", ""))))
    else:
        # Cancelled instances only carry an id
        start = end = None

    attendees = [
        Attendee(
            email=a.get("email", ""),
            name=a.get("displayName", ""),
            response=_RESPONSES.get(a.get("responseStatus", "")),
        )
        for a in item.get("attendees", [])
    ]

    status = item.get("status", "confirmed")
    if item.get("transparency") == "transparent":
        availability = "available"
    elif item.get("eventType") == "outOfOffice":
        availability = "out_of_office"
    elif status == "tentative":
        availability = "tentative"
    else:
        availability = "busy"

    categories = item.get("extendedProperties", {}).get("private", {}).get("categories", "")

    return RemoteEvent(
        external_id=item["id"],
        title=item.get("summary", ""),
        start=start,
        end=end,
        description=item.get("description", ""),
        location=item.get("location", ""),
        all_day=all_day,
        categories={c for c in categories.split(",") if c},
        attendees=attendees,
        availability=availability,
        status=status,
    )


def event_to_google_body(event: CalendarEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": event.start_time.isoformat(), "timeZone": event.time_zone},
        "end": {"dateTime": event.end_time.isoformat(), "timeZone": event.time_zone},
        "status": event.status,
        "transparency": "transparent" if event.availability == "available" else "opaque",
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location
    if event.attendees:
        body["attendees"] = [
            {"email": a.email, **({"displayName": a.name} if a.name else {})} for a in event.attendees
        ]
    if event.categories:
        body["extendedProperties"] = {"private": {"categories": ",".join(sorted(event.categories))}}
    return body


class GoogleCalendarAdapter:
    """Provider adapter for Google Calendar via the Google API.

    The connection's account email is used as the calendar id unless
    ``calendar_id`` is configured. ``token_file`` may contain an
    ``{account}`` placeholder.
    """

    def __init__(self, provider_id: str, config: dict[str, Any]):
        self._provider_id = provider_id
        self._config = config
        self._services: dict[str, Any] = {}  # token file -> API service

    def _calendar_id(self, connection: Connection) -> str:
        return self._config.get("calendar_id") or connection.account_email

    def _get_service(self, connection: Connection):
        """Lazy-initialize the Google Calendar API service with auto-refresh."""
        token_file = self._config.get("token_file", "/data/google_calendar_token.json").format(
            account=connection.account_email
        )
        if token_file in self._services:
            return self._services[token_file]

        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = None
        credentials_file = self._config["credentials_file"]

        # Load existing token
        if os.path.isfile(token_file):
            with open(token_file, "r") as f:
                token_data = json.load(f)
            creds = Credentials.from_authorized_user_info(token_data, SCOPES)

        # Refresh; obtaining new credentials happens outside this service
        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
                with open(token_file, "w") as f:
                    json.dump(json.loads(creds.to_json()), f)
                logger.info("Google token refreshed for '%s'", connection.account_email)
            elif os.path.isfile(credentials_file):
                raise ValueError(
                    f"Adapter '{self._provider_id}': Google token not found or expired for "
                    f"{connection.account_email}"
                )
            else:
                raise ValueError(
                    f"Adapter '{self._provider_id}': credentials file not found: {credentials_file}"
                )

        service = build("calendar", "v3", credentials=creds)
        self._services[token_file] = service
        logger.info("Google Calendar connected: %s", connection.account_email)
        return service

    def _push_event_sync(self, event: CalendarEvent, connection: Connection) -> PushResult:
        service = self._get_service(connection)
        calendar_id = self._calendar_id(connection)
        body = event_to_google_body(event)

        if event.external_id:
            result = (
                service.events()
                .patch(calendarId=calendar_id, eventId=event.external_id, body=body)
                .execute()
            )
        else:
            result = service.events().insert(calendarId=calendar_id, body=body).execute()
            logger.info("Google event created: %s for connection %s", event.title, connection.id)

        return PushResult(external_id=result["id"], synced_at=utcnow())

    def _delete_remote_event_sync(self, event: CalendarEvent, connection: Connection) -> None:
        from googleapiclient.errors import HttpError

        service = self._get_service(connection)
        try:
            service.events().delete(
                calendarId=self._calendar_id(connection), eventId=event.external_id
            ).execute()
        except HttpError as e:
            # Already removed remotely
            if e.resp.status not in (404, 410):
                raise

    def _pull_deltas_sync(self, connection: Connection, since: datetime | None) -> list[RemoteDelta]:
        service = self._get_service(connection)
        params: dict[str, Any] = {
            "calendarId": self._calendar_id(connection),
            "singleEvents": True,
            "maxResults": 250,
        }
        if since is not None:
            params["updatedMin"] = since.isoformat()
            params["showDeleted"] = True

        deltas = []
        page_token = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            result = service.events().list(**params).execute()
            for item in result.get("items", []):
                remote = parse_google_item(item)
                if remote.status == "cancelled":
                    operation = "delete"
                elif since is None or ensure_aware(parse_dt(item.get("created", since.isoformat()))) >= since:
                    operation = "create"
                else:
                    operation = "update"
                deltas.append(RemoteDelta(operation=operation, remote_event=remote))
            page_token = result.get("nextPageToken")
            if not page_token:
                return deltas

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._push_event_sync, event, connection)

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._delete_remote_event_sync, event, connection)

    async def pull_deltas(self, connection: Connection, since: datetime | None = None) -> list[RemoteDelta]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._pull_deltas_sync, connection, since)
