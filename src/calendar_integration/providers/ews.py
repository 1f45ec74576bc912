"""Exchange Web Services (EWS) adapter via exchangelib."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Any

from ..models import Attendee, CalendarEvent, Connection, utcnow
from .base import PushResult, RemoteDelta, RemoteEvent, ensure_aware

logger = logging.getLogger("calendar-integration")

_FREE_BUSY = {
    "Free": "available",
    "Tentative": "tentative",
    "Busy": "busy",
    "OOF": "out_of_office",
    "WorkingElsewhere": "busy",
    "NoData": "busy",
}

_RESPONSES = {
    "Accept": "accepted",
    "Decline": "declined",
    "Tentative": "tentative",
    "NoResponseReceived": "pending",
}


class EWSAdapter:
    """Provider adapter for Microsoft Exchange via EWS.

    The service account configured here accesses each connection's mailbox
    (the account email) by delegation.
    """

    def __init__(self, provider_id: str, config: dict[str, Any]):
        self._provider_id = provider_id
        self._config = config
        self._past_days = int(config.get("sync_past_days", 30))
        self._future_days = int(config.get("sync_future_days", 365))
        self._accounts: dict[str, Any] = {}  # account email -> exchangelib Account

    def _get_account(self, connection: Connection):
        """Lazy-initialize the exchangelib Account for a connection's mailbox."""
        if connection.account_email in self._accounts:
            return self._accounts[connection.account_email]

        from exchangelib import DELEGATE, Account, Configuration, Credentials

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Adapter '{self._provider_id}': EWS credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        ews_url = self._config["ews_url"]
        ews_config = Configuration(
            server=ews_url.split("//")[1].split("/")[0],  # Extract hostname
            credentials=Credentials(username=username, password=password),
            service_endpoint=ews_url,
        )
        account = Account(
            primary_smtp_address=connection.account_email,
            config=ews_config,
            autodiscover=False,
            access_type=DELEGATE,
        )
        self._accounts[connection.account_email] = account
        logger.info("EWS connected: %s -> %s", connection.account_email, ews_url)
        return account

    def _to_remote(self, item: Any) -> RemoteEvent:
        attendees = [
            Attendee(
                email=a.mailbox.email_address or "",
                name=a.mailbox.name or "",
                response=_RESPONSES.get(a.response_type),
            )
            for a in (item.required_attendees or []) + (item.optional_attendees or [])
        ]
        return RemoteEvent(
            external_id=item.id,
            title=item.subject or "",
            start=ensure_aware(item.start) if item.start else None,
            end=ensure_aware(item.end) if item.end else None,
            description=str(item.body) if item.body else "",
            location=item.location or "",
            all_day=bool(item.is_all_day),
            categories=set(item.categories or []),
            attendees=attendees,
            availability=_FREE_BUSY.get(item.legacy_free_busy_status, "busy"),
            status="cancelled" if item.is_cancelled else "confirmed",
        )

    def _pull_deltas_sync(self, connection: Connection, since: datetime | None) -> list[RemoteDelta]:
        from exchangelib import EWSDateTime, EWSTimeZone

        account = self._get_account(connection)
        tz = EWSTimeZone("UTC")
        now = utcnow()
        window_start = EWSDateTime.from_datetime(now - timedelta(days=self._past_days)).astimezone(tz)
        window_end = EWSDateTime.from_datetime(now + timedelta(days=self._future_days)).astimezone(tz)

        items = account.calendar.filter(start__lt=window_end, end__gt=window_start)
        if since is not None:
            items = items.filter(last_modified_time__gte=EWSDateTime.from_datetime(since).astimezone(tz))

        deltas = []
        for item in items.order_by("start"):
            remote = self._to_remote(item)
            if remote.status == "cancelled":
                operation = "delete"
            elif since is None or (item.datetime_created and ensure_aware(item.datetime_created) >= since):
                operation = "create"
            else:
                operation = "update"
            deltas.append(RemoteDelta(operation=operation, remote_event=remote))
        return deltas

    def _apply_fields(self, item: Any, event: CalendarEvent) -> None:
        from exchangelib import EWSDateTime, EWSTimeZone

        tz = EWSTimeZone("UTC")
        item.subject = event.title
        item.start = EWSDateTime.from_datetime(event.start_time).astimezone(tz)
        item.end = EWSDateTime.from_datetime(event.end_time).astimezone(tz)
        item.body = event.description
        item.location = event.location
        item.categories = sorted(event.categories) or None
        item.legacy_free_busy_status = {
            "available": "Free",
            "tentative": "Tentative",
            "out_of_office": "OOF",
        }.get(event.availability, "Busy")
        item.required_attendees = [a.email for a in event.attendees] or None

    def _push_event_sync(self, event: CalendarEvent, connection: Connection) -> PushResult:
        from exchangelib import CalendarItem as EWSCalendarItem

        account = self._get_account(connection)

        if event.external_id:
            items = list(account.calendar.filter(id=event.external_id))
            if not items:
                raise ValueError(f"Remote event not found: {event.external_id}")
            item = items[0]
        else:
            item = EWSCalendarItem(account=account, folder=account.calendar)

        self._apply_fields(item, event)
        item.save()
        if not event.external_id:
            logger.info("EWS event created: %s for connection %s", event.title, connection.id)
        return PushResult(external_id=item.id, synced_at=utcnow())

    def _delete_remote_event_sync(self, event: CalendarEvent, connection: Connection) -> None:
        account = self._get_account(connection)
        items = list(account.calendar.filter(id=event.external_id))
        if not items:
            logger.info("EWS event %s already gone", event.external_id)
            return
        items[0].delete()

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._push_event_sync, event, connection)

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._delete_remote_event_sync, event, connection)

    async def pull_deltas(self, connection: Connection, since: datetime | None = None) -> list[RemoteDelta]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._pull_deltas_sync, connection, since)
