"""Provider adapter that dispatches to per-provider adapters."""

from __future__ import annotations

import logging
from datetime import datetime

from ..config import AdapterSettings
from ..errors import AdapterFailure
from ..models import CalendarEvent, Connection
from .base import DELTA_OPERATIONS, ProviderAdapter, PushResult, RemoteDelta

logger = logging.getLogger("calendar-integration")


def _init_adapter(settings: AdapterSettings) -> ProviderAdapter:
    """Create an adapter instance for a configured provider."""
    if settings.type == "ews":
        from .ews import EWSAdapter
        return EWSAdapter(settings.provider, settings.config)
    elif settings.type == "google":
        from .google import GoogleCalendarAdapter
        return GoogleCalendarAdapter(settings.provider, settings.config)
    elif settings.type == "caldav":
        from .caldav_backend import CalDAVAdapter
        return CalDAVAdapter(settings.provider, settings.config)
    else:
        raise ValueError(f"Unknown adapter type: {settings.type}")


class AdapterRouter:
    """Routes adapter calls by the connection's provider id.

    Adapters are built lazily from settings on first use; explicitly given
    adapters take precedence. Every failure surfaces as AdapterFailure.
    """

    def __init__(
        self,
        settings: dict[str, AdapterSettings] | None = None,
        adapters: dict[str, ProviderAdapter] | None = None,
    ):
        self._settings = dict(settings or {})
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    def register(self, provider_id: str, adapter: ProviderAdapter) -> None:
        self._adapters[provider_id] = adapter

    def _get_adapter(self, provider_id: str) -> ProviderAdapter:
        if provider_id not in self._adapters:
            settings = self._settings.get(provider_id)
            if settings is None:
                raise AdapterFailure(provider_id, "no adapter configured")
            try:
                self._adapters[provider_id] = _init_adapter(settings)
            except ValueError as e:
                raise AdapterFailure(provider_id, str(e)) from e
        return self._adapters[provider_id]

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult:
        adapter = self._get_adapter(connection.provider_id)
        try:
            return await adapter.push_event(event, connection)
        except AdapterFailure:
            raise
        except Exception as e:
            raise AdapterFailure(connection.provider_id, f"push failed: {e}") from e

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None:
        adapter = self._get_adapter(connection.provider_id)
        try:
            await adapter.delete_remote_event(event, connection)
        except AdapterFailure:
            raise
        except Exception as e:
            raise AdapterFailure(connection.provider_id, f"remote delete failed: {e}") from e

    async def pull_deltas(self, connection: Connection, since: datetime | None = None) -> list[RemoteDelta]:
        adapter = self._get_adapter(connection.provider_id)
        try:
            deltas = list(await adapter.pull_deltas(connection, since))
        except AdapterFailure:
            raise
        except Exception as e:
            raise AdapterFailure(connection.provider_id, f"pull failed: {e}") from e

        for delta in deltas:
            if delta.operation not in DELTA_OPERATIONS:
                raise AdapterFailure(connection.provider_id, f"unknown delta operation '{delta.operation}'")
        return deltas
