#!/usr/bin/env python3
"""
calendar-integration: MCP server for the calendar integration hub.

Connections, events, sync jobs, availability and health exposed as tools.
Provider adapters (Exchange EWS, Google Calendar, CalDAV) are configured in YAML.

Environment variables:
    CALENDAR_INTEGRATION_CONFIG: path to calendar_integration.yaml
        (default: /config/calendar_integration.yaml)
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .errors import CalendarIntegrationError
from .models import to_dict
from .service import CalendarIntegrationService

# MCP stdio servers must NEVER write to stdout. Log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("calendar-integration")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_service: CalendarIntegrationService | None = None


def _get_service() -> CalendarIntegrationService:
    """Get the service. Lazy-initializes from the config file on first access."""
    global _service
    if _service is None:
        _service = CalendarIntegrationService(load_config())
    return _service


def _parse_datetime(value: str) -> datetime:
    """Parse ISO 8601 datetime string. Naive values are taken as UTC."""
    from dateutil.parser import parse as parse_dt
    dt = parse_dt(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_date(value: str) -> date:
    from dateutil.parser import parse as parse_dt
    return parse_dt(value).date()


def _split(value: str) -> list[str]:
    """Comma-separated tool argument to list."""
    return [v.strip() for v in value.split(",") if v.strip()]


@asynccontextmanager
async def _lifespan(server: FastMCP):
    service = _get_service()
    await service.start()
    try:
        yield {}
    finally:
        await service.shutdown()


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

mcp = FastMCP("calendar-integration", lifespan=_lifespan)


@mcp.tool()
async def list_providers() -> dict:
    """List known calendar providers with status, capabilities and rate limits."""
    return {"providers": [to_dict(p) for p in _get_service().list_providers()]}


@mcp.tool()
async def create_connection(
    tenant_id: str,
    user_id: str,
    provider_id: str,
    account_email: str,
    display_name: str = "",
    can_write: bool = False,
    can_delete: bool = False,
    sync_enabled: bool = True,
    sync_interval_minutes: int = 15,
) -> dict:
    """Link an external calendar account for a tenant user.

    A full sync is scheduled immediately when sync is enabled.

    Args:
        tenant_id: Tenant id
        user_id: User id within the tenant
        provider_id: Provider id (see list_providers), e.g. "google-calendar"
        account_email: Account e-mail address on the provider
        display_name: Display name (default: account_email)
        can_write: Allow creating and updating events
        can_delete: Allow deleting events
        sync_enabled: Periodically pull remote changes
        sync_interval_minutes: Minutes between incremental syncs
    """
    try:
        connection = await _get_service().create_connection(
            tenant_id,
            user_id,
            provider_id,
            account_email,
            permissions={"read": True, "write": can_write, "delete": can_delete},
            sync_settings={"enabled": sync_enabled, "interval_minutes": sync_interval_minutes},
            display_name=display_name,
        )
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "connection": to_dict(connection)}


@mcp.tool()
async def list_connections(tenant_id: str, user_id: str = "") -> dict:
    """List a tenant's connections, optionally for one user.

    Args:
        tenant_id: Tenant id
        user_id: User id. Empty = all users of the tenant.
    """
    connections = await _get_service().list_connections(tenant_id, user_id or None)
    return {"count": len(connections), "connections": [to_dict(c) for c in connections]}


@mcp.tool()
async def delete_connection(connection_id: str) -> dict:
    """Delete a connection. Running syncs are cancelled and its events removed.

    Args:
        connection_id: Connection id
    """
    try:
        await _get_service().delete_connection(connection_id)
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "message": f"Connection {connection_id} deleted"}


@mcp.tool()
async def create_event(
    connection_id: str,
    title: str,
    start: str,
    end: str,
    description: str = "",
    location: str = "",
    categories: str = "",
    attendees: str = "",
    availability: str = "busy",
) -> dict:
    """Create a calendar event on a connection and push it to the provider.

    Args:
        connection_id: Connection id
        title: Event title/summary
        start: Start date/time (ISO 8601, e.g. "2026-02-14T14:00:00+01:00")
        end: End date/time (ISO 8601)
        description: Event description (optional)
        location: Event location (optional)
        categories: Comma-separated categories (optional)
        attendees: Comma-separated attendee e-mails (optional)
        availability: available, busy, tentative or out_of_office
    """
    try:
        dt_start = _parse_datetime(start)
    except (ValueError, OverflowError):
        return {"error": f"Invalid start date: {start}"}
    try:
        dt_end = _parse_datetime(end)
    except (ValueError, OverflowError):
        return {"error": f"Invalid end date: {end}"}

    try:
        event = await _get_service().create_event(
            connection_id,
            title,
            dt_start,
            dt_end,
            description=description,
            location=location,
            categories=_split(categories),
            attendees=_split(attendees),
            availability=availability,
        )
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "event": to_dict(event)}


@mcp.tool()
async def list_events(
    connection_id: str,
    start: str = "",
    end: str = "",
    categories: str = "",
    attendees: str = "",
    statuses: str = "",
) -> dict:
    """List a connection's events ordered by start time.

    Args:
        connection_id: Connection id
        start: Range start (ISO 8601). Empty = unbounded.
        end: Range end (ISO 8601, exclusive). Empty = unbounded.
        categories: Comma-separated categories, any must match (optional)
        attendees: Comma-separated attendee e-mails, any must match (optional)
        statuses: Comma-separated statuses: confirmed, tentative, cancelled (optional)
    """
    dt_start = dt_end = None
    if start:
        try:
            dt_start = _parse_datetime(start)
        except (ValueError, OverflowError):
            return {"error": f"Invalid start date: {start}"}
    if end:
        try:
            dt_end = _parse_datetime(end)
        except (ValueError, OverflowError):
            return {"error": f"Invalid end date: {end}"}

    events = await _get_service().list_events(
        connection_id,
        dt_start,
        dt_end,
        categories=_split(categories),
        attendees=_split(attendees),
        statuses=_split(statuses),
    )
    return {"count": len(events), "events": [to_dict(e) for e in events]}


@mcp.tool()
async def update_event(
    event_id: str,
    title: str = "",
    start: str = "",
    end: str = "",
    description: str = "",
    location: str = "",
    availability: str = "",
    status: str = "",
) -> dict:
    """Update an existing event. Only provided fields are changed.

    Args:
        event_id: Event id (from list_events)
        title: New title (optional)
        start: New start date/time (optional)
        end: New end date/time (optional)
        description: New description (optional)
        location: New location (optional)
        availability: New availability (optional)
        status: New status (optional)
    """
    kwargs: dict[str, Any] = {}
    if title:
        kwargs["title"] = title
    if start:
        try:
            kwargs["start_time"] = _parse_datetime(start)
        except (ValueError, OverflowError):
            return {"error": f"Invalid start date: {start}"}
    if end:
        try:
            kwargs["end_time"] = _parse_datetime(end)
        except (ValueError, OverflowError):
            return {"error": f"Invalid end date: {end}"}
    if description:
        kwargs["description"] = description
    if location:
        kwargs["location"] = location
    if availability:
        kwargs["availability"] = availability
    if status:
        kwargs["status"] = status

    if not kwargs:
        return {"error": "No fields to update"}

    try:
        event = await _get_service().update_event(event_id, **kwargs)
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "event": to_dict(event)}


@mcp.tool()
async def delete_event(event_id: str) -> dict:
    """Delete an event locally and on the provider.

    Args:
        event_id: Event id (from list_events)
    """
    try:
        await _get_service().delete_event(event_id)
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "message": f"Event {event_id} deleted"}


@mcp.tool()
async def schedule_sync(connection_id: str, sync_type: str = "incremental") -> dict:
    """Start a sync job in the background. Poll it with get_sync_status.

    Args:
        connection_id: Connection id
        sync_type: "full" or "incremental"
    """
    try:
        job_id = await _get_service().schedule_sync(connection_id, sync_type)
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"success": True, "sync_id": job_id}


@mcp.tool()
async def get_sync_status(sync_id: str) -> dict:
    """Get a sync job's status, progress and counters.

    Args:
        sync_id: Sync job id (from schedule_sync)
    """
    try:
        job = await _get_service().get_sync_status(sync_id)
    except CalendarIntegrationError as e:
        return {"error": str(e)}
    return {"sync": to_dict(job)}


@mcp.tool()
async def cancel_sync(sync_id: str) -> dict:
    """Request cancellation of a running sync job. Other states are left as is.

    Args:
        sync_id: Sync job id
    """
    try:
        requested = await _get_service().cancel_sync(sync_id)
    except CalendarIntegrationError as e:
        return {"error": str(e)}
    return {"success": True, "cancellation_requested": requested}


@mcp.tool()
async def get_availability(
    user_id: str,
    start_date: str,
    end_date: str = "",
    time_zone: str = "UTC",
) -> dict:
    """Get a user's 15-minute free/busy grid for each day in a date range.

    Args:
        user_id: User id
        start_date: First day (e.g. "2026-02-13")
        end_date: Last day, inclusive. Empty = start_date.
        time_zone: IANA time zone name (e.g. "Europe/Berlin")
    """
    try:
        first = _parse_date(start_date)
        last = _parse_date(end_date) if end_date else first
    except (ValueError, OverflowError):
        return {"error": f"Invalid date range: {start_date} - {end_date}"}

    try:
        days = await _get_service().get_availability(user_id, first, last, time_zone)
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"days": [to_dict(d) for d in days]}


@mcp.tool()
async def find_available_slots(
    user_ids: str,
    duration_minutes: int,
    start_date: str,
    end_date: str = "",
    working_hours_only: bool = True,
    time_zone: str = "UTC",
) -> dict:
    """Find time windows in which at least one of the users is free.

    Each result lists which users are free, so callers needing everyone can
    filter on it.

    Args:
        user_ids: Comma-separated user ids
        duration_minutes: Window length, a multiple of 15
        start_date: First day (e.g. "2026-02-13")
        end_date: Last day, inclusive. Empty = start_date.
        working_hours_only: Only windows inside working hours
        time_zone: IANA time zone name
    """
    users = _split(user_ids)
    if not users:
        return {"error": "No user ids given"}
    try:
        first = _parse_date(start_date)
        last = _parse_date(end_date) if end_date else first
    except (ValueError, OverflowError):
        return {"error": f"Invalid date range: {start_date} - {end_date}"}

    try:
        slots = await _get_service().find_available_slots(
            users, duration_minutes, first, last, working_hours_only, time_zone
        )
    except (CalendarIntegrationError, ValueError) as e:
        return {"error": str(e)}
    return {"count": len(slots), "slots": [to_dict(s) for s in slots]}


@mcp.tool()
async def get_system_health() -> dict:
    """Summarise provider status, connection counts and sync job counts."""
    return to_dict(await _get_service().get_system_health())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for console script and python -m."""
    global _service

    config = load_config()
    _service = CalendarIntegrationService(config)
    logger.info(
        "Loaded config: %d provider override(s), %d adapter(s): %s",
        len(config.providers),
        len(config.adapters),
        list(config.adapters.keys()),
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
