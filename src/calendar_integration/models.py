"""Domain types shared by the connection, event, sync and availability layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

PROVIDER_CATEGORIES = {"microsoft", "google", "exchange", "caldav"}
PROVIDER_STATUSES = {"active", "degraded", "disabled"}
CONNECTION_STATUSES = {"connected", "disconnected", "error"}
EVENT_AVAILABILITIES = {"available", "busy", "tentative", "out_of_office"}
EVENT_STATUSES = {"confirmed", "tentative", "cancelled"}
SYNC_TYPES = {"full", "incremental"}
SYNC_TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@dataclass
class ProviderCapabilities:
    create_events: bool = True
    update_events: bool = True
    delete_events: bool = True
    read_events: bool = True
    manage_permissions: bool = False
    recurring: bool = True
    attachments: bool = False
    reminders: bool = True
    time_zones: bool = True
    availability: bool = False


@dataclass
class RateLimits:
    per_minute: int
    per_hour: int
    per_day: int


@dataclass
class Provider:
    """A calendar provider known to the registry."""

    id: str
    name: str
    category: str  # microsoft, google, exchange, caldav
    api_version: str = ""
    auth_type: str = "oauth2"  # oauth2, basic
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    rate_limits: RateLimits = field(default_factory=lambda: RateLimits(60, 3600, 86400))
    status: str = "active"  # active, degraded, disabled
    error_details: str | None = None
    status_changed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@dataclass
class Permissions:
    read: bool = True
    write: bool = False
    delete: bool = False
    manage: bool = False


@dataclass
class SyncSettings:
    enabled: bool = True
    interval_minutes: int = 15
    last_sync: datetime | None = None
    next_sync: datetime | None = None


@dataclass
class Connection:
    """A tenant user's linked external calendar account."""

    id: str
    tenant_id: str
    user_id: str
    provider_id: str
    account_email: str
    display_name: str = ""
    permissions: Permissions = field(default_factory=Permissions)
    sync_settings: SyncSettings = field(default_factory=SyncSettings)
    status: str = "connected"  # connected, disconnected, error
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def domain(self) -> str:
        if "@" not in self.account_email:
            return ""
        return self.account_email.rsplit("@", 1)[1].strip().lower()


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass
class Attendee:
    email: str
    name: str = ""
    response: str | None = None  # accepted, declined, tentative, pending


@dataclass
class CalendarEvent:
    """Calendar event held in the local event store."""

    id: str
    connection_id: str
    tenant_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str = ""
    location: str = ""
    time_zone: str = "UTC"
    all_day: bool = False
    categories: set[str] = field(default_factory=set)
    attendees: list[Attendee] = field(default_factory=list)
    availability: str = "busy"  # available, busy, tentative, out_of_office
    status: str = "confirmed"  # confirmed, tentative, cancelled
    external_id: str | None = None
    synced_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 3600


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------

@dataclass
class SyncErrorRecord:
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str | None = None


@dataclass
class SyncJob:
    """One asynchronous reconciliation run against a connection."""

    id: str
    connection_id: str
    sync_type: str  # full, incremental
    status: str = "pending"  # pending, running, completed, failed, cancelled
    progress: int = 0
    total: int = 0
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    errors: list[SyncErrorRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    start_time: datetime | None = None  # set when the job starts running
    end_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in SYNC_TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

@dataclass
class WorkingHours:
    start: str = "09:00"  # HH:MM
    end: str = "17:00"
    enabled: bool = True


@dataclass
class BreakWindow:
    start: str
    end: str
    title: str = ""


@dataclass
class AvailabilityException:
    date: date
    type: str  # holiday, vacation, sick, custom
    title: str = ""


@dataclass
class Slot:
    start_time: datetime
    end_time: datetime
    status: str = "available"
    event_id: str | None = None
    event_title: str | None = None


@dataclass
class DayAvailability:
    user_id: str
    date: date
    time_zone: str
    slots: list[Slot] = field(default_factory=list)
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    breaks: list[BreakWindow] = field(default_factory=list)
    exceptions: list[AvailabilityException] = field(default_factory=list)


@dataclass
class SlotCandidate:
    start_time: datetime
    end_time: datetime
    available_users: list[str] = field(default_factory=list)


def to_dict(obj: Any) -> Any:
    """Convert a domain dataclass tree into JSON-friendly values."""
    from dataclasses import fields, is_dataclass

    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, set):
        return sorted(to_dict(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    return obj
