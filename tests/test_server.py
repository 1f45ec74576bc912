"""Tests for the calendar-integration MCP tools."""

import textwrap
from datetime import datetime, timezone

import pytest

from calendar_integration import config as config_module
from calendar_integration import server
from calendar_integration.service import CalendarIntegrationService


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _reset_state(adapter):
    """Give every test a fresh service backed by the fake adapter."""
    server._service = CalendarIntegrationService(adapter=adapter)
    yield
    await server._service.shutdown()
    server._service = None


async def _make_connection(user_id="u1", can_write=True, can_delete=True) -> str:
    result = await server.create_connection(
        tenant_id="t1",
        user_id=user_id,
        provider_id="google-calendar",
        account_email=f"{user_id}@example.com",
        can_write=can_write,
        can_delete=can_delete,
        sync_enabled=False,
    )
    return result["connection"]["id"]


async def _make_event(connection_id: str, title="Team Meeting") -> dict:
    result = await server.create_event(
        connection_id=connection_id,
        title=title,
        start="2026-03-02T10:00:00+00:00",
        end="2026-03-02T11:00:00+00:00",
    )
    return result["event"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_naive_datetime_taken_as_utc(self):
        assert server._parse_datetime("2026-03-02T10:00:00") == datetime(2026, 3, 2, 10, tzinfo=timezone.utc)

    def test_aware_datetime_kept(self):
        dt = server._parse_datetime("2026-03-02T10:00:00+01:00")
        assert dt.utcoffset().total_seconds() == 3600

    def test_split(self):
        assert server._split(" a, b,,c ") == ["a", "b", "c"]
        assert server._split("") == []

    def test_lazy_service_from_config(self, tmp_path, monkeypatch):
        config_file = tmp_path / "calendar_integration.yaml"
        config_file.write_text(textwrap.dedent("""\
            sync_interval_minutes: 30
        """))
        monkeypatch.setattr(config_module, "CONFIG_PATH", str(config_file))
        server._service = None

        service = server._get_service()

        assert service.scheduler.interval_minutes == 30
        assert server._get_service() is service


# ---------------------------------------------------------------------------
# Providers and connections
# ---------------------------------------------------------------------------

class TestProviderTools:
    async def test_list_providers(self):
        result = await server.list_providers()
        ids = {p["id"] for p in result["providers"]}
        assert ids == {"microsoft-outlook", "google-calendar", "exchange-server", "caldav"}


class TestConnectionTools:
    async def test_create_connection(self):
        result = await server.create_connection(
            tenant_id="t1",
            user_id="u1",
            provider_id="caldav",
            account_email="anna@example.com",
            can_write=True,
            sync_enabled=False,
        )
        assert result["success"] is True
        connection = result["connection"]
        assert connection["display_name"] == "anna@example.com"
        assert connection["permissions"] == {"read": True, "write": True, "delete": False, "manage": False}
        assert connection["sync_settings"]["enabled"] is False

    async def test_unknown_provider(self):
        result = await server.create_connection(
            tenant_id="t1", user_id="u1", provider_id="fax", account_email="a@example.com"
        )
        assert result == {"error": "Provider fax not found"}

    async def test_list_connections(self):
        await _make_connection("u1")
        await _make_connection("u2")

        all_users = await server.list_connections("t1")
        one_user = await server.list_connections("t1", "u2")
        other_tenant = await server.list_connections("t2")

        assert all_users["count"] == 2
        assert [c["user_id"] for c in one_user["connections"]] == ["u2"]
        assert other_tenant["count"] == 0

    async def test_delete_connection(self):
        connection_id = await _make_connection()
        result = await server.delete_connection(connection_id)
        assert result["success"] is True
        assert (await server.list_connections("t1"))["count"] == 0

    async def test_delete_unknown_connection(self):
        result = await server.delete_connection("nope")
        assert "not found" in result["error"]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class TestEventTools:
    async def test_create_event(self):
        connection_id = await _make_connection()
        result = await server.create_event(
            connection_id=connection_id,
            title="Planning",
            start="2026-03-02T10:00:00",
            end="2026-03-02T11:30:00",
            categories="work, planning",
            attendees="bob@example.com",
            availability="tentative",
        )
        assert result["success"] is True
        event = result["event"]
        assert event["start_time"] == "2026-03-02T10:00:00+00:00"
        assert event["categories"] == ["planning", "work"]
        assert [a["email"] for a in event["attendees"]] == ["bob@example.com"]
        assert event["availability"] == "tentative"
        assert event["external_id"] == f"ext-{event['id']}"

    async def test_invalid_date(self):
        connection_id = await _make_connection()
        result = await server.create_event(connection_id, "Bad", "not-a-date", "2026-03-02T11:00:00")
        assert result == {"error": "Invalid start date: not-a-date"}

    async def test_end_before_start(self):
        connection_id = await _make_connection()
        result = await server.create_event(
            connection_id, "Backwards", "2026-03-02T11:00:00", "2026-03-02T10:00:00"
        )
        assert "before its end" in result["error"]

    async def test_write_permission_required(self):
        connection_id = await _make_connection(can_write=False)
        result = await server.create_event(
            connection_id, "Nope", "2026-03-02T10:00:00", "2026-03-02T11:00:00"
        )
        assert result["error"] == f"Write permission not granted for connection {connection_id}"

    async def test_list_events(self):
        connection_id = await _make_connection()
        await _make_event(connection_id, "A")
        result = await server.list_events(connection_id, start="2026-03-02T00:00:00", end="2026-03-03T00:00:00")
        assert result["count"] == 1
        assert result["events"][0]["title"] == "A"

        later = await server.list_events(connection_id, start="2026-03-03T00:00:00")
        assert later["count"] == 0

    async def test_list_events_invalid_start(self):
        result = await server.list_events("c1", start="yesterday-ish")
        assert result == {"error": "Invalid start date: yesterday-ish"}

    async def test_update_event(self):
        connection_id = await _make_connection()
        event = await _make_event(connection_id)
        result = await server.update_event(event["id"], title="Renamed", location="Room 4")
        assert result["event"]["title"] == "Renamed"
        assert result["event"]["location"] == "Room 4"

    async def test_update_event_no_fields(self):
        result = await server.update_event("evt-1")
        assert result == {"error": "No fields to update"}

    async def test_delete_event(self):
        connection_id = await _make_connection()
        event = await _make_event(connection_id)
        result = await server.delete_event(event["id"])
        assert result["success"] is True
        assert (await server.list_events(connection_id))["count"] == 0

    async def test_delete_unknown_event(self):
        result = await server.delete_event("missing")
        assert result == {"error": "Event missing not found"}


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

class TestSyncTools:
    async def test_schedule_and_poll(self):
        connection_id = await _make_connection()
        result = await server.schedule_sync(connection_id, "full")
        assert result["success"] is True

        await server._get_service().wait_for_sync(result["sync_id"])
        status = await server.get_sync_status(result["sync_id"])

        assert status["sync"]["status"] == "completed"
        assert status["sync"]["sync_type"] == "full"
        assert status["sync"]["progress"] == 100

    async def test_invalid_sync_type(self):
        connection_id = await _make_connection()
        result = await server.schedule_sync(connection_id, "partial")
        assert "error" in result

    async def test_unknown_sync_id(self):
        assert await server.get_sync_status("nope") == {"error": "Sync job nope not found"}

    async def test_cancel_finished_sync_is_noop(self):
        connection_id = await _make_connection()
        job_id = (await server.schedule_sync(connection_id))["sync_id"]
        await server._get_service().wait_for_sync(job_id)

        result = await server.cancel_sync(job_id)

        assert result == {"success": True, "cancellation_requested": False}
        assert (await server.get_sync_status(job_id))["sync"]["status"] == "completed"


# ---------------------------------------------------------------------------
# Availability and health
# ---------------------------------------------------------------------------

class TestAvailabilityTools:
    async def test_get_availability(self):
        connection_id = await _make_connection()
        await _make_event(connection_id)

        result = await server.get_availability("u1", "2026-03-02")

        [day] = result["days"]
        assert day["date"] == "2026-03-02"
        assert len(day["slots"]) == 96
        assert day["slots"][40]["status"] == "busy"
        assert day["slots"][40]["event_title"] == "Team Meeting"

    async def test_invalid_time_zone(self):
        result = await server.get_availability("u1", "2026-03-02", time_zone="Atlantis/Capital")
        assert "Unknown time zone" in result["error"]

    async def test_invalid_date(self):
        result = await server.get_availability("u1", "the day after")
        assert result["error"].startswith("Invalid date range")

    async def test_find_available_slots(self):
        await _make_connection("u1")
        connection_id = await _make_connection("u2")
        await _make_event(connection_id)

        result = await server.find_available_slots("u1,u2", 60, "2026-03-02")

        slots = {s["start_time"]: s["available_users"] for s in result["slots"]}
        assert slots["2026-03-02T09:00:00+00:00"] == ["u1", "u2"]
        assert slots["2026-03-02T10:00:00+00:00"] == ["u1"]
        assert result["count"] == len(result["slots"])

    async def test_duration_not_multiple_of_slot(self):
        result = await server.find_available_slots("u1", 20, "2026-03-02")
        assert "multiple of 15" in result["error"]

    async def test_no_users(self):
        assert await server.find_available_slots(" , ", 30, "2026-03-02") == {"error": "No user ids given"}

    async def test_get_system_health(self):
        await _make_connection()
        result = await server.get_system_health()
        assert result["status"] == "healthy"
        assert result["connections"] == {"total": 1, "active": 1, "error": 0}
        assert result["providers"]["caldav"] == "active"
