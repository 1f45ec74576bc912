"""Tests for the event manager."""

from datetime import datetime, timedelta, timezone

import pytest

from calendar_integration.channel import DomainEventType
from calendar_integration.errors import AdapterFailure, InvalidDurationError, NotFoundError, PermissionDeniedError

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


async def _make_connection(service, write=True, delete=True, status="connected", email="anna@example.com"):
    return await service.create_connection(
        "t1",
        "u1",
        "google-calendar",
        email,
        permissions={"read": True, "write": write, "delete": delete},
        sync_settings={"enabled": False},
        status=status,
    )


async def _make_event(service, connection_id, title="Standup", start=T0, minutes=30, **kwargs):
    return await service.create_event(connection_id, title, start, start + timedelta(minutes=minutes), **kwargs)


class TestCreateEvent:
    async def test_create_pushes_and_stores_external_id(self, service, adapter):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id, categories=["team"], attendees=["Bob@Example.com"])

        assert adapter.pushed == [event.id]
        assert event.external_id == f"ext-{event.id}"
        assert event.synced_at is not None
        assert event.tenant_id == "t1"
        assert event.categories == {"team"}
        assert event.attendees[0].email == "Bob@Example.com"
        stored = await service.get_event(event.id)
        assert stored.external_id == event.external_id

    async def test_emits_event_created(self, service):
        connection = await _make_connection(service)
        sub = service.subscribe(DomainEventType.EVENT_CREATED)
        event = await _make_event(service, connection.id)
        payload = sub.drain()[0].payload
        assert payload["event_id"] == event.id
        assert payload["connection_id"] == connection.id

    async def test_requires_write_permission(self, service, adapter):
        connection = await _make_connection(service, write=False)
        with pytest.raises(PermissionDeniedError, match="Write"):
            await _make_event(service, connection.id)
        assert await service.list_events(connection.id) == []
        assert adapter.pushed == []

    async def test_unknown_connection(self, service):
        with pytest.raises(NotFoundError):
            await _make_event(service, "missing")

    async def test_start_must_precede_end(self, service):
        connection = await _make_connection(service)
        with pytest.raises(InvalidDurationError):
            await service.create_event(connection.id, "Backwards", T0, T0 - timedelta(minutes=5))
        with pytest.raises(InvalidDurationError):
            await service.create_event(connection.id, "Empty", T0, T0)
        assert await service.list_events(connection.id) == []

    async def test_duration_limit(self, service):
        connection = await _make_connection(service)
        await _make_event(service, connection.id, minutes=24 * 60)
        with pytest.raises(InvalidDurationError, match="maximum"):
            await _make_event(service, connection.id, minutes=24 * 60 + 1)
        assert len(await service.list_events(connection.id)) == 1

    async def test_naive_datetimes_rejected(self, service):
        connection = await _make_connection(service)
        with pytest.raises(ValueError, match="timezone-aware"):
            await service.create_event(connection.id, "Naive", datetime(2026, 3, 2, 10), datetime(2026, 3, 2, 11))

    async def test_invalid_availability(self, service):
        connection = await _make_connection(service)
        with pytest.raises(ValueError, match="availability"):
            await _make_event(service, connection.id, availability="free")

    async def test_push_failure_keeps_event(self, service, adapter):
        adapter.push_error = AdapterFailure("google-calendar", "quota exceeded")
        connection = await _make_connection(service)
        sub = service.subscribe(DomainEventType.SYNC_ERROR, DomainEventType.EVENT_CREATED)

        event = await _make_event(service, connection.id)

        assert event.external_id is None
        assert (await service.get_event(event.id)).title == "Standup"
        events = sub.drain()
        assert [e.type for e in events] == [DomainEventType.SYNC_ERROR, DomainEventType.EVENT_CREATED]
        assert events[0].payload["event_id"] == event.id
        assert events[0].payload["connection_id"] == connection.id
        assert "quota exceeded" in events[0].payload["error"]

    async def test_no_push_when_disconnected(self, service, adapter):
        connection = await _make_connection(service, status="disconnected")
        event = await _make_event(service, connection.id)
        assert adapter.pushed == []
        assert event.external_id is None


class TestUpdateEvent:
    async def test_update_fields_and_push(self, service, adapter):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        sub = service.subscribe(DomainEventType.EVENT_UPDATED)

        updated = await service.update_event(event.id, title="Retro", end_time=T0 + timedelta(hours=1))

        assert updated.title == "Retro"
        assert updated.end_time == T0 + timedelta(hours=1)
        assert updated.updated_at >= event.updated_at
        assert adapter.pushed == [event.id, event.id]
        assert sub.drain()[0].payload["updates"] == ["end_time", "title"]

    async def test_invalid_window_leaves_event_unchanged(self, service):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        with pytest.raises(InvalidDurationError):
            await service.update_event(event.id, end_time=T0 - timedelta(hours=1))
        assert (await service.get_event(event.id)).end_time == event.end_time

    async def test_requires_write_permission(self, service):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        await service.update_connection(connection.id, permissions={"read": True, "write": False})
        with pytest.raises(PermissionDeniedError):
            await service.update_event(event.id, title="Nope")

    async def test_unknown_field(self, service):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        with pytest.raises(ValueError, match="not updatable"):
            await service.update_event(event.id, connection_id="other")

    async def test_unknown_event(self, service):
        with pytest.raises(NotFoundError):
            await service.update_event("missing", title="x")


class TestDeleteEvent:
    async def test_delete_removes_remotely(self, service, adapter):
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        sub = service.subscribe(DomainEventType.EVENT_DELETED)

        await service.delete_event(event.id)

        assert adapter.deleted == [event.external_id]
        with pytest.raises(NotFoundError):
            await service.get_event(event.id)
        assert sub.drain()[0].payload["event_id"] == event.id

    async def test_requires_delete_permission(self, service):
        connection = await _make_connection(service, delete=False)
        event = await _make_event(service, connection.id)
        with pytest.raises(PermissionDeniedError, match="Delete"):
            await service.delete_event(event.id)
        assert await service.get_event(event.id)

    async def test_no_remote_delete_without_external_id(self, service, adapter):
        adapter.push_error = RuntimeError("offline")
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        await service.delete_event(event.id)
        assert adapter.deleted == []

    async def test_remote_failure_reported(self, service, adapter):
        adapter.delete_error = AdapterFailure("google-calendar", "gone away")
        connection = await _make_connection(service)
        event = await _make_event(service, connection.id)
        sub = service.subscribe(DomainEventType.SYNC_ERROR)

        await service.delete_event(event.id)

        with pytest.raises(NotFoundError):
            await service.get_event(event.id)
        assert sub.drain()[0].payload["event_id"] == event.id


class TestListEvents:
    async def test_ordered_by_start(self, service):
        connection = await _make_connection(service)
        await _make_event(service, connection.id, "Late", T0 + timedelta(hours=3))
        await _make_event(service, connection.id, "Early", T0)
        await _make_event(service, connection.id, "Middle", T0 + timedelta(hours=1))
        titles = [e.title for e in await service.list_events(connection.id)]
        assert titles == ["Early", "Middle", "Late"]

    async def test_range_uses_half_open_overlap(self, service):
        connection = await _make_connection(service)
        await _make_event(service, connection.id, "Before", T0 - timedelta(hours=1), minutes=60)
        await _make_event(service, connection.id, "Inside", T0 + timedelta(minutes=15), minutes=30)
        await _make_event(service, connection.id, "Spanning", T0 - timedelta(minutes=30), minutes=120)
        await _make_event(service, connection.id, "After", T0 + timedelta(hours=1), minutes=30)

        events = await service.list_events(connection.id, T0, T0 + timedelta(hours=1))
        assert [e.title for e in events] == ["Spanning", "Inside"]

    async def test_filters(self, service):
        connection = await _make_connection(service)
        await _make_event(service, connection.id, "Team", categories=["team", "weekly"], attendees=["bob@example.com"])
        await _make_event(
            service, connection.id, "Private", T0 + timedelta(hours=1), categories=["private"], status="tentative"
        )
        await _make_event(service, connection.id, "Cancelled", T0 + timedelta(hours=2), status="cancelled")

        by_category = await service.list_events(connection.id, categories=["weekly", "private"])
        assert [e.title for e in by_category] == ["Team", "Private"]

        by_attendee = await service.list_events(connection.id, attendees=["BOB@example.com"])
        assert [e.title for e in by_attendee] == ["Team"]

        by_status = await service.list_events(connection.id, statuses=["tentative", "cancelled"])
        assert [e.title for e in by_status] == ["Private", "Cancelled"]

    async def test_scoped_to_connection(self, service):
        first = await _make_connection(service)
        second = await _make_connection(service, email="work@example.com")
        await _make_event(service, first.id)
        assert await service.list_events(second.id) == []
