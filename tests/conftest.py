"""Shared fixtures: an in-memory provider adapter and a wired service."""

import asyncio
from datetime import datetime

import pytest

from calendar_integration.config import IntegrationConfig
from calendar_integration.models import CalendarEvent, Connection, utcnow
from calendar_integration.providers.base import PushResult, RemoteDelta
from calendar_integration.service import CalendarIntegrationService


class FakeAdapter:
    """Provider adapter double recording calls.

    ``gate`` (when set) blocks pull_deltas until released so tests can
    observe a job while it is running.
    """

    def __init__(self) -> None:
        self.deltas: list[RemoteDelta] = []
        self.pushed: list[str] = []
        self.deleted: list[str] = []
        self.pull_calls: list[tuple[str, datetime | None]] = []
        self.push_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.pull_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def push_event(self, event: CalendarEvent, connection: Connection) -> PushResult:
        if self.push_error:
            raise self.push_error
        self.pushed.append(event.id)
        return PushResult(external_id=event.external_id or f"ext-{event.id}", synced_at=utcnow())

    async def delete_remote_event(self, event: CalendarEvent, connection: Connection) -> None:
        if self.delete_error:
            raise self.delete_error
        self.deleted.append(event.external_id)

    async def pull_deltas(self, connection: Connection, since: datetime | None = None) -> list[RemoteDelta]:
        self.pull_calls.append((connection.id, since))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.pull_error:
                raise self.pull_error
            return list(self.deltas)
        finally:
            self.active -= 1


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def config() -> IntegrationConfig:
    return IntegrationConfig()


@pytest.fixture
async def service(config, adapter):
    svc = CalendarIntegrationService(config, adapter=adapter)
    yield svc
    if adapter.gate is not None:
        adapter.gate.set()
    await svc.shutdown()


@pytest.fixture
def wait_for_status():
    """Poll a sync job until it reaches one of ``statuses``."""

    async def _wait(service, job_id, *statuses, attempts=200):
        for _ in range(attempts):
            job = await service.get_sync_status(job_id)
            if job.status in statuses:
                return job
            await asyncio.sleep(0)
        raise AssertionError(f"job {job_id} stuck in {job.status}, expected {statuses}")

    return _wait
