"""Sync job orchestration.

Jobs move pending -> running -> completed | failed | cancelled. Each job
runs as its own asyncio task; jobs on the same connection are serialised
by a per-connection lock, so a job scheduled while another one is running
stays pending until the earlier job is terminal. Cancellation is
cooperative and checked before every delta. A full sync also drops
synced local events the provider no longer returns.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta

from .channel import DomainEventChannel, DomainEventType
from .errors import CalendarIntegrationError, InvalidDurationError, NotFoundError
from .events import EventManager
from .models import SYNC_TYPES, Connection, SyncErrorRecord, SyncJob, utcnow
from .providers.base import ProviderAdapter, RemoteDelta
from .repository import Repository

logger = logging.getLogger("calendar-integration")


class SyncOrchestrator:
    def __init__(
        self,
        jobs: Repository[SyncJob],
        connections: Repository[Connection],
        event_manager: EventManager,
        adapter: ProviderAdapter,
        channel: DomainEventChannel,
    ):
        self._jobs = jobs
        self._connections = connections
        self._event_manager = event_manager
        self._adapter = adapter
        self._channel = channel
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requests: dict[str, asyncio.Event] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closing = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule(self, connection_id: str, sync_type: str = "incremental") -> str:
        """Create a pending job and start it in the background. Returns the job id."""
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Invalid sync type '{sync_type}'. Must be one of: {SYNC_TYPES}")
        if await self._connections.get(connection_id) is None:
            raise NotFoundError("Connection", connection_id)

        job = SyncJob(id=str(uuid.uuid4()), connection_id=connection_id, sync_type=sync_type)
        await self._jobs.set(job.id, job)
        self._cancel_requests[job.id] = asyncio.Event()

        task = asyncio.create_task(self._run(job.id, connection_id), name=f"sync-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._forget(job_id))

        logger.info("Scheduled %s sync %s for connection %s", sync_type, job.id, connection_id)
        return job.id

    async def get_status(self, job_id: str) -> SyncJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Sync job", job_id)
        return job

    async def list_jobs(self, connection_id: str | None = None, status: str | None = None) -> list[SyncJob]:
        jobs = await self._jobs.list(
            lambda j: (connection_id is None or j.connection_id == connection_id)
            and (status is None or j.status == status)
        )
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation of a running job.

        Pending and terminal jobs are left untouched. Returns True when a
        cancellation request was registered.
        """
        job = await self.get_status(job_id)
        if job.status != "running":
            return False

        request = self._cancel_requests.get(job_id)
        if request is None:
            return False
        request.set()
        logger.info("Cancellation requested for sync %s", job_id)
        return True

    async def wait(self, job_id: str) -> SyncJob:
        """Wait for a job's background task to finish and return the job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.get_status(job_id)

    async def cancel_connection_jobs(self, connection_id: str) -> None:
        """Cancel every live job of a removed connection and wait for its tasks.

        Running jobs get a cancellation request; queued jobs are cancelled
        outright so they never start against the missing connection.
        """
        jobs = await self._jobs.list(lambda j: j.connection_id == connection_id and not j.is_terminal)
        for job in jobs:
            if job.status == "running":
                await self.cancel(job.id)
            elif not await self._finish(job.id, "cancelled", expected="pending"):
                # Started in the meantime
                await self.cancel(job.id)

        tasks = [self._tasks[j.id] for j in jobs if j.id in self._tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._locks.pop(connection_id, None)

    async def shutdown(self) -> None:
        """Stop every running job and wait for all background tasks."""
        self._closing = True
        for request in list(self._cancel_requests.values()):
            request.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)
        self._cancel_requests.pop(job_id, None)

    def _cancel_requested(self, job_id: str) -> bool:
        request = self._cancel_requests.get(job_id)
        return self._closing or (request is not None and request.is_set())

    async def _run(self, job_id: str, connection_id: str) -> None:
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        try:
            async with lock:
                await self._execute(job_id)
        except asyncio.CancelledError:
            await self._finish(job_id, "cancelled")
            raise

    async def _execute(self, job_id: str) -> None:
        if not await self._transition(job_id, "pending", "running"):
            return
        job = await self.get_status(job_id)

        try:
            connection = await self._connections.get(job.connection_id)
            if connection is None:
                raise NotFoundError("Connection", job.connection_id)

            if self._cancel_requested(job_id):
                await self._finish(job_id, "cancelled")
                return

            since = connection.sync_settings.last_sync if job.sync_type == "incremental" else None
            pulled_at = utcnow()
            deltas = await self._adapter.pull_deltas(connection, since)
            total = len(deltas)

            def set_total(j: SyncJob) -> None:
                j.total = total

            await self._jobs.update(job_id, set_total)

            for delta in deltas:
                if self._cancel_requested(job_id):
                    await self._finish(job_id, "cancelled")
                    return
                await self._process(job_id, connection, delta, total)

            if self._cancel_requested(job_id):
                await self._finish(job_id, "cancelled")
                return

            if job.sync_type == "full":
                await self._prune_missing(job_id, connection, deltas)
        except Exception as e:
            await self._finish(job_id, "failed", error=e)
            return

        await self._record_sync_time(connection.id, pulled_at)
        await self._finish(job_id, "completed")

    async def _prune_missing(self, job_id: str, connection: Connection, deltas: list[RemoteDelta]) -> None:
        """Remove synced local events that a full pull no longer returns."""
        seen = {d.remote_event.external_id for d in deltas if d.operation != "delete"}
        removed = 0
        for event in await self._event_manager.list(connection.id):
            if event.external_id and event.external_id not in seen:
                if await self._event_manager.remove_local(event):
                    removed += 1
        if not removed:
            return

        def record(j: SyncJob) -> None:
            j.events_deleted += removed

        await self._jobs.update(job_id, record)
        logger.info("Full sync %s removed %d event(s) missing remotely", job_id, removed)

    async def _apply_delta(self, connection: Connection, delta: RemoteDelta) -> str | None:
        """Apply one remote change. Returns the counter to bump, if any.

        Operations are reconciled against local state by external id: a
        create for a known event becomes an update and vice versa.
        """
        remote = delta.remote_event
        existing = await self._event_manager.find_by_external_id(connection.id, remote.external_id)

        if delta.operation == "delete":
            if existing is not None and await self._event_manager.remove_local(existing):
                return "deleted"
            return None

        await self._event_manager.store_remote(connection, remote, existing)
        return "updated" if existing is not None else "created"

    async def _process(self, job_id: str, connection: Connection, delta: RemoteDelta, total: int) -> None:
        error: SyncErrorRecord | None = None
        counter: str | None = None
        try:
            counter = await self._apply_delta(connection, delta)
        except (InvalidDurationError, ValueError) as e:
            logger.warning("Skipping remote event %s: %s", delta.remote_event.external_id, e)
            error = SyncErrorRecord(message=str(e), event_id=delta.remote_event.external_id)

        def record(j: SyncJob) -> None:
            if j.is_terminal:
                return
            j.events_processed += 1
            if counter is not None:
                setattr(j, f"events_{counter}", getattr(j, f"events_{counter}") + 1)
            if error is not None:
                j.errors.append(error)
            j.progress = max(j.progress, min(100, j.events_processed * 100 // max(total, 1)))

        await self._jobs.update(job_id, record)

    async def _transition(self, job_id: str, expected: str, status: str) -> bool:
        moved = False

        def apply(j: SyncJob) -> None:
            nonlocal moved
            if j.status == expected:
                j.status = status
                if status == "running":
                    j.start_time = utcnow()
                moved = True

        await self._jobs.update(job_id, apply)
        return moved

    async def _finish(
        self, job_id: str, status: str, error: Exception | None = None, expected: str | None = None
    ) -> bool:
        """Move a job into a terminal state exactly once. Returns True if this call did it."""
        finished = False

        def apply(j: SyncJob) -> None:
            nonlocal finished
            if j.is_terminal or (expected is not None and j.status != expected):
                return
            j.status = status
            j.end_time = utcnow()
            if status == "completed":
                j.progress = 100
            if error is not None:
                j.errors.append(SyncErrorRecord(message=str(error) or type(error).__name__))
            finished = True

        job = await self._jobs.update(job_id, apply)
        if not finished or job is None:
            return False

        if status == "cancelled":
            logger.info("Sync %s cancelled after %d/%d events", job_id, job.events_processed, job.total)
            self._channel.publish(DomainEventType.SYNC_CANCELLED, sync_id=job_id, connection_id=job.connection_id)
            return True

        if status == "failed":
            if isinstance(error, CalendarIntegrationError):
                logger.error("Sync %s failed: %s", job_id, error)
            else:
                logger.exception("Sync %s failed", job_id, exc_info=error)
            self._channel.publish(
                DomainEventType.SYNC_ERROR,
                sync_id=job_id,
                connection_id=job.connection_id,
                error=str(error),
            )
        else:
            logger.info(
                "Sync %s completed: %d processed (%d created, %d updated, %d deleted)",
                job_id,
                job.events_processed,
                job.events_created,
                job.events_updated,
                job.events_deleted,
            )

        self._channel.publish(
            DomainEventType.SYNC_COMPLETED,
            sync_id=job_id,
            connection_id=job.connection_id,
            status=job.status,
            events_processed=job.events_processed,
        )
        return True

    async def _record_sync_time(self, connection_id: str, synced_at: datetime) -> None:
        def apply(conn: Connection) -> None:
            conn.sync_settings.last_sync = synced_at
            conn.sync_settings.next_sync = utcnow() + timedelta(minutes=conn.sync_settings.interval_minutes)

        # Connection may have been deleted while the job ran
        await self._connections.update(connection_id, apply)

