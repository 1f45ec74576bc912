"""Periodic scheduling of incremental syncs for due connections."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .models import Connection, utcnow
from .repository import Repository
from .sync import SyncOrchestrator

logger = logging.getLogger("calendar-integration")


class SyncScheduler:
    """Drives ``tick`` from a single APScheduler interval job."""

    def __init__(
        self,
        connections: Repository[Connection],
        orchestrator: SyncOrchestrator,
        interval_minutes: int = 15,
    ):
        self._connections = connections
        self._orchestrator = orchestrator
        self.interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None
        self.is_running = False

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Schedule an incremental sync for every connection that is due.

        A connection is due when it is connected, has sync enabled and its
        next sync time has passed. Connections that already have a pending
        or running job are skipped. One failure never stops the rest.
        """
        now = now or utcnow()
        due = await self._connections.list(
            lambda c: c.status == "connected"
            and c.sync_settings.enabled
            and c.sync_settings.next_sync is not None
            and c.sync_settings.next_sync <= now
        )

        job_ids = []
        for connection in due:
            try:
                active = [
                    j for j in await self._orchestrator.list_jobs(connection.id)
                    if j.status in ("pending", "running")
                ]
                if active:
                    logger.info("Connection %s already has sync %s in progress", connection.id, active[0].id)
                    continue
                job_ids.append(await self._orchestrator.schedule(connection.id, "incremental"))
            except Exception as e:
                logger.error("Failed to schedule sync for connection %s: %s", connection.id, e)

        if due:
            logger.info("Scheduler tick: %d due, %d scheduled", len(due), len(job_ids))
        return job_ids

    def start(self) -> None:
        """Start the periodic tick. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="calendar_sync",
            name="Calendar Sync Tick",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping ticks
            coalesce=True,
        )
        self._scheduler.start()
        self.is_running = True
        logger.info("Sync scheduler started (%d min interval)", self.interval_minutes)

    def stop(self) -> None:
        if not self.is_running or self._scheduler is None:
            logger.warning("Scheduler is not running")
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self.is_running = False
        logger.info("Sync scheduler stopped")
