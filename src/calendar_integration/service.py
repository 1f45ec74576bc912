"""Service facade wiring stores, managers, orchestrator and queries together."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable

from .availability import AvailabilityEngine
from .channel import DomainEventChannel, DomainEventType, Subscription
from .config import IntegrationConfig
from .connections import ConnectionManager
from .events import EventManager
from .health import HealthReporter, SystemHealth
from .models import (
    Attendee,
    CalendarEvent,
    Connection,
    DayAvailability,
    Permissions,
    Provider,
    SlotCandidate,
    SyncJob,
    SyncSettings,
)
from .providers.base import ProviderAdapter
from .providers.registry import ProviderRegistry
from .providers.router import AdapterRouter
from .repository import InMemoryRepository, Repository
from .scheduler import SyncScheduler
from .slots import SlotFinder
from .sync import SyncOrchestrator

logger = logging.getLogger("calendar-integration")


class CalendarIntegrationService:
    """One process-wide instance per configuration.

    ``adapter`` replaces the configured AdapterRouter entirely; stores may be
    injected to swap the in-memory repositories.
    """

    def __init__(
        self,
        config: IntegrationConfig | None = None,
        adapter: ProviderAdapter | None = None,
        connections: Repository[Connection] | None = None,
        events: Repository[CalendarEvent] | None = None,
        jobs: Repository[SyncJob] | None = None,
    ):
        self.config = config or IntegrationConfig()
        self.channel = DomainEventChannel()

        self._connections = connections or InMemoryRepository()
        self._events = events or InMemoryRepository()
        self._jobs = jobs or InMemoryRepository()

        self.registry = ProviderRegistry(self.channel, self.config.providers)
        self.adapter = adapter or AdapterRouter(self.config.adapters)

        self.event_manager = EventManager(
            self._events,
            self._connections,
            self.adapter,
            self.channel,
            max_event_duration_hours=self.config.max_event_duration_hours,
        )
        self.orchestrator = SyncOrchestrator(
            self._jobs, self._connections, self.event_manager, self.adapter, self.channel
        )
        self.connection_manager = ConnectionManager(
            self._connections,
            self.registry,
            self.event_manager,
            self.orchestrator,
            self.channel,
            max_connections=self.config.max_connections,
            allowed_domains=self.config.allowed_domains,
            blocked_domains=self.config.blocked_domains,
        )
        self.availability = AvailabilityEngine(
            self._connections,
            self.event_manager.list,
            working_hours=self.config.working_hours,
            breaks=self.config.breaks,
        )
        self.slot_finder = SlotFinder(self.availability)
        self.health = HealthReporter(
            self.registry,
            self._connections,
            self._jobs,
            failed_jobs_threshold=self.config.failed_jobs_unhealthy_threshold,
        )
        self.scheduler = SyncScheduler(
            self._connections, self.orchestrator, interval_minutes=self.config.sync_interval_minutes
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.scheduler.start()
        logger.info("Calendar integration service started")

    async def shutdown(self) -> None:
        """Stop the tick, settle every sync job and drop in-memory state."""
        if self.scheduler.is_running:
            self.scheduler.stop()
        await self.orchestrator.shutdown()
        for store in (self._jobs, self._events, self._connections):
            if isinstance(store, InMemoryRepository):
                await store.clear()
        logger.info("Calendar integration service stopped")

    def subscribe(self, *types: DomainEventType, maxsize: int = 0) -> Subscription:
        return self.channel.subscribe(*types, maxsize=maxsize)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def list_providers(self) -> list[Provider]:
        return self.registry.list()

    def get_provider(self, provider_id: str) -> Provider | None:
        return self.registry.get(provider_id)

    def update_provider_status(self, provider_id: str, status: str, error_details: str | None = None) -> Provider:
        return self.registry.update_status(provider_id, status, error_details)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def create_connection(
        self,
        tenant_id: str,
        user_id: str,
        provider_id: str,
        account_email: str,
        permissions: Permissions | dict | None = None,
        sync_settings: SyncSettings | dict | None = None,
        display_name: str = "",
        status: str = "connected",
    ) -> Connection:
        return await self.connection_manager.create(
            tenant_id,
            user_id,
            provider_id,
            account_email,
            permissions=permissions,
            sync_settings=sync_settings,
            display_name=display_name,
            status=status,
        )

    async def get_connection(self, connection_id: str) -> Connection:
        return await self.connection_manager.get(connection_id)

    async def list_connections(self, tenant_id: str, user_id: str | None = None) -> list[Connection]:
        return await self.connection_manager.list(tenant_id, user_id)

    async def update_connection(self, connection_id: str, **changes: Any) -> Connection:
        return await self.connection_manager.update(connection_id, **changes)

    async def delete_connection(self, connection_id: str) -> None:
        await self.connection_manager.delete(connection_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def create_event(
        self,
        connection_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        description: str = "",
        location: str = "",
        time_zone: str = "UTC",
        all_day: bool = False,
        categories: Iterable[str] | None = None,
        attendees: Iterable[Attendee | dict | str] | None = None,
        availability: str = "busy",
        status: str = "confirmed",
    ) -> CalendarEvent:
        return await self.event_manager.create(
            connection_id,
            title,
            start_time,
            end_time,
            description=description,
            location=location,
            time_zone=time_zone,
            all_day=all_day,
            categories=categories,
            attendees=attendees,
            availability=availability,
            status=status,
        )

    async def get_event(self, event_id: str) -> CalendarEvent:
        return await self.event_manager.get(event_id)

    async def list_events(
        self,
        connection_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        categories: Iterable[str] | None = None,
        attendees: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[CalendarEvent]:
        return await self.event_manager.list(
            connection_id, start, end, categories=categories, attendees=attendees, statuses=statuses
        )

    async def update_event(self, event_id: str, **changes: Any) -> CalendarEvent:
        return await self.event_manager.update(event_id, **changes)

    async def delete_event(self, event_id: str) -> None:
        await self.event_manager.delete(event_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def schedule_sync(self, connection_id: str, sync_type: str = "incremental") -> str:
        return await self.orchestrator.schedule(connection_id, sync_type)

    async def get_sync_status(self, job_id: str) -> SyncJob:
        return await self.orchestrator.get_status(job_id)

    async def list_sync_jobs(self, connection_id: str | None = None, status: str | None = None) -> list[SyncJob]:
        return await self.orchestrator.list_jobs(connection_id, status)

    async def cancel_sync(self, job_id: str) -> bool:
        return await self.orchestrator.cancel(job_id)

    async def wait_for_sync(self, job_id: str) -> SyncJob:
        return await self.orchestrator.wait(job_id)

    async def run_scheduler_tick(self, now: datetime | None = None) -> list[str]:
        return await self.scheduler.tick(now)

    # ------------------------------------------------------------------
    # Availability and health
    # ------------------------------------------------------------------

    async def get_availability(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        time_zone: str = "UTC",
        tenant_id: str | None = None,
    ) -> list[DayAvailability]:
        return await self.availability.get_availability(user_id, start_date, end_date, time_zone, tenant_id)

    async def find_available_slots(
        self,
        user_ids: list[str],
        duration_minutes: int,
        start_date: date,
        end_date: date,
        working_hours_only: bool = True,
        time_zone: str = "UTC",
    ) -> list[SlotCandidate]:
        return await self.slot_finder.find_available_slots(
            user_ids, duration_minutes, start_date, end_date, working_hours_only, time_zone
        )

    async def get_system_health(self) -> SystemHealth:
        return await self.health.get_system_health()
