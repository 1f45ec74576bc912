"""Connection lifecycle: creation policy, updates and cascading delete."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict
from typing import Any

from .channel import DomainEventChannel, DomainEventType
from .errors import DomainRejectedError, LimitExceededError, NotFoundError
from .events import EventManager
from .models import CONNECTION_STATUSES, Connection, Permissions, SyncSettings, utcnow
from .providers.registry import ProviderRegistry
from .repository import Repository
from .sync import SyncOrchestrator

logger = logging.getLogger("calendar-integration")

UPDATABLE_FIELDS = {"display_name", "permissions", "sync_settings", "status"}


def _as_permissions(value: Permissions | dict | None) -> Permissions:
    if value is None:
        return Permissions()
    if isinstance(value, Permissions):
        return value
    return Permissions(**value)


def _as_sync_settings(value: SyncSettings | dict | None, base: SyncSettings | None = None) -> SyncSettings:
    if value is None:
        return base or SyncSettings()
    if isinstance(value, SyncSettings):
        settings = value
    else:
        # Partial dicts merge onto the current settings
        settings = SyncSettings(**{**asdict(base or SyncSettings()), **value})
    if settings.interval_minutes <= 0:
        raise ValueError("sync_settings.interval_minutes must be positive")
    return settings


class ConnectionManager:
    def __init__(
        self,
        connections: Repository[Connection],
        registry: ProviderRegistry,
        event_manager: EventManager,
        orchestrator: SyncOrchestrator,
        channel: DomainEventChannel,
        max_connections: int = 10,
        allowed_domains: list[str] | None = None,
        blocked_domains: list[str] | None = None,
    ):
        self._connections = connections
        self._registry = registry
        self._event_manager = event_manager
        self._orchestrator = orchestrator
        self._channel = channel
        self.max_connections = max_connections
        self.allowed_domains = [d.lower() for d in allowed_domains or []]
        self.blocked_domains = [d.lower() for d in blocked_domains or []]
        # Serialises the limit check with the insert
        self._create_lock = asyncio.Lock()

    def check_domain(self, account_email: str) -> None:
        """Apply the allow-list (exclusive when set) and then the block-list."""
        if "@" in account_email:
            domain = account_email.rsplit("@", 1)[1].strip().lower()
        else:
            domain = ""
        if self.allowed_domains and domain not in self.allowed_domains:
            raise DomainRejectedError(domain, "not allowed")
        if self.blocked_domains and (not domain or domain in self.blocked_domains):
            raise DomainRejectedError(domain, "blocked")

    async def create(
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
        self._registry.require(provider_id)
        if status not in CONNECTION_STATUSES:
            raise ValueError(f"Invalid connection status '{status}'. Must be one of: {CONNECTION_STATUSES}")
        self.check_domain(account_email)
        permissions = _as_permissions(permissions)
        sync_settings = _as_sync_settings(sync_settings)

        async with self._create_lock:
            existing = await self._connections.count(
                lambda c: c.tenant_id == tenant_id and c.user_id == user_id
            )
            if existing >= self.max_connections:
                raise LimitExceededError(self.max_connections)

            connection = Connection(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                user_id=user_id,
                provider_id=provider_id,
                account_email=account_email,
                display_name=display_name or account_email,
                permissions=permissions,
                sync_settings=sync_settings,
                status=status,
            )
            await self._connections.set(connection.id, connection)

        logger.info("Connection %s created for %s/%s on %s", connection.id, tenant_id, user_id, provider_id)
        self._channel.publish(
            DomainEventType.CONNECTION_CREATED,
            connection_id=connection.id,
            tenant_id=tenant_id,
            user_id=user_id,
            provider_id=provider_id,
        )

        if connection.sync_settings.enabled:
            await self._orchestrator.schedule(connection.id, "full")

        return connection

    async def get(self, connection_id: str) -> Connection:
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)
        return connection

    async def list(self, tenant_id: str, user_id: str | None = None) -> list[Connection]:
        connections = await self._connections.list(
            lambda c: c.tenant_id == tenant_id and (user_id is None or c.user_id == user_id)
        )
        connections.sort(key=lambda c: c.created_at)
        return connections

    async def update(self, connection_id: str, **changes: Any) -> Connection:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")
        if "status" in changes and changes["status"] not in CONNECTION_STATUSES:
            raise ValueError(f"Invalid connection status '{changes['status']}'")

        current = await self.get(connection_id)
        if "permissions" in changes:
            changes["permissions"] = _as_permissions(changes["permissions"])
        if "sync_settings" in changes:
            changes["sync_settings"] = _as_sync_settings(changes["sync_settings"], current.sync_settings)

        def apply(conn: Connection) -> None:
            for key, value in changes.items():
                setattr(conn, key, value)
            conn.updated_at = utcnow()

        updated = await self._connections.update(connection_id, apply)
        if updated is None:
            raise NotFoundError("Connection", connection_id)

        self._channel.publish(
            DomainEventType.CONNECTION_UPDATED,
            connection_id=connection_id,
            updates=sorted(changes),
        )
        return updated

    async def delete(self, connection_id: str) -> None:
        """Delete a connection, its running sync jobs and all of its events.

        The connection is removed first so no new job can be scheduled for
        it; running jobs are cancelled and awaited before events go.
        """
        connection = await self.get(connection_id)
        if not await self._connections.delete(connection_id):
            raise NotFoundError("Connection", connection_id)

        await self._orchestrator.cancel_connection_jobs(connection_id)
        removed = await self._event_manager.remove_connection_events(connection_id)

        logger.info("Connection %s deleted (%d events removed)", connection_id, removed)
        self._channel.publish(
            DomainEventType.CONNECTION_DELETED,
            connection_id=connection_id,
            tenant_id=connection.tenant_id,
            user_id=connection.user_id,
        )
