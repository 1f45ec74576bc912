"""System health summary over providers, connections and sync jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .models import Connection, SyncJob, utcnow
from .providers.registry import ProviderRegistry
from .repository import Repository


@dataclass
class SystemHealth:
    status: str  # healthy, degraded, unhealthy
    providers: dict[str, str] = field(default_factory=dict)
    connections: dict[str, int] = field(default_factory=dict)
    sync_jobs: dict[str, int] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


class HealthReporter:
    def __init__(
        self,
        registry: ProviderRegistry,
        connections: Repository[Connection],
        jobs: Repository[SyncJob],
        failed_jobs_threshold: int = 5,
    ):
        self._registry = registry
        self._connections = connections
        self._jobs = jobs
        self.failed_jobs_threshold = failed_jobs_threshold

    async def get_system_health(self) -> SystemHealth:
        connections = {
            "total": await self._connections.count(),
            "active": await self._connections.count(lambda c: c.status == "connected"),
            "error": await self._connections.count(lambda c: c.status == "error"),
        }
        sync_jobs = {
            status: await self._jobs.count(lambda j, s=status: j.status == s)
            for status in ("pending", "running", "failed")
        }

        status = "healthy"
        if connections["error"] > 0 or sync_jobs["failed"] > 0:
            status = "degraded"
        if connections["error"] > connections["active"] or sync_jobs["failed"] > self.failed_jobs_threshold:
            status = "unhealthy"

        return SystemHealth(
            status=status,
            providers={p.id: p.status for p in self._registry.list()},
            connections=connections,
            sync_jobs=sync_jobs,
        )
