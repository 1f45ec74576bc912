"""Catalogue of known calendar providers."""

from __future__ import annotations

import copy
import logging

from ..channel import DomainEventChannel, DomainEventType
from ..errors import NotFoundError
from ..models import PROVIDER_STATUSES, Provider, ProviderCapabilities, RateLimits, utcnow

logger = logging.getLogger("calendar-integration")

_FULL = ProviderCapabilities(
    create_events=True,
    update_events=True,
    delete_events=True,
    read_events=True,
    manage_permissions=True,
    recurring=True,
    attachments=True,
    reminders=True,
    time_zones=True,
    availability=True,
)

DEFAULT_PROVIDERS = [
    Provider(
        id="microsoft-outlook",
        name="Microsoft Outlook",
        category="microsoft",
        api_version="v1.0",
        auth_type="oauth2",
        capabilities=_FULL,
        rate_limits=RateLimits(per_minute=120, per_hour=10_000, per_day=1_000_000),
    ),
    Provider(
        id="google-calendar",
        name="Google Calendar",
        category="google",
        api_version="v3",
        auth_type="oauth2",
        capabilities=_FULL,
        rate_limits=RateLimits(per_minute=100, per_hour=1_000_000, per_day=1_000_000_000),
    ),
    Provider(
        id="exchange-server",
        name="Exchange Server",
        category="exchange",
        api_version="2016",
        auth_type="basic",
        capabilities=_FULL,
        rate_limits=RateLimits(per_minute=60, per_hour=3600, per_day=86400),
    ),
    Provider(
        id="caldav",
        name="CalDAV",
        category="caldav",
        api_version="1.0",
        auth_type="basic",
        capabilities=ProviderCapabilities(
            manage_permissions=False,
            attachments=False,
            availability=False,
        ),
        rate_limits=RateLimits(per_minute=30, per_hour=1800, per_day=43200),
    ),
]


class ProviderRegistry:
    """Static provider catalogue. Only status fields change at runtime."""

    def __init__(self, channel: DomainEventChannel, providers: list[Provider] | None = None):
        self._channel = channel
        self._providers: dict[str, Provider] = {p.id: copy.deepcopy(p) for p in DEFAULT_PROVIDERS}
        # Configured entries replace defaults with the same id
        for provider in providers or []:
            self._providers[provider.id] = copy.deepcopy(provider)

    def list(self) -> list[Provider]:
        return [copy.deepcopy(p) for p in self._providers.values()]

    def get(self, provider_id: str) -> Provider | None:
        provider = self._providers.get(provider_id)
        return copy.deepcopy(provider) if provider else None

    def require(self, provider_id: str) -> Provider:
        provider = self.get(provider_id)
        if provider is None:
            raise NotFoundError("Provider", provider_id)
        return provider

    def update_status(self, provider_id: str, status: str, error_details: str | None = None) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFoundError("Provider", provider_id)
        if status not in PROVIDER_STATUSES:
            raise ValueError(f"Invalid provider status '{status}'. Must be one of: {PROVIDER_STATUSES}")

        provider.status = status
        provider.error_details = error_details
        provider.status_changed_at = utcnow()
        logger.info("Provider %s status -> %s", provider_id, status)

        self._channel.publish(
            DomainEventType.PROVIDER_STATUS_CHANGED,
            provider_id=provider_id,
            status=status,
            error_details=error_details,
        )
        return copy.deepcopy(provider)
