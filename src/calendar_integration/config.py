"""YAML configuration loading for the integration service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import yaml

from .models import (
    PROVIDER_CATEGORIES,
    PROVIDER_STATUSES,
    BreakWindow,
    Provider,
    ProviderCapabilities,
    RateLimits,
    WorkingHours,
)

logger = logging.getLogger("calendar-integration")

CONFIG_PATH = os.environ.get("CALENDAR_INTEGRATION_CONFIG", "/config/calendar_integration.yaml")

VALID_ADAPTER_TYPES = {"ews", "google", "caldav"}


@dataclass
class AdapterSettings:
    """Provider adapter configuration for one provider id."""

    provider: str
    type: str  # ews, google, caldav
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrationConfig:
    max_connections: int = 10
    sync_interval_minutes: int = 15
    max_event_duration_hours: float = 24
    allowed_domains: list[str] = field(default_factory=list)
    blocked_domains: list[str] = field(default_factory=list)
    failed_jobs_unhealthy_threshold: int = 5
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    breaks: list[BreakWindow] = field(
        default_factory=lambda: [BreakWindow(start="12:00", end="13:00", title="Lunch Break")]
    )
    providers: list[Provider] = field(default_factory=list)
    adapters: dict[str, AdapterSettings] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.allowed_domains = [d.strip().lower() for d in self.allowed_domains]
        self.blocked_domains = [d.strip().lower() for d in self.blocked_domains]


def _parse_clock(value: Any, key: str) -> str:
    text = str(value).strip()
    try:
        datetime.strptime(text, "%H:%M")
    except ValueError:
        raise ValueError(f"'{key}': invalid time '{text}', expected HH:MM") from None
    return text


def _positive_number(raw: dict, key: str, default: float, cast=int):
    value = raw.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' must be a number, got {value!r}") from None
    if value <= 0:
        raise ValueError(f"'{key}' must be positive, got {value}")
    return value


def _domain_list(raw: dict, key: str) -> list[str]:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list of domains")
    return [str(d) for d in value]


def _parse_provider(entry: dict) -> Provider:
    provider_id = str(entry.get("id", "")).strip()
    if not provider_id:
        raise ValueError("Provider missing 'id' field")

    category = str(entry.get("category", "")).strip().lower()
    if category not in PROVIDER_CATEGORIES:
        raise ValueError(
            f"Provider '{provider_id}': unknown category '{category}'. Must be one of: {PROVIDER_CATEGORIES}"
        )

    status = entry.get("status", "active")
    if status not in PROVIDER_STATUSES:
        raise ValueError(f"Provider '{provider_id}': invalid status '{status}'")

    limits = entry.get("rate_limits") or {}
    return Provider(
        id=provider_id,
        name=entry.get("name", provider_id),
        category=category,
        api_version=str(entry.get("api_version", "")),
        auth_type=entry.get("auth_type", "oauth2"),
        capabilities=ProviderCapabilities(**(entry.get("capabilities") or {})),
        rate_limits=RateLimits(
            per_minute=int(limits.get("per_minute", 60)),
            per_hour=int(limits.get("per_hour", 3600)),
            per_day=int(limits.get("per_day", 86400)),
        ),
        status=status,
    )


def _warn_missing_env(provider: str, config: dict[str, Any]) -> None:
    for env_key in ("username_env", "password_env"):
        env_var = config[env_key]
        if not os.environ.get(env_var):
            logger.warning("Adapter '%s': env var '%s' not set", provider, env_var)


def _parse_adapter(entry: dict) -> AdapterSettings:
    provider = str(entry.get("provider", "")).strip()
    if not provider:
        raise ValueError("Adapter missing 'provider' field")

    adapter_type = str(entry.get("type", "")).strip().lower()
    if adapter_type not in VALID_ADAPTER_TYPES:
        raise ValueError(
            f"Adapter '{provider}': unknown type '{adapter_type}'. Must be one of: {VALID_ADAPTER_TYPES}"
        )

    # Collect type-specific config (everything except metadata fields)
    config = {k: v for k, v in entry.items() if k not in ("provider", "type")}

    if adapter_type == "ews":
        if "ews_url" not in config:
            raise ValueError(f"Adapter '{provider}' (ews): 'ews_url' is required")
        if "username_env" not in config or "password_env" not in config:
            raise ValueError(f"Adapter '{provider}' (ews): 'username_env' and 'password_env' are required")
        _warn_missing_env(provider, config)

    elif adapter_type == "google":
        if "credentials_file" not in config:
            raise ValueError(f"Adapter '{provider}' (google): 'credentials_file' is required")

    elif adapter_type == "caldav":
        if "url" not in config:
            raise ValueError(f"Adapter '{provider}' (caldav): 'url' is required")
        if "username_env" not in config or "password_env" not in config:
            raise ValueError(f"Adapter '{provider}' (caldav): 'username_env' and 'password_env' are required")
        _warn_missing_env(provider, config)

    return AdapterSettings(provider=provider, type=adapter_type, config=config)


def parse_config(raw: dict[str, Any]) -> IntegrationConfig:
    """Validate a raw mapping (as read from YAML) into an IntegrationConfig."""
    defaults = IntegrationConfig()

    hours_raw = raw.get("working_hours") or {}
    working_hours = WorkingHours(
        start=_parse_clock(hours_raw.get("start", defaults.working_hours.start), "working_hours.start"),
        end=_parse_clock(hours_raw.get("end", defaults.working_hours.end), "working_hours.end"),
        enabled=bool(hours_raw.get("enabled", True)),
    )
    if working_hours.start >= working_hours.end:
        raise ValueError("'working_hours': start must be before end")

    if "breaks" in raw:
        breaks = [
            BreakWindow(
                start=_parse_clock(b.get("start"), "breaks.start"),
                end=_parse_clock(b.get("end"), "breaks.end"),
                title=b.get("title", ""),
            )
            for b in raw.get("breaks") or []
        ]
    else:
        breaks = defaults.breaks

    providers = [_parse_provider(entry) for entry in raw.get("providers") or []]

    adapters: dict[str, AdapterSettings] = {}
    for entry in raw.get("adapters") or []:
        settings = _parse_adapter(entry)
        if settings.provider in adapters:
            raise ValueError(f"Duplicate adapter for provider: '{settings.provider}'")
        adapters[settings.provider] = settings

    return IntegrationConfig(
        max_connections=_positive_number(raw, "max_connections", defaults.max_connections),
        sync_interval_minutes=_positive_number(raw, "sync_interval_minutes", defaults.sync_interval_minutes),
        max_event_duration_hours=_positive_number(
            raw, "max_event_duration_hours", defaults.max_event_duration_hours, cast=float
        ),
        allowed_domains=_domain_list(raw, "allowed_domains"),
        blocked_domains=_domain_list(raw, "blocked_domains"),
        failed_jobs_unhealthy_threshold=_positive_number(
            raw, "failed_jobs_unhealthy_threshold", defaults.failed_jobs_unhealthy_threshold
        ),
        working_hours=working_hours,
        breaks=breaks,
        providers=providers,
        adapters=adapters,
    )


def load_config(path: str | None = None) -> IntegrationConfig:
    """Load and validate the integration YAML file.

    A missing file yields the defaults.
    """
    path = path or CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s, using defaults", path)
        return IntegrationConfig()

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not raw:
        logger.warning("Config file is empty: %s, using defaults", path)
        return IntegrationConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    return parse_config(raw)
