"""Exceptions raised by the calendar integration service."""

from __future__ import annotations


class CalendarIntegrationError(Exception):
    """Base exception for calendar integration operations."""


class NotFoundError(CalendarIntegrationError):
    """Raised when a provider, connection, event or sync job id is unknown."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class PermissionDeniedError(CalendarIntegrationError):
    """Raised when a connection lacks the permission flag an operation needs."""

    def __init__(self, connection_id: str, permission: str):
        super().__init__(f"{permission.capitalize()} permission not granted for connection {connection_id}")
        self.connection_id = connection_id
        self.permission = permission


class LimitExceededError(CalendarIntegrationError):
    """Raised when a user already holds the maximum number of connections."""

    def __init__(self, limit: int):
        super().__init__(f"Maximum connections ({limit}) reached for user")
        self.limit = limit


class DomainRejectedError(CalendarIntegrationError):
    """Raised when an account domain fails the allow-list/block-list policy."""

    def __init__(self, domain: str, reason: str):
        super().__init__(f"Domain {domain or '(none)'} is {reason}")
        self.domain = domain
        self.reason = reason


class InvalidDurationError(CalendarIntegrationError):
    """Raised when an event window is empty, inverted or too long."""


class AdapterFailure(CalendarIntegrationError):
    """Raised when a provider adapter call fails."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
