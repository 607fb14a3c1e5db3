"""Error taxonomy shared by the data layer, the HTTP handlers and the lifecycle."""

from __future__ import annotations


class UserServiceError(Exception):
    """Base class for all errors raised by the user service."""


class ConfigurationError(UserServiceError, ValueError):
    """Raised when the service configuration is missing or malformed."""


class ServiceStartupError(UserServiceError):
    """Raised when the service cannot reach a serving state."""


class ListenerError(UserServiceError):
    """Raised when the HTTP listener stops without being asked to."""


class ValidationError(UserServiceError):
    """Malformed client input, rejected before any store call."""


class NotFoundError(UserServiceError):
    """No row matched the requested identifier."""


class StoreError(UserServiceError):
    """Base class for failures reported by the relational store."""


class WriteConflictError(StoreError):
    """A uniqueness or other constraint violation on write."""


class ConnectivityError(StoreError):
    """The store could not be reached or the connection was lost."""


class UnclassifiedStoreError(StoreError):
    """Any other store failure."""


__all__ = [
    "ConfigurationError",
    "ConnectivityError",
    "ListenerError",
    "NotFoundError",
    "ServiceStartupError",
    "StoreError",
    "UnclassifiedStoreError",
    "UserServiceError",
    "ValidationError",
    "WriteConflictError",
]
