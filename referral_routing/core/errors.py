"""Domain errors raised by the routing services.

Each error carries the HTTP status it maps to so the API layer can render it
without the services importing any web framework types.
"""

from __future__ import annotations


class RoutingError(Exception):
    """Base class for failures surfaced to the caller of a routing operation."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RoutingError):
    status_code = 400


class AuthenticationError(RoutingError):
    status_code = 401


class AuthorizationError(RoutingError):
    status_code = 403


class NotFoundError(RoutingError):
    status_code = 404


class ConcurrencyError(RoutingError):
    """Raised when a ticket stayed contended for every optimistic retry."""

    status_code = 409


class PersistenceError(RoutingError):
    status_code = 500


class SideEffectError(Exception):
    """A notification or webhook could not be delivered.

    Never propagated to API callers; the outbox worker logs it and schedules a retry.
    """
