"""Error taxonomy for the real-time messaging core.

Every error carries a human-readable message, an HTTP status code and a stable
machine-readable ``code``. Over WebSocket an error becomes an ``error`` frame on
the offending connection; over HTTP it becomes an ``HTTPException`` through
``to_http_exception``.
"""
from typing import Optional

from fastapi import HTTPException


class RealtimeError(Exception):
    """Base exception for real-time messaging errors."""

    code = "internal"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(RealtimeError):
    """Raised when a connection or request carries no valid identity."""

    code = "unauthenticated"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401)


class AuthorizationError(RealtimeError):
    """Raised when a user may not perform an action on a room or message."""

    code = "forbidden"

    def __init__(self, message: str = "Not allowed"):
        super().__init__(message, status_code=403)


class NotFoundError(RealtimeError):
    """Raised when a room or message does not exist."""

    code = "not_found"

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class ValidationError(RealtimeError):
    """Raised when a message or event fails validation before acceptance."""

    code = "invalid"

    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class StoreUnavailableError(RealtimeError):
    """Raised when the durable store cannot be reached or fails."""

    code = "store_unavailable"

    def __init__(self, message: str = "Message store unavailable"):
        super().__init__(message, status_code=503)


class TransientDeliveryError(RealtimeError):
    """A write to one connection failed. Logged, never surfaced to a client."""

    code = "delivery_failed"

    def __init__(self, message: str, connection_id: Optional[str] = None):
        self.connection_id = connection_id
        super().__init__(message, status_code=500)


def to_http_exception(error: RealtimeError) -> HTTPException:
    """Convert a RealtimeError to an HTTPException.

    Args:
        error: The RealtimeError to convert.

    Returns:
        HTTPException with appropriate status code and detail.
    """
    return HTTPException(
        status_code=error.status_code,
        detail=error.message,
    )
