"""Exception hierarchy shared by the portal services and the HTTP layer."""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .models import RecipientFailure


class PortalError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PortalError):
    status_code = 400


class AuthError(PortalError):
    """Missing, invalid or expired credential."""

    status_code = 401


class ForbiddenError(AuthError):
    """Authenticated, but lacking the required capability."""

    status_code = 403


class NotFoundError(PortalError):
    status_code = 404


class ConflictError(PortalError):
    status_code = 409


class RateLimitError(PortalError):
    status_code = 429

    def __init__(self, message: str, *, reset_at: int) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class UpstreamError(PortalError):
    """A collaborator (store or email service) failed."""

    status_code = 500
    error_type = "Server"


class BroadcastFailedError(UpstreamError):
    """Every recipient of a broadcast failed and the update was rolled back."""

    error_type = "Network"

    def __init__(self, message: str, *, failed: int, failures: List["RecipientFailure"]) -> None:
        super().__init__(message)
        self.sent = 0
        self.failed = failed
        self.failures = failures


__all__ = [
    "AuthError",
    "BroadcastFailedError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "PortalError",
    "RateLimitError",
    "UpstreamError",
    "ValidationError",
]
