"""Custom exception hierarchy for the famledger package."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class FamLedgerError(Exception):
    """Base class for all famledger specific errors."""

    status_code = 200


class AuthenticationRequiredError(FamLedgerError):
    """Raised when an action needs a signed-in user and none is present."""

    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class FamilyRequiredError(FamLedgerError):
    """Raised when the caller is not a member of any family."""

    def __init__(self, message: str = "User must belong to a family") -> None:
        super().__init__(message)


class PermissionDeniedError(FamLedgerError):
    """Raised when the caller's role does not allow an operation."""


class NotFoundError(FamLedgerError):
    """Raised when an entity is missing or outside the caller's family."""


class ValidationError(FamLedgerError):
    """Raised when submitted input fails validation."""


class ConflictError(FamLedgerError):
    """Raised for duplicate names and illegal state transitions."""


class CsrfValidationError(FamLedgerError):
    """Raised when a mutating request carries a missing or stale CSRF token."""

    status_code = 403

    def __init__(
        self, message: str = "Security validation failed. Please refresh the page and try again."
    ) -> None:
        super().__init__(message)


class RateLimitedError(FamLedgerError):
    """Raised when login attempts are blocked for an IP address or email."""

    status_code = 429

    def __init__(self, message: str, unblock_at: Optional[datetime] = None) -> None:
        super().__init__(message)
        self.unblock_at = unblock_at


__all__ = [
    "AuthenticationRequiredError",
    "ConflictError",
    "CsrfValidationError",
    "FamLedgerError",
    "FamilyRequiredError",
    "NotFoundError",
    "PermissionDeniedError",
    "RateLimitedError",
    "ValidationError",
]
