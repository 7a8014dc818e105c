"""Error taxonomy shared by the API client and the sync engine."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    APPLICATION = "application"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"


class SyncError(Exception):
    """Base error for every failure surfaced by the sync layer."""

    kind: ErrorKind = ErrorKind.APPLICATION
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        action: Optional[str] = None,
        attempts: int = 0,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.action = action
        self.attempts = attempts
        self.status_code = status_code

    def __str__(self) -> str:
        if self.action and self.attempts:
            return f"{self.message} (action={self.action}, attempts={self.attempts})"
        return self.message


class ConfigurationError(SyncError):
    """Raised when no backend URL has been configured."""

    kind = ErrorKind.CONFIGURATION


class TransportError(SyncError):
    """Raised for network, timeout, non-2xx and unparsable responses."""

    kind = ErrorKind.TRANSPORT
    retryable = True


class ApplicationError(SyncError):
    """Raised when the backend answered with an error envelope."""

    kind = ErrorKind.APPLICATION
    retryable = True


class NotFoundError(SyncError):
    """Raised when the target record of a mutation does not exist."""

    kind = ErrorKind.NOT_FOUND


class ValidationError(SyncError):
    """Raised when a mutation payload is missing required data."""

    kind = ErrorKind.VALIDATION


class ConflictError(SyncError):
    """Raised when the backend already holds a record with the same id."""

    kind = ErrorKind.CONFLICT


__all__ = [
    "ApplicationError",
    "ConfigurationError",
    "ConflictError",
    "ErrorKind",
    "NotFoundError",
    "SyncError",
    "TransportError",
    "ValidationError",
]
