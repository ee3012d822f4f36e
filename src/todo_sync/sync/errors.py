"""Error types raised by the sync subsystem.

Every error carries an :class:`ErrorType` and a short, cause-attributed
message suitable for showing to the user. The orchestrator never lets these
escape its public methods; it records the message in its status instead.
"""

import asyncio
from enum import Enum
from typing import Optional


class ErrorType(Enum):
    """Classification of sync failures."""
    NETWORK = "network_error"
    AUTH = "auth_error"
    CONFLICT = "conflict_error"
    QUOTA = "quota_error"
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION = "permission_error"
    RATE_LIMIT = "rate_limit_error"
    PARSE = "parse_error"
    INTERNAL = "internal_error"
    UNKNOWN = "unknown_error"


USER_MESSAGES = {
    ErrorType.NETWORK: "offline",
    ErrorType.AUTH: "sign-in required",
    ErrorType.CONFLICT: "changes conflict",
    ErrorType.QUOTA: "storage full",
    ErrorType.FILE_NOT_FOUND: "cloud copy missing",
    ErrorType.PERMISSION: "access denied",
    ErrorType.RATE_LIMIT: "too many requests",
    ErrorType.PARSE: "cloud copy unreadable",
    ErrorType.INTERNAL: "internal error",
    ErrorType.UNKNOWN: "sync failed",
}

RETRYABLE_TYPES = frozenset({ErrorType.NETWORK, ErrorType.RATE_LIMIT})


class SyncError(Exception):
    """Base exception for sync operations."""

    error_type = ErrorType.UNKNOWN

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.error_type]


class NetworkError(SyncError):
    """Network connectivity issues, including timeouts."""
    error_type = ErrorType.NETWORK


class RateLimitError(NetworkError):
    """Rate limit exceeded."""
    error_type = ErrorType.RATE_LIMIT

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationError(SyncError):
    """Credentials missing, expired or rejected."""
    error_type = ErrorType.AUTH


class PermissionDeniedError(SyncError):
    error_type = ErrorType.PERMISSION


class QuotaExceededError(SyncError):
    error_type = ErrorType.QUOTA


class BlobParseError(SyncError):
    """The remote copy could not be decoded."""
    error_type = ErrorType.PARSE


class RemoteStoreError(SyncError):
    """The remote store rejected a request for a non-transient reason."""


class InvariantViolation(SyncError, ValueError):
    """A collection broke a record-model invariant (programming error)."""
    error_type = ErrorType.INTERNAL


_MESSAGE_HINTS = (
    (ErrorType.NETWORK, ("network", "connection", "fetch")),
    (ErrorType.AUTH, ("unauthorized", "authentication")),
    (ErrorType.CONFLICT, ("conflict", "etag")),
    (ErrorType.QUOTA, ("quota", "insufficient space")),
    (ErrorType.FILE_NOT_FOUND, ("not found", "itemnotfound")),
    (ErrorType.PERMISSION, ("permission", "forbidden")),
    (ErrorType.RATE_LIMIT, ("rate limit", "throttled")),
)


def classify_error(error: Optional[BaseException]) -> ErrorType:
    """Map an exception to an :class:`ErrorType`.

    Sync errors carry their own type; timeouts and OS-level connection
    failures are network errors; anything else is matched on its message.
    """
    if error is None:
        return ErrorType.UNKNOWN
    if isinstance(error, SyncError):
        return error.error_type
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorType.NETWORK
    if isinstance(error, PermissionError):
        return ErrorType.PERMISSION
    if isinstance(error, FileNotFoundError):
        return ErrorType.FILE_NOT_FOUND

    message = str(error).lower()
    for error_type, hints in _MESSAGE_HINTS:
        if any(hint in message for hint in hints):
            return error_type
    return ErrorType.UNKNOWN


def user_message(error: Optional[BaseException]) -> str:
    """Short user-visible cause for ``error``."""
    return USER_MESSAGES[classify_error(error)]


def is_retryable(error: Optional[BaseException]) -> bool:
    return classify_error(error) in RETRYABLE_TYPES
