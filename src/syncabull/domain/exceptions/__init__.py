"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). DON'T raise this directly - always use a specific subclass so the
    # RetryPolicy (and callers) can classify precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class ValidationException(DomainException):
    """Raised when an entity's invariants are violated.

    Example: a remote media item that carries both photo and video metadata.
    """

    pass


class ConfigurationError(DomainException):
    """Raised when configuration is invalid or missing."""

    pass


class EntityNotFoundException(DomainException):
    """Raised when a locally stored entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


# =============================================================================
# TRANSIENT ERRORS
# Hey future me - everything under NetworkError is absorbed by the RetryPolicy.
# Raise these for timeouts, connection resets, 5xx and 429.
# =============================================================================


class NetworkError(DomainException):
    """Transient failure talking to a remote endpoint."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        is_timeout: bool = False,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.is_timeout = is_timeout


class RateLimited(NetworkError):
    """Remote endpoint answered 429.

    retry_after is the server's Retry-After hint in seconds (None if absent).
    """

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        super().__init__(message, http_status=429)
        self.retry_after = retry_after


# =============================================================================
# AUTH ERRORS
# =============================================================================


class AuthError(DomainException):
    """Raised when credentials cannot be obtained or were rejected.

    Hey future me - a plain AuthError is "401 even after we refreshed". For a dead refresh
    token use ReauthorizationRequired so the engine parks the account instead of burning
    attempts on every item.
    """

    def __init__(
        self,
        message: str,
        account_id: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.http_status = http_status


class ReauthorizationRequired(AuthError):
    """Refresh token was revoked or is invalid; an operator must re-authorize."""

    def __init__(
        self,
        message: str = "Refresh token rejected. Re-authorize the account.",
        account_id: str | None = None,
        http_status: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, account_id=account_id, http_status=http_status)
        self.error_code = error_code  # e.g. "invalid_grant"


# =============================================================================
# FATAL ERRORS
# =============================================================================


class NotFound(DomainException):
    """Remote item no longer exists (HTTP 404)."""

    def __init__(self, message: str, remote_id: str | None = None) -> None:
        super().__init__(message)
        self.remote_id = remote_id


class StorageError(DomainException):
    """Local filesystem write failed (disk full, permissions, ...)."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class VerificationError(DomainException):
    """Downloaded byte count does not match the advertised Content-Length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Size mismatch: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class DatabaseError(DomainException):
    """Persistent store operation failed after lock retries."""

    pass


class DownloadInterrupted(DomainException):
    """Shutdown interrupted an asset stream before it finished.

    Not a failure of the item: the outcome is recorded without counting an attempt.
    """

    def __init__(self, message: str = "Download interrupted by shutdown") -> None:
        super().__init__(message)


__all__ = [
    "AuthError",
    "ConfigurationError",
    "DatabaseError",
    "DomainException",
    "DownloadInterrupted",
    "EntityNotFoundException",
    "NetworkError",
    "NotFound",
    "RateLimited",
    "ReauthorizationRequired",
    "StorageError",
    "ValidationException",
    "VerificationError",
]
