"""Sync error codes - standardized failure classification.

Hey future me - every failed download/page fetch gets ONE of these codes written to
media_items.last_error_code. The RetryPolicy maps exceptions to codes, and the codes decide
whether an item gets another attempt.

ERROR CATEGORIES:

FATAL (terminal immediately, never retried automatically):
- NOT_FOUND: Remote item is gone (404)
- AUTH_ERROR: 401 survived a token refresh
- STORAGE_ERROR: Local disk write failed
- SIZE_MISMATCH: Byte count != Content-Length
- INVALID_ITEM: Remote payload violates our model (both photo and video metadata)

RETRYABLE (backoff and try again, bounded by max_attempts):
- TIMEOUT, NETWORK_ERROR, SERVER_ERROR, RATE_LIMITED, UNKNOWN

UNCOUNTED (retried after backoff, but the attempt counter does not move):
- DATABASE_ERROR: our own store failed, the item did nothing wrong
- INTERRUPTED: shutdown stopped the stream

DEFERRED (not counted, not retried until the account is re-authorized):
- REAUTH_REQUIRED
"""

from enum import StrEnum


class SyncErrorCode(StrEnum):
    """Standardized error codes for sync failures.

    StrEnum values ARE strings, so SyncErrorCode.TIMEOUT == "timeout".
    """

    # Fatal
    NOT_FOUND = "not_found"
    AUTH_ERROR = "auth_error"
    STORAGE_ERROR = "storage_error"
    SIZE_MISMATCH = "size_mismatch"
    INVALID_ITEM = "invalid_item"

    # Retryable
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"

    # Uncounted
    DATABASE_ERROR = "database_error"
    INTERRUPTED = "interrupted"

    # Deferred
    REAUTH_REQUIRED = "reauth_required"


FATAL_ERRORS: frozenset[str] = frozenset(
    {
        SyncErrorCode.NOT_FOUND,
        SyncErrorCode.AUTH_ERROR,
        SyncErrorCode.STORAGE_ERROR,
        SyncErrorCode.SIZE_MISMATCH,
        SyncErrorCode.INVALID_ITEM,
    }
)

RETRYABLE_ERRORS: frozenset[str] = frozenset(
    {
        SyncErrorCode.TIMEOUT,
        SyncErrorCode.NETWORK_ERROR,
        SyncErrorCode.SERVER_ERROR,
        SyncErrorCode.RATE_LIMITED,
        SyncErrorCode.UNKNOWN,
    }
)

UNCOUNTED_ERRORS: frozenset[str] = frozenset(
    {
        SyncErrorCode.DATABASE_ERROR,
        SyncErrorCode.INTERRUPTED,
    }
)

ERROR_DESCRIPTIONS: dict[str, str] = {
    SyncErrorCode.NOT_FOUND: "Item no longer exists in the remote library",
    SyncErrorCode.AUTH_ERROR: "Request rejected even after refreshing the access token",
    SyncErrorCode.STORAGE_ERROR: "Writing to the destination directory failed",
    SyncErrorCode.SIZE_MISMATCH: "Downloaded size does not match Content-Length",
    SyncErrorCode.INVALID_ITEM: "Remote item payload is invalid",
    SyncErrorCode.TIMEOUT: "Request timed out",
    SyncErrorCode.NETWORK_ERROR: "Network error",
    SyncErrorCode.SERVER_ERROR: "Remote server error (5xx)",
    SyncErrorCode.RATE_LIMITED: "Too many requests (rate limited)",
    SyncErrorCode.DATABASE_ERROR: "Database temporarily unavailable",
    SyncErrorCode.INTERRUPTED: "Download interrupted by shutdown",
    SyncErrorCode.UNKNOWN: "Unknown error occurred",
    SyncErrorCode.REAUTH_REQUIRED: "Account must be re-authorized",
}


def is_retryable_error(error_code: str | None) -> bool:
    """Check if an error code is retryable.

    None means "no error recorded", which we treat as retryable.

    Args:
        error_code: The error code to check

    Returns:
        True unless the code is fatal
    """
    if error_code is None:
        return True

    return error_code not in FATAL_ERRORS


def get_error_description(error_code: str | None) -> str:
    """Get human-readable description for an error code."""
    if error_code is None:
        return "No error information available"

    return ERROR_DESCRIPTIONS.get(error_code, f"Unknown error: {error_code}")
