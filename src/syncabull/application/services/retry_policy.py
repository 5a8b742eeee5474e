"""Retry policy shared by library enumeration, token refresh and downloads.

Hey future me - ONE instance of this is built from SyncSettings and handed to everyone. It answers
two questions:
1. classify(error): which SyncErrorCode is this exception?
2. decide(error, attempts_made): retry (after how long), give up (terminal), or defer?

BACKOFF FORMULA: base * 2^(attempt-1), capped at max_delay, then "equal jitter": a random
factor in [0.5, 1.0] so workers that failed together don't come back together. A 429 with a
Retry-After header uses the server's number instead.

DEFER is for ReauthorizationRequired: the account's refresh token is dead, hammering the item
is pointless and it must not burn the item's attempts. The item becomes eligible again once
an operator re-authorizes the account.

UNCOUNTED codes (DATABASE_ERROR, INTERRUPTED) are retried after backoff without touching the
attempt counter - our store failing or a shutdown stopping a stream says nothing about the item.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TypeVar

from syncabull.config import SyncSettings
from syncabull.domain.entities import (
    FATAL_ERRORS,
    UNCOUNTED_ERRORS,
    AttemptOutcome,
    SyncErrorCode,
)
from syncabull.domain.exceptions import (
    AuthError,
    DatabaseError,
    DownloadInterrupted,
    NetworkError,
    NotFound,
    RateLimited,
    ReauthorizationRequired,
    StorageError,
    ValidationException,
    VerificationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryAction(str, Enum):
    """What to do after a failure."""

    RETRY = "retry"
    GIVE_UP = "give_up"
    DEFER = "defer"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of RetryPolicy.decide()."""

    action: RetryAction
    error_code: str
    delay_seconds: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


class RetryPolicy:
    """Classifies failures and computes backoff."""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the policy.

        Args:
            max_attempts: Attempts (first try included) before a retryable failure is terminal
            base_delay: Backoff after the first failure, in seconds
            max_delay: Backoff cap in seconds
            rng: Random source for jitter (seed it in tests)
            sleep: Awaitable sleep used by run() (replace in tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_cap_seconds,
        )

    # Listen up - ORDER MATTERS here. ReauthorizationRequired is an AuthError and RateLimited is
    # a NetworkError, so the subclasses are checked first.
    def classify(self, error: BaseException) -> str:
        """Map an exception to a SyncErrorCode."""
        if isinstance(error, DownloadInterrupted):
            return SyncErrorCode.INTERRUPTED
        if isinstance(error, ReauthorizationRequired):
            return SyncErrorCode.REAUTH_REQUIRED
        if isinstance(error, AuthError):
            return SyncErrorCode.AUTH_ERROR
        if isinstance(error, NotFound):
            return SyncErrorCode.NOT_FOUND
        if isinstance(error, StorageError):
            return SyncErrorCode.STORAGE_ERROR
        if isinstance(error, VerificationError):
            return SyncErrorCode.SIZE_MISMATCH
        if isinstance(error, ValidationException):
            return SyncErrorCode.INVALID_ITEM
        if isinstance(error, RateLimited):
            return SyncErrorCode.RATE_LIMITED
        if isinstance(error, NetworkError):
            if error.is_timeout:
                return SyncErrorCode.TIMEOUT
            if error.http_status is not None and error.http_status >= 500:
                return SyncErrorCode.SERVER_ERROR
            return SyncErrorCode.NETWORK_ERROR
        if isinstance(error, TimeoutError):
            return SyncErrorCode.TIMEOUT
        if isinstance(error, ConnectionError):
            return SyncErrorCode.NETWORK_ERROR
        if isinstance(error, DatabaseError):
            return SyncErrorCode.DATABASE_ERROR
        return SyncErrorCode.UNKNOWN

    def is_fatal(self, error: BaseException) -> bool:
        return self.classify(error) in FATAL_ERRORS

    def backoff(self, attempt: int) -> float:
        """Jittered delay after the `attempt`-th failure (1-based)."""
        exponent = max(attempt - 1, 0)
        # cap before multiplying so 2**exponent can't blow up on huge attempt counts
        raw = min(self.base_delay * (2 ** min(exponent, 32)), self.max_delay)
        return raw * self._rng.uniform(0.5, 1.0)

    def decide(self, error: BaseException, attempts_made: int) -> RetryDecision:
        """Decide what happens after a failure.

        Args:
            error: The exception that ended the attempt
            attempts_made: Attempts made so far, the failed one included

        Returns:
            RetryDecision with action, error code and (for RETRY) the delay
        """
        code = self.classify(error)

        if code == SyncErrorCode.REAUTH_REQUIRED:
            return RetryDecision(RetryAction.DEFER, code)
        if code in FATAL_ERRORS:
            return RetryDecision(RetryAction.GIVE_UP, code)
        if attempts_made >= self.max_attempts:
            return RetryDecision(RetryAction.GIVE_UP, code)

        if isinstance(error, RateLimited) and error.retry_after is not None:
            delay = error.retry_after
        else:
            delay = self.backoff(attempts_made)
        return RetryDecision(RetryAction.RETRY, code, delay)

    def outcome_for(
        self,
        error: BaseException,
        attempts_made: int,
        now: datetime | None = None,
    ) -> AttemptOutcome:
        """Turn a failed download attempt into the outcome written to the Item Store.

        Args:
            error: Why the attempt failed
            attempts_made: The item's attempt count INCLUDING this attempt
            now: Current time (for next_attempt_at)
        """
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        code = self.classify(error)
        now = now or datetime.now(UTC)

        if code in UNCOUNTED_ERRORS:
            delay = 0.0 if code == SyncErrorCode.INTERRUPTED else self.backoff(attempts_made)
            return AttemptOutcome(
                success=False,
                error_code=code,
                error_message=message,
                next_attempt_at=now + timedelta(seconds=delay),
                counts_attempt=False,
            )

        decision = self.decide(error, attempts_made)

        if decision.action is RetryAction.DEFER:
            return AttemptOutcome(
                success=False,
                error_code=decision.error_code,
                error_message=message,
                counts_attempt=False,
            )
        if decision.action is RetryAction.GIVE_UP:
            return AttemptOutcome(
                success=False,
                error_code=decision.error_code,
                error_message=message,
                terminal=True,
            )
        return AttemptOutcome(
            success=False,
            error_code=decision.error_code,
            error_message=message,
            next_attempt_at=now + timedelta(seconds=decision.delay_seconds),
        )

    async def run(self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        """Run `operation`, retrying transient failures in place.

        Used where there is no row to park the retry on (page fetch, token refresh).
        Fatal and deferred errors are raised immediately, transient ones after max_attempts.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                decision = self.decide(e, attempt)
                if not decision.should_retry:
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d, %s), retrying in %.1fs",
                    what,
                    attempt,
                    self.max_attempts,
                    decision.error_code,
                    decision.delay_seconds,
                )
                await self._sleep(decision.delay_seconds)
