# Hey future me - this is THE FIX for "database is locked" errors!
#
# SQLite has ONE writer at a time (even with WAL). The enumerator upserting a page and four
# download workers recording outcomes WILL collide now and then. Locks are temporary, so we
# wait and retry with exponential backoff. Only after the retries run out does the failure
# surface, and then as a domain DatabaseError so callers never see SQLAlchemy types.
#
# IMPORTANT: decorate functions that open their OWN session_scope(). Retrying a function that
# reuses a session from outside is useless, that session is already rolled back.
#
# USAGE:
#   @with_db_retry(max_attempts=5)
#   async def record_outcome(self, item_id: int, outcome: AttemptOutcome) -> SyncRecord:
#       async with self._db.session_scope() as session:
#           ...
"""Database retry utilities for handling SQLite lock errors."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from syncabull.domain.exceptions import DatabaseError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class DatabaseLockMetrics:
    """Count database lock events for the worker health log.

    Singleton, reset it in tests.
    """

    _instance: DatabaseLockMetrics | None = None

    def __init__(self) -> None:
        self.lock_retries: int = 0
        self.lock_failures: int = 0
        self.total_wait_time_ms: float = 0.0
        self.last_lock_event: float | None = None

    @classmethod
    def get_instance(cls) -> DatabaseLockMetrics:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_retry(self, wait_time_ms: float) -> None:
        self.lock_retries += 1
        self.total_wait_time_ms += wait_time_ms
        self.last_lock_event = time.time()

    def record_failure(self) -> None:
        self.lock_failures += 1
        self.last_lock_event = time.time()
        logger.warning(
            "Database lock failure recorded (total failures: %d)", self.lock_failures
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "lock_retries": self.lock_retries,
            "lock_failures": self.lock_failures,
            "total_wait_time_ms": round(self.total_wait_time_ms, 2),
            "last_lock_event_timestamp": self.last_lock_event,
        }

    def reset(self) -> None:
        self.lock_retries = 0
        self.lock_failures = 0
        self.total_wait_time_ms = 0.0
        self.last_lock_event = None


def is_lock_error(exception: BaseException) -> bool:
    """Check if an exception is a retryable SQLite lock error."""
    if not isinstance(exception, OperationalError):
        return False

    error_msg = str(exception).lower()
    return "locked" in error_msg or "busy" in error_msg


def with_db_retry(
    max_attempts: int = 5,
    initial_delay: float = 0.1,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for retrying database operations on lock errors.

    The backoff is exponential: 0.1s -> 0.2s -> 0.4s ... capped at max_delay.

    Args:
        max_attempts: Maximum attempts including the first one
        initial_delay: Delay before the first retry in seconds
        max_delay: Maximum delay cap in seconds
        backoff_factor: Multiply delay by this each retry

    Returns:
        Decorated coroutine function

    Raises:
        DatabaseError: When lock retries are exhausted, or immediately for any other
            SQLAlchemy error
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            metrics = DatabaseLockMetrics.get_instance()
            delay = initial_delay
            start_time = time.monotonic()

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except SQLAlchemyError as e:
                    if not is_lock_error(e):
                        raise DatabaseError(
                            f"{func.__qualname__} failed: {e}"
                        ) from e

                    if attempt >= max_attempts:
                        elapsed = (time.monotonic() - start_time) * 1000
                        logger.error(
                            "Database locked after %d attempts (%.0fms total), giving up: %s.%s",
                            max_attempts,
                            elapsed,
                            func.__module__,
                            func.__qualname__,
                        )
                        metrics.record_failure()
                        raise DatabaseError(
                            f"{func.__qualname__} failed: database locked"
                        ) from e

                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s.%s",
                        attempt,
                        max_attempts,
                        delay,
                        func.__module__,
                        func.__qualname__,
                    )
                    metrics.record_retry(delay * 1000)
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise RuntimeError("Unexpected state in retry decorator")

        return wrapper

    return decorator
