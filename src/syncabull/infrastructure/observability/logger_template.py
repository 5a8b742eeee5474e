"""Shared logger helpers.

USAGE:
    from syncabull.infrastructure.observability.logger_template import (
        log_operation,
        log_worker_health,
    )

    async with log_operation(logger, "library_enumeration", account_id="acc-1"):
        await enumerator.run(ctx)

    log_worker_health(logger, "sync_engine", cycles_completed=10, errors_total=2, uptime_seconds=3600)
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


# Yo, this context manager logs start/end with automatic duration tracking. The **context args
# become extra fields in both logs. On exception it logs "<operation>.failed" with the traceback
# and re-raises. Cancellation (shutdown) is logged as "<operation>.cancelled" without a traceback.
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager for logging operation start/end with timing.

    The yielded dict can be filled with result fields (e.g. new_items=3) that are added to
    the completion log.

    Args:
        logger: Logger instance
        operation: Operation name (e.g. "sync_cycle", "library_enumeration")
        **context: Additional fields to include in logs
    """
    start = time.monotonic()
    result: dict[str, Any] = {}
    logger.info(f"{operation}.started", extra=context)

    try:
        yield result
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": duration_ms,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        raise
    except BaseException:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"{operation}.cancelled", extra={**context, "duration_ms": duration_ms})
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        f"{operation}.completed",
        extra={**context, **result, "duration_ms": duration_ms},
    )


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health status in a consistent format.

    Args:
        logger: Logger instance
        worker_name: Worker identifier (e.g. "sync_engine")
        cycles_completed: Total cycles completed since start
        errors_total: Total errors encountered since start
        uptime_seconds: Seconds since worker started
        extra_stats: Optional additional stats (download counters, store summary)
    """
    log_data: dict[str, Any] = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)


def log_slow_operation(
    logger: logging.Logger,
    operation: str,
    duration_ms: int,
    threshold_ms: int = 100,
    **context: Any,
) -> None:
    """Log a warning if an operation exceeded its threshold."""
    if duration_ms > threshold_ms:
        logger.warning(
            "operation.slow",
            extra={
                **context,
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
            },
        )
