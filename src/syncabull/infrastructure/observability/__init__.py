"""Observability infrastructure for structured logging."""

from syncabull.infrastructure.observability.logger_template import (
    log_operation,
    log_slow_operation,
    log_worker_health,
)
from syncabull.infrastructure.observability.logging import (
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)

__all__ = [
    "configure_logging",
    "get_correlation_id",
    "log_operation",
    "log_slow_operation",
    "log_worker_health",
    "set_correlation_id",
]
