"""Observability infrastructure for structured logging."""

from rewindsubs.infrastructure.observability.logging import (
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)
from rewindsubs.infrastructure.observability.logger_template import (
    log_slow_operation,
    log_worker_health,
)

__all__ = [
    "configure_logging",
    "get_correlation_id",
    "log_slow_operation",
    "log_worker_health",
    "set_correlation_id",
]
