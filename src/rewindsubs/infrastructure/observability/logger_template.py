"""Shared logger helpers.

Hey future me - use these instead of ad-hoc health/timing log lines so every
worker reports in the same shape:

    log_worker_health(logger, "session_monitor", cycles_completed=300, errors_total=0, uptime_seconds=310)
    log_slow_operation(logger, "session_refresh", duration_ms=2400, threshold_ms=2000, sessions=3)
"""

import logging
from typing import Any


# Listen future me, the worker calls this every N cycles (MONITOR_HEALTH_LOG_INTERVAL_CYCLES).
# A steadily climbing errors_total with a flat tracked_sessions count usually means the server
# is unreachable, the registry logs the actual fetch errors.
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
        worker_name: Worker identifier (e.g. "session_monitor")
        cycles_completed: Total cycles completed since start
        errors_total: Total errors encountered since start
        uptime_seconds: Seconds since worker started
        extra_stats: Optional additional fields
    """
    log_data = {
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
    """Log a warning if an operation exceeded its threshold.

    Args:
        logger: Logger instance
        operation: Operation name
        duration_ms: Actual operation duration
        threshold_ms: Threshold for "slow"
        **context: Additional fields
    """
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
