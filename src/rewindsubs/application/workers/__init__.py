"""Background workers."""

from rewindsubs.application.workers.session_monitor_worker import (
    SessionMonitorWorker,
    create_session_monitor_worker,
)

__all__ = ["SessionMonitorWorker", "create_session_monitor_worker"]
