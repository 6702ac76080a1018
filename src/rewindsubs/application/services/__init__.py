"""Application services - rewind detection and session bookkeeping."""

from rewindsubs.application.services.rewind_monitor import RewindMonitor, RewindState
from rewindsubs.application.services.session_registry import SessionRegistry

__all__ = ["RewindMonitor", "RewindState", "SessionRegistry"]
