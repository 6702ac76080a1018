"""Session Monitor Worker - drives every RewindMonitor at an adaptive cadence.

Hey future me - this is the main loop of the whole app. Each cycle:

1. New correlation id (so all log lines of one cycle can be grepped together)
2. registry.refresh() - reconcile the server's session list with what we track
3. One make_monitoring_pass() per live monitor, strictly one after another
4. Sleep: active_frequency if ANY monitor is active (subs shown, cooldown
   pending, or something is playing), idle_frequency otherwise

WHY two intervals? Rewind detection needs ~1s samples, but polling the server
every second while nobody is watching is pointless load. When the previous
cycle was active the session fetch gets the short active timeout - a slow
server must not stretch the 1s cadence.

Real-time "playing" notifications (see PlexNotificationListener) come in via
handle_playing_notification() and run an extra pass for just that session.
Such passes never count down the cooldown - notifications can arrive several
times per second and would burn through it.

stop() (and a notification that makes a session active) wakes the sleeping
loop via an asyncio.Event, so shutdown never waits for the idle interval.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rewindsubs.application.services.rewind_monitor import RewindMonitor
from rewindsubs.application.services.session_registry import SessionRegistry
from rewindsubs.domain.entities import PlayingNotification
from rewindsubs.infrastructure.observability.logger_template import log_worker_health
from rewindsubs.infrastructure.observability.logging import set_correlation_id

if TYPE_CHECKING:
    from rewindsubs.config.settings import Settings
    from rewindsubs.domain.ports import IMediaServerClient

logger = logging.getLogger(__name__)


class SessionMonitorWorker:
    """Polls the media server and runs the per-session rewind monitors."""

    def __init__(
        self,
        registry: SessionRegistry,
        active_frequency: float = 1.0,
        idle_frequency: float = 30.0,
        active_timeout: float | None = None,
        health_log_interval_cycles: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the worker.

        Args:
            registry: Session registry to reconcile each cycle
            active_frequency: Seconds between cycles while any monitor is active
            idle_frequency: Seconds between cycles while nothing is going on
            active_timeout: Session fetch timeout (seconds) after an active cycle
            health_log_interval_cycles: Emit a worker.health line every N cycles
            clock: Monotonic time source (injectable for tests)
        """
        self._registry = registry
        self._active_frequency = active_frequency
        self._idle_frequency = idle_frequency
        self._active_timeout = active_timeout
        self._health_log_interval_cycles = health_log_interval_cycles
        self._clock = clock

        self._running = False
        self._wake_event = asyncio.Event()
        self._last_cycle_active = False

        self._cycles_completed = 0
        self._errors_total = 0
        self._notifications_handled = 0
        self._started_at: float | None = None
        self._last_cycle_at: datetime | None = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run until stop() is called."""
        self._running = True
        self._wake_event.clear()
        self._started_at = self._clock()
        logger.info(
            "SessionMonitorWorker started (active=%ss, idle=%ss, active_timeout=%s)",
            self._active_frequency,
            self._idle_frequency,
            self._active_timeout,
        )

        try:
            while self._running:
                try:
                    await self.run_cycle()
                except Exception as e:
                    self._errors_total += 1
                    logger.exception("SessionMonitorWorker cycle error: %s", e)

                self._cycles_completed += 1
                if self._cycles_completed % self._health_log_interval_cycles == 0:
                    self._log_health()

                await self._sleep(self.current_interval())
        finally:
            await self._registry.remove_all()
            self._running = False
            logger.info("SessionMonitorWorker stopped")

    async def stop(self) -> None:
        """Signal the loop to exit and tear down all monitors.

        Subtitles WE turned on get turned off again; the user's own
        subtitle choices are left alone.
        """
        self._running = False
        self._wake_event.set()
        await self._registry.remove_all()

    async def run_cycle(self) -> bool:
        """Reconcile sessions and run one pass per monitor.

        Returns:
            True if any monitor is active after the passes (-> active cadence)
        """
        set_correlation_id()
        self._last_cycle_at = datetime.now(UTC)

        timeout = self._active_timeout if self._last_cycle_active else None
        fetched = await self._registry.refresh(timeout=timeout)
        if not fetched:
            # Stale positions must not drive the machines (or eat cooldown cycles)
            return self._last_cycle_active

        self._last_cycle_active = self._run_passes(self._registry.get_live_monitors())
        return self._last_cycle_active

    def _run_passes(self, monitors: list[RewindMonitor]) -> bool:
        # Sessions missing from the fetch keep their frozen snapshot, so they are left out
        any_active = False
        for monitor in monitors:
            if not monitor.is_monitoring:
                continue
            monitor.make_monitoring_pass()
            any_active = any_active or monitor.is_active
        return any_active

    def current_interval(self) -> float:
        """Seconds to sleep before the next cycle."""
        if self._last_cycle_active:
            return self._active_frequency
        return self._idle_frequency

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=seconds)
        except TimeoutError:
            pass
        self._wake_event.clear()

    async def handle_playing_notification(self, notification: PlayingNotification) -> bool:
        """Route a real-time playing event to the matching session and run a pass.

        Returns:
            True if a tracked session handled the notification
        """
        match = self._registry.find_by_machine_id(notification.client_identifier)
        if match is None:
            logger.debug(
                "Playing notification for untracked player %s ignored",
                notification.client_identifier,
            )
            return False

        session, monitor = match
        if not monitor.is_monitoring:
            return False

        session.apply_notification_position(notification.view_offset_ms)
        monitor.make_monitoring_pass(from_notification=True)
        self._notifications_handled += 1

        if monitor.is_active and not self._last_cycle_active:
            # Somebody started watching - switch to the active cadence right away
            self._last_cycle_active = True
            self._wake_event.set()
        return True

    def get_tracked_session_ids(self) -> list[str]:
        return self._registry.get_tracked_session_ids()

    def get_status(self) -> dict[str, Any]:
        """Worker status for monitoring/diagnostics."""
        uptime = self._clock() - self._started_at if self._started_at is not None else 0.0
        return {
            "name": "Session Monitor",
            "running": self._running,
            "active": self._last_cycle_active,
            "current_interval": self.current_interval(),
            "cycles_completed": self._cycles_completed,
            "errors_total": self._errors_total,
            "notifications_handled": self._notifications_handled,
            "uptime_seconds": int(uptime),
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "tracked_sessions": self.get_tracked_session_ids(),
            "registry": self._registry.get_stats(),
        }

    def _log_health(self) -> None:
        uptime = self._clock() - self._started_at if self._started_at is not None else 0.0
        log_worker_health(
            logger,
            "session_monitor",
            cycles_completed=self._cycles_completed,
            errors_total=self._errors_total,
            uptime_seconds=uptime,
            extra_stats={
                "tracked_sessions": len(self.get_tracked_session_ids()),
                "notifications_handled": self._notifications_handled,
            },
        )


def create_session_monitor_worker(
    settings: "Settings", client: "IMediaServerClient"
) -> SessionMonitorWorker:
    """Wire a registry and worker from settings.

    Args:
        settings: Application settings
        client: Media server transport

    Returns:
        Ready-to-start SessionMonitorWorker
    """
    monitor = settings.monitor
    registry = SessionRegistry(
        client,
        active_frequency=monitor.active_frequency,
        max_rewind=monitor.max_rewind,
        cooldown_count=monitor.cooldown_count,
        subtitle_preference_patterns=monitor.subtitle_preference_patterns,
        missing_grace_period=monitor.missing_grace_period,
        min_resolution=monitor.min_resolution,
    )
    return SessionMonitorWorker(
        registry,
        active_frequency=monitor.active_frequency,
        idle_frequency=monitor.idle_frequency,
        active_timeout=monitor.active_timeout_seconds,
        health_log_interval_cycles=monitor.health_log_interval_cycles,
    )
