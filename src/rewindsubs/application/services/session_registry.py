"""Session Registry - reconciles the server's session list with what we are tracking.

Hey future me - every worker cycle calls refresh(), which:

1. Fetches the current session list (SessionFetchError -> keep everything as is)
2. For each fetched session, CONCURRENTLY (one task per session):
   - known playback id   -> fetch fine-grained status, apply_updated_data() in place
   - unknown playback id -> fetch ALL subtitle streams once (the session list only
     has the selected one), create ActiveSession + RewindMonitor, register both
3. For every tracked session NOT in the fetch: stamp missing_since on the first
   miss, remove it once it has been missing longer than the grace period.

WHY the grace period? The server sometimes drops a session from one response
(hiccup, transcoder restart). Dropping and recreating the monitor would reset
the rewind baseline - the user would lose their "stop subtitles here" point.

LOCKING: one asyncio.Lock guards the structural mutations (add/remove and the
"creation pending" set). It is NEVER held across a network call or a
monitoring pass.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from rewindsubs.application.services.rewind_monitor import RewindMonitor
from rewindsubs.domain.entities import (
    ActiveSession,
    FineGrainedStatus,
    PlayerInfo,
    SessionSnapshot,
    SubtitleStream,
)
from rewindsubs.domain.exceptions import MediaServerError, SessionFetchError
from rewindsubs.domain.ports import IMediaServerClient
from rewindsubs.domain.value_objects import SubtitlePreference
from rewindsubs.infrastructure.observability.logger_template import log_slow_operation

logger = logging.getLogger(__name__)

DEFAULT_MISSING_GRACE_PERIOD = 60.0
# Consecutive failed fetches before we escalate from WARNING to ERROR
FETCH_FAILURE_ESCALATION = 5


class SessionRegistry:
    """Tracks ActiveSessions and their RewindMonitors by playback id."""

    def __init__(
        self,
        client: IMediaServerClient,
        *,
        active_frequency: float = 1.0,
        max_rewind: float = 60.0,
        cooldown_count: int = 5,
        subtitle_preference_patterns: Iterable[str] = (),
        missing_grace_period: float = DEFAULT_MISSING_GRACE_PERIOD,
        min_resolution: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            client: Media server transport
            active_frequency: Active polling interval, passed to new monitors
            max_rewind: Max rewind seconds, passed to new monitors
            cooldown_count: Over-rewind cooldown cycles, passed to new monitors
            subtitle_preference_patterns: Include/exclude patterns for the preferred subtitle
            missing_grace_period: Seconds a session may be absent before removal
            min_resolution: Position resolution floor in seconds, passed to new monitors
            clock: Monotonic time source (injectable for tests)
        """
        self._client = client
        self._active_frequency = active_frequency
        self._max_rewind = max_rewind
        self._cooldown_count = cooldown_count
        self._preference = SubtitlePreference.from_patterns(subtitle_preference_patterns)
        self._missing_grace_period = missing_grace_period
        self._min_resolution = min_resolution
        self._clock = clock

        self._sessions: dict[str, ActiveSession] = {}
        self._monitors: dict[str, RewindMonitor] = {}
        self._pending_creation: set[str] = set()
        self._lock = asyncio.Lock()

        self._consecutive_fetch_failures = 0
        self._stats = {
            "sessions_created": 0,
            "sessions_removed": 0,
            "fetch_failures": 0,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_tracked_session_ids(self) -> list[str]:
        return list(self._sessions)

    def get_session(self, playback_id: str) -> ActiveSession | None:
        return self._sessions.get(playback_id)

    def get_monitor(self, playback_id: str) -> RewindMonitor | None:
        return self._monitors.get(playback_id)

    def get_monitors(self) -> list[RewindMonitor]:
        return list(self._monitors.values())

    def get_live_monitors(self) -> list[RewindMonitor]:
        """Monitors whose session was present in the latest fetch."""
        return [
            monitor
            for playback_id, monitor in self._monitors.items()
            if (session := self._sessions.get(playback_id)) is not None
            and session.missing_since is None
        ]

    def find_by_machine_id(self, machine_id: str) -> tuple[ActiveSession, RewindMonitor] | None:
        """Find the live session playing on a given player.

        Hey future me - after an episode change the old playback id lingers for the grace
        period on the SAME player. Sessions absent from the latest fetch are skipped and the
        newest one wins, otherwise the old episode's monitor would eat the new one's events.
        """
        for playback_id, session in reversed(self._sessions.items()):
            if session.machine_id != machine_id or session.missing_since is not None:
                continue
            monitor = self._monitors.get(playback_id)
            if monitor is not None:
                return session, monitor
        return None

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "tracked_sessions": len(self._sessions),
            "consecutive_fetch_failures": self._consecutive_fetch_failures,
        }

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def refresh(self, timeout: float | None = None) -> bool:
        """Run one reconciliation pass.

        Args:
            timeout: Optional request timeout for the session list fetch

        Returns:
            True if the session list was fetched, False on a fetch failure
            (tracked state is then left untouched).
        """
        start = self._clock()
        try:
            snapshots = await self._client.fetch_sessions(timeout=timeout)
        except SessionFetchError as e:
            self._on_fetch_failure(e)
            return False

        if self._consecutive_fetch_failures:
            logger.info(
                "Session list fetch recovered after %d failures", self._consecutive_fetch_failures
            )
        self._consecutive_fetch_failures = 0

        results = await asyncio.gather(
            *(self._process_fetched(snapshot) for snapshot in snapshots),
            return_exceptions=True,
        )
        for snapshot, result in zip(snapshots, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to process session %s on %s: %s",
                    snapshot.playback_id,
                    snapshot.device_name,
                    result,
                    exc_info=result,
                )

        await self._expire_missing({snapshot.playback_id for snapshot in snapshots})

        log_slow_operation(
            logger,
            "session_refresh",
            int((self._clock() - start) * 1000),
            threshold_ms=2000,
            sessions=len(snapshots),
        )
        return True

    def _on_fetch_failure(self, error: SessionFetchError) -> None:
        self._consecutive_fetch_failures += 1
        self._stats["fetch_failures"] += 1

        if self._consecutive_fetch_failures >= FETCH_FAILURE_ESCALATION:
            logger.error(
                "Fetching sessions failed %d times in a row, keeping %d tracked sessions: %s",
                self._consecutive_fetch_failures,
                len(self._sessions),
                error,
            )
        else:
            logger.warning("Fetching sessions failed, keeping current state: %s", error)

    async def _process_fetched(self, snapshot: SessionSnapshot) -> None:
        existing = self._sessions.get(snapshot.playback_id)
        if existing is not None:
            fine_grained = await self._fetch_fine_grained(snapshot.player)
            existing.apply_updated_data(snapshot, fine_grained)
            return

        async with self._lock:
            if snapshot.playback_id in self._sessions or snapshot.playback_id in self._pending_creation:
                logger.debug("Session %s already tracked or being created", snapshot.playback_id)
                return
            self._pending_creation.add(snapshot.playback_id)

        try:
            await self._create_session(snapshot)
        finally:
            async with self._lock:
                self._pending_creation.discard(snapshot.playback_id)

    async def _create_session(self, snapshot: SessionSnapshot) -> None:
        available, fine_grained = await asyncio.gather(
            self._fetch_available_subtitles(snapshot),
            self._fetch_fine_grained(snapshot.player),
        )

        session = ActiveSession(
            snapshot=snapshot,
            available_subtitles=available,
            client=self._client,
            preference=self._preference,
            fine_grained=fine_grained,
        )
        monitor = RewindMonitor(
            session,
            active_frequency=self._active_frequency,
            max_rewind=self._max_rewind,
            cooldown_count=self._cooldown_count,
            min_resolution=self._min_resolution,
        )

        async with self._lock:
            self._sessions[snapshot.playback_id] = session
            self._monitors[snapshot.playback_id] = monitor
            self._stats["sessions_created"] += 1

        preferred = session.preferred_subtitle
        logger.info(
            "Found and monitoring new session for %s (%s, %d subtitle streams, preferred: %s)",
            session.device_name,
            session.media_title,
            len(available),
            preferred.display_name if preferred else "none",
        )

    async def _fetch_available_subtitles(self, snapshot: SessionSnapshot) -> list[SubtitleStream]:
        try:
            return await self._client.fetch_available_subtitles(snapshot.key)
        except MediaServerError as e:
            logger.warning(
                "Could not get available subtitles for %s, monitoring without them: %s",
                snapshot.media_title,
                e,
            )
            return []

    async def _fetch_fine_grained(self, player: PlayerInfo) -> FineGrainedStatus | None:
        try:
            return await self._client.fetch_fine_grained_status(player)
        except MediaServerError as e:
            logger.debug("No fine-grained status for %s: %s", player.title, e)
            return None

    async def _expire_missing(self, fetched_ids: set[str]) -> None:
        now = self._clock()
        expired: list[str] = []

        for playback_id, session in list(self._sessions.items()):
            if playback_id in fetched_ids:
                continue
            if session.missing_since is None:
                session.mark_missing(now)
                logger.debug(
                    "Session %s on %s missing from fetch, grace period started",
                    playback_id,
                    session.device_name,
                )
            elif session.missing_for(now) > self._missing_grace_period:
                expired.append(playback_id)

        for playback_id in expired:
            await self._remove(playback_id, reason="missing longer than grace period")

    async def _remove(self, playback_id: str, reason: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(playback_id, None)
            monitor = self._monitors.pop(playback_id, None)
            if session is None:
                return False
            self._stats["sessions_removed"] += 1

        logger.info("Removing session from %s (%s)", session.device_name, reason)
        if monitor is not None:
            monitor.stop_monitoring()
        return True

    async def remove_all(self) -> None:
        """Tear down every tracked session (used on shutdown)."""
        for playback_id in list(self._sessions):
            await self._remove(playback_id, reason="shutting down")
