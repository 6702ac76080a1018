"""Rewind Monitor - the per-session state machine that turns subtitles on after a rewind.

Hey future me - this is the HEART of the app. One RewindMonitor per ActiveSession.
Every polling cycle the worker calls make_monitoring_pass(), which reads the
session's current position and decides whether to start or stop "automatic"
subtitles. The hard part is telling OUR subtitle changes apart from the USER'S,
using only periodic and imprecise position samples.

PRECEDENCE (evaluated top to bottom on every pass):
1. User-enabled: user turned subs on manually -> just track position, hand
   control back once subs are observed off.
2. Manual-enable detection: subs known ON but we didn't turn them on -> the user
   did it. Only checked while WE are not displaying subs.
3. Auto display active (we turned subs on):
   a. fast-forward (jump > max(resolution + 2, 7)s since last sample) -> stop
   b. over-rewind (more than max_rewind below the baseline) -> stop + cooldown
   c. reached original position (baseline + resolution) -> stop
4. Cooldown active: fast-forward cancels it, a further rewind resets it,
   otherwise count down (NOT on notification-driven passes).
5. Idle: drop of more than 2s below the baseline (but not beyond max_rewind)
   -> rewind -> turn subs on. Otherwise advance the baseline.

BASELINE SUPPRESSION: while a cooldown is pending the baseline is never advanced
by ordinary tracking. A user pausing mid-rewind must not "lock in" a position
that turns their next rewind press into a fresh over-rewind.

A pass NEVER raises. Any error is logged and the machine state is rolled back
to what it was before the pass, so one bad sample can't corrupt the machine
or take down the worker loop.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Protocol

from rewindsubs.domain.entities import SubtitleState

logger = logging.getLogger(__name__)

# Most players only report position with ~1s granularity, short hops must not look like fast-forwards
FAST_FORWARD_FLOOR = 7
REWIND_THRESHOLD = 2
COARSE_COOLDOWN_CYCLES = 2


class MonitoredSession(Protocol):
    """What the monitor needs from a session (ActiveSession implements this)."""

    @property
    def playback_id(self) -> str: ...

    @property
    def machine_id(self) -> str: ...

    @property
    def device_name(self) -> str: ...

    @property
    def media_title(self) -> str: ...

    @property
    def position_seconds(self) -> float: ...

    @property
    def smallest_resolution_expected(self) -> int: ...

    @property
    def has_accurate_time(self) -> bool: ...

    @property
    def known_subtitle_state(self) -> SubtitleState: ...

    @property
    def is_playing(self) -> bool: ...

    def has_active_subtitles(self) -> bool: ...

    def enable_subtitles(self) -> object: ...

    def disable_subtitles(self) -> object: ...


@dataclass
class RewindState:
    """Mutable state of one monitor. Copied before each pass for rollback."""

    latest_watched_position: float = 0.0
    previous_position: float = 0.0
    temporarily_displaying_subtitles: bool = False
    subtitles_user_enabled: bool = False
    cooldown_cycles_left: int = 0
    cooldown_to_use: int = 0


def format_position(seconds: float) -> str:
    """Render a position as MM:SS or HH:MM:SS for log lines."""
    total = int(max(seconds, 0))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class RewindMonitor:
    """Rewind/fast-forward/cooldown state machine for a single session."""

    def __init__(
        self,
        session: MonitoredSession,
        active_frequency: float,
        max_rewind: float,
        cooldown_count: int,
        min_resolution: float = 0,
    ) -> None:
        """Create the monitor and run the first pass.

        Args:
            session: The session to watch
            active_frequency: Seconds between passes while active
            max_rewind: Rewinds further than this (seconds) never show subtitles
            cooldown_count: Cooldown cycles after an over-rewind when the session
                has fine-grained timing (coarse sessions always use 2)
            min_resolution: Lower bound for the position resolution in seconds
        """
        self._session = session
        self._active_frequency = active_frequency
        self._max_rewind = max_rewind
        self._cooldown_count = cooldown_count
        self._min_resolution = min_resolution
        self._state = RewindState()
        self._is_monitoring = False

        self._setup_initial_conditions()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session(self) -> MonitoredSession:
        return self._session

    @property
    def playback_id(self) -> str:
        return self._session.playback_id

    @property
    def machine_id(self) -> str:
        return self._session.machine_id

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def latest_watched_position(self) -> float:
        return self._state.latest_watched_position

    @property
    def previous_position(self) -> float:
        return self._state.previous_position

    @property
    def temporarily_displaying_subtitles(self) -> bool:
        return self._state.temporarily_displaying_subtitles

    @property
    def subtitles_user_enabled(self) -> bool:
        return self._state.subtitles_user_enabled

    @property
    def cooldown_cycles_left(self) -> int:
        return self._state.cooldown_cycles_left

    @property
    def is_active(self) -> bool:
        """Whether the worker should keep polling at the active cadence for this session."""
        if not self._is_monitoring:
            return False
        return (
            self._state.temporarily_displaying_subtitles
            or self._state.cooldown_cycles_left > 0
            or self._session.is_playing
        )

    def resolution(self) -> float:
        """Smallest position change we can trust for this pass."""
        return max(
            self._active_frequency,
            self._min_resolution,
            self._session.smallest_resolution_expected,
        )

    @staticmethod
    def fast_forward_threshold(resolution: float) -> float:
        return max(resolution + 2, FAST_FORWARD_FLOOR)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _setup_initial_conditions(self) -> None:
        try:
            if self._session.has_active_subtitles():
                self._state.subtitles_user_enabled = True

            position = self._session.position_seconds
            self._state.latest_watched_position = position
            self._state.previous_position = position
        except Exception as e:
            logger.error(
                "%s: Error during monitoring setup: %s",
                self._session.device_name,
                e,
                exc_info=True,
            )

        self._is_monitoring = True
        self.make_monitoring_pass()

    def stop_monitoring(self) -> None:
        """Stop monitoring, turning off subtitles only if WE turned them on."""
        self._is_monitoring = False
        self.stop_subtitles_if_not_user_enabled()

    def restart_monitoring(self) -> None:
        self._is_monitoring = True

    def stop_subtitles_if_not_user_enabled(self) -> None:
        if self._state.temporarily_displaying_subtitles:
            self._session.disable_subtitles()
            self._state.temporarily_displaying_subtitles = False

    # ------------------------------------------------------------------
    # The pass
    # ------------------------------------------------------------------

    def make_monitoring_pass(self, from_notification: bool = False) -> None:
        """Evaluate one position sample.

        Args:
            from_notification: True when triggered by a real-time "playing"
                notification instead of the polling loop. Such passes never
                count down the cooldown.
        """
        saved = dataclasses.replace(self._state)
        try:
            self._evaluate(from_notification)
        except Exception as e:
            self._state = saved
            logger.error(
                "%s: Error in monitoring pass: %s",
                self._session.device_name,
                e,
                exc_info=True,
            )

    def _evaluate(self, from_notification: bool) -> None:
        session = self._session
        state = self._state
        position = session.position_seconds
        resolution = self.resolution()

        logger.debug(
            "%s: Position: %s | Latest: %s | Prev: %s | UserEnabledSubs: %s | Cooldown: %d",
            session.device_name,
            position,
            state.latest_watched_position,
            state.previous_position,
            state.subtitles_user_enabled,
            state.cooldown_cycles_left,
        )

        if state.subtitles_user_enabled:
            self._track_baseline(position)
            if not session.has_active_subtitles():
                state.subtitles_user_enabled = False
                logger.info(
                    "%s: Subtitles were turned off, resuming automatic control",
                    session.device_name,
                )
        elif (
            not state.temporarily_displaying_subtitles
            and session.known_subtitle_state is SubtitleState.ON
        ):
            state.subtitles_user_enabled = True
            # Manual control supersedes any pending cooldown
            state.cooldown_cycles_left = 0
            state.latest_watched_position = position
            logger.info("%s: User appears to have enabled subtitles manually", session.device_name)
        elif state.temporarily_displaying_subtitles:
            self._check_while_displaying(position, resolution)
        elif state.cooldown_cycles_left > 0:
            self._check_during_cooldown(position, resolution, from_notification)
        else:
            self._check_idle(position)

        state.previous_position = position

    def _check_while_displaying(self, position: float, resolution: float) -> None:
        session = self._session
        state = self._state

        if position > state.previous_position + self.fast_forward_threshold(resolution):
            logger.info(
                "%s: Stopping subtitles for %s - user fast forwarded",
                session.device_name,
                session.media_title,
            )
            state.latest_watched_position = position
            self.stop_subtitles_if_not_user_enabled()

        elif position < state.latest_watched_position - self._max_rewind:
            cooldown = self._cooldown_count if session.has_accurate_time else COARSE_COOLDOWN_CYCLES
            logger.info(
                "%s: Stopping subtitles for %s - user rewound too far, cooldown for %d cycles",
                session.device_name,
                session.media_title,
                cooldown,
            )
            state.latest_watched_position = position
            self.stop_subtitles_if_not_user_enabled()
            state.cooldown_cycles_left = cooldown
            state.cooldown_to_use = cooldown

        # >= : landing exactly one resolution past the baseline counts as caught up
        elif position >= state.latest_watched_position + resolution:
            logger.info(
                "%s: Reached original position %s for %s",
                session.device_name,
                format_position(state.latest_watched_position),
                session.media_title,
            )
            state.latest_watched_position = position
            self.stop_subtitles_if_not_user_enabled()

    def _check_during_cooldown(
        self, position: float, resolution: float, from_notification: bool
    ) -> None:
        session = self._session
        state = self._state

        if position > state.previous_position + self.fast_forward_threshold(resolution):
            logger.info("%s: Fast forward during cooldown, cancelling cooldown", session.device_name)
            state.cooldown_cycles_left = 0
            state.latest_watched_position = position
        elif self._is_rewind(position):
            # Still rewinding, this cycle doesn't count
            state.cooldown_cycles_left = state.cooldown_to_use
            logger.info(
                "%s: Rewind ignored due to cooldown, resetting cooldown to %d cycles",
                session.device_name,
                state.cooldown_cycles_left,
            )
        elif not from_notification:
            state.cooldown_cycles_left -= 1
            logger.debug(
                "%s: Cooldown cycles left: %d", session.device_name, state.cooldown_cycles_left
            )

    def _check_idle(self, position: float) -> None:
        session = self._session
        state = self._state

        if self._is_rewind(position):
            logger.info(
                "%s: Rewind occurred for %s - will stop subtitles at %s",
                session.device_name,
                session.media_title,
                format_position(state.latest_watched_position),
            )
            session.enable_subtitles()
            state.temporarily_displaying_subtitles = True
        else:
            self._track_baseline(position)

    def _is_rewind(self, position: float) -> bool:
        latest = self._state.latest_watched_position
        return latest - self._max_rewind <= position < latest - REWIND_THRESHOLD

    def _track_baseline(self, position: float) -> None:
        if self._state.cooldown_cycles_left > 0:
            return
        self._state.latest_watched_position = position

    def __repr__(self) -> str:
        return (
            f"RewindMonitor(playback_id={self.playback_id!r}, "
            f"latest={self._state.latest_watched_position}, "
            f"displaying={self._state.temporarily_displaying_subtitles}, "
            f"user_enabled={self._state.subtitles_user_enabled}, "
            f"cooldown={self._state.cooldown_cycles_left})"
        )
