"""ActiveSession entity - one tracked playback session and what we know about it.

Hey future me - this is the stateful wrapper around the latest SessionSnapshot.
The registry creates one per playback id and keeps calling apply_updated_data()
with fresh snapshots; the RewindMonitor reads position/subtitle state from it
and asks it to enable/disable subtitles. All mutation goes through the narrow
methods below - there are NO public setters, so invariants hold:

- preferred_subtitle is computed ONCE from the available streams at creation
- available_subtitles are fetched ONCE per media item (never on refresh)
- known_subtitle_state only flips to OFF after a CONFIRMED disable

Subtitle commands are fire-and-forget: enable/disable schedule a task on the
running loop and return immediately, so a slow player can never stall a
monitoring pass.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Coroutine, Sequence
from typing import TYPE_CHECKING, Any

from rewindsubs.domain.entities.session_snapshot import (
    FineGrainedStatus,
    PlayerInfo,
    PlayerState,
    SessionSnapshot,
    SubtitleState,
    SubtitleStream,
)
from rewindsubs.domain.exceptions import CommandDispatchError, InvalidSessionDataError
from rewindsubs.domain.value_objects import SubtitlePreference

if TYPE_CHECKING:
    from rewindsubs.domain.ports import IMediaServerClient

logger = logging.getLogger(__name__)

# Coarse view offsets from the session list are only updated every few seconds
# by some players (iPhone reports in ~5s steps).
DEFAULT_SMALLEST_RESOLUTION = 5
ACCURATE_TIMELINE_RESOLUTION = 1


class ActiveSession:
    """A playback session being monitored for rewinds."""

    def __init__(
        self,
        snapshot: SessionSnapshot,
        available_subtitles: Sequence[SubtitleStream],
        client: "IMediaServerClient",
        preference: SubtitlePreference | None = None,
        fine_grained: FineGrainedStatus | None = None,
    ) -> None:
        self._snapshot = snapshot
        self._available_subtitles: tuple[SubtitleStream, ...] = tuple(available_subtitles)
        self._client = client
        self._preferred_subtitle = (preference or SubtitlePreference()).select(
            self._available_subtitles
        )
        self._accurate_time_ms: int | None = None
        self._known_subtitle_state = SubtitleState.UNKNOWN
        self._missing_since: float | None = None
        self._pending_commands: set[asyncio.Task[None]] = set()

        self._apply_fine_grained(fine_grained)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def playback_id(self) -> str:
        return self._snapshot.playback_id

    @property
    def machine_id(self) -> str:
        return self._snapshot.machine_id

    @property
    def device_name(self) -> str:
        return self._snapshot.device_name

    @property
    def media_title(self) -> str:
        return self._snapshot.media_title

    @property
    def player(self) -> PlayerInfo:
        return self._snapshot.player

    @property
    def available_subtitles(self) -> tuple[SubtitleStream, ...]:
        return self._available_subtitles

    @property
    def preferred_subtitle(self) -> SubtitleStream | None:
        return self._preferred_subtitle

    @property
    def accurate_time_ms(self) -> int | None:
        return self._accurate_time_ms

    @property
    def has_accurate_time(self) -> bool:
        return self._accurate_time_ms is not None

    @property
    def known_subtitle_state(self) -> SubtitleState:
        return self._known_subtitle_state

    @property
    def missing_since(self) -> float | None:
        return self._missing_since

    @property
    def pending_commands(self) -> frozenset[asyncio.Task[None]]:
        return frozenset(self._pending_commands)

    @property
    def smallest_resolution_expected(self) -> int:
        """Smallest position change (seconds) the data source can be trusted to report."""
        if self._accurate_time_ms is not None:
            return ACCURATE_TIMELINE_RESOLUTION
        return DEFAULT_SMALLEST_RESOLUTION

    @property
    def is_playing(self) -> bool:
        return self._snapshot.player.state in (PlayerState.PLAYING, PlayerState.BUFFERING)

    @property
    def position_seconds(self) -> float:
        """Current play position in seconds, preferring the fine-grained timeline time.

        Raises:
            InvalidSessionDataError: If no usable position is available
        """
        if self._accurate_time_ms is not None:
            position_ms = self._accurate_time_ms
        else:
            position_ms = self._snapshot.position_ms

        if position_ms is None or position_ms < 0:
            raise InvalidSessionDataError(self.playback_id, f"position is {position_ms!r}")

        return round(position_ms / 1000, 2)

    def has_active_subtitles(self) -> bool:
        """Whether subtitles are showing - known state if we have it, else inferred."""
        if self._known_subtitle_state is SubtitleState.ON:
            return True
        if self._known_subtitle_state is SubtitleState.OFF:
            return False
        return self._snapshot.selected_subtitle_stream_id > 0

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply_updated_data(
        self, snapshot: SessionSnapshot, fine_grained: FineGrainedStatus | None = None
    ) -> "ActiveSession":
        """Swap in a freshly fetched snapshot for the same playback.

        Available/preferred subtitles are deliberately left alone.
        """
        if snapshot.playback_id != self.playback_id:
            raise ValueError(
                f"Snapshot for playback {snapshot.playback_id} applied to session {self.playback_id}"
            )

        self._snapshot = snapshot
        self._missing_since = None
        self._apply_fine_grained(fine_grained)
        return self

    def apply_notification_position(self, view_offset_ms: int | None) -> None:
        """Update the position from a real-time "playing" notification."""
        if view_offset_ms is None:
            logger.warning(
                "%s: View offset from playing notification is missing, cannot update",
                self.device_name,
            )
            return

        if self._accurate_time_ms is not None:
            self._accurate_time_ms = view_offset_ms
        self._snapshot = dataclasses.replace(self._snapshot, position_ms=view_offset_ms)

    def mark_missing(self, now: float) -> float:
        """Record when the session was first missing from a fetch. Returns that time."""
        if self._missing_since is None:
            self._missing_since = now
        return self._missing_since

    def missing_for(self, now: float) -> float:
        """Seconds the session has been missing (0 while present)."""
        if self._missing_since is None:
            return 0.0
        return now - self._missing_since

    def _apply_fine_grained(self, fine_grained: FineGrainedStatus | None) -> None:
        if fine_grained is None:
            self._accurate_time_ms = None
            self._known_subtitle_state = SubtitleState.UNKNOWN
            return

        self._accurate_time_ms = fine_grained.position_ms
        self._known_subtitle_state = SubtitleState.from_flag(fine_grained.subtitles_on)

    # ------------------------------------------------------------------
    # Commands (fire-and-forget)
    # ------------------------------------------------------------------

    def enable_subtitles(self) -> asyncio.Task[None] | None:
        """Turn on the preferred subtitle stream (or the first available one).

        Success is NOT confirmed here - the next poll's state detection corrects
        any mismatch.
        """
        if not self._available_subtitles:
            logger.info(
                "%s: No subtitle streams available for %s, can't enable subtitles",
                self.device_name,
                self.media_title,
            )
            return None

        stream = self._preferred_subtitle or self._available_subtitles[0]
        return self._dispatch(self._send_enable(stream))

    def disable_subtitles(self) -> asyncio.Task[None] | None:
        """Turn subtitles off. The known state becomes OFF only on confirmed success."""
        return self._dispatch(self._send_disable())

    async def _send_enable(self, stream: SubtitleStream) -> None:
        try:
            await self._set_stream(stream.id)
        except CommandDispatchError as e:
            logger.warning("%s: Enabling subtitles failed: %s", self.device_name, e.message)
            return
        except Exception as e:
            logger.exception("%s: Enabling subtitles failed: %s", self.device_name, e)
            return

        logger.debug(
            "%s: Enabled subtitle stream %s (%s)",
            self.device_name,
            stream.id,
            stream.display_name,
        )

    async def _send_disable(self) -> None:
        try:
            await self._set_stream(None)
        except CommandDispatchError as e:
            logger.warning("%s: Disabling subtitles failed: %s", self.device_name, e.message)
            return
        except Exception as e:
            logger.exception("%s: Disabling subtitles failed: %s", self.device_name, e)
            return

        self._known_subtitle_state = SubtitleState.OFF

    async def _set_stream(self, stream_id: int | None) -> None:
        result = await self._client.set_subtitle_stream(self.player, stream_id)
        if not result.success:
            raise CommandDispatchError(self.machine_id, result.message or "rejected by player")

    def _dispatch(self, command: Coroutine[Any, Any, None]) -> asyncio.Task[None] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            command.close()
            logger.error("%s: No running event loop, dropping subtitle command", self.device_name)
            return None

        # Keep a reference until done, otherwise the task can be garbage collected mid-flight
        task = loop.create_task(command)
        self._pending_commands.add(task)
        task.add_done_callback(self._pending_commands.discard)
        return task

    def __repr__(self) -> str:
        return (
            f"ActiveSession(playback_id={self.playback_id!r}, device={self.device_name!r}, "
            f"media={self.media_title!r})"
        )
