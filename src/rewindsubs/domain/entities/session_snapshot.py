"""Immutable per-fetch data about playback sessions.

Hey future me - everything in here is FROZEN on purpose. A SessionSnapshot is
one point-in-time read of what the server reports; on every fetch we build a
brand new one and hand it to the ActiveSession, which swaps it in wholesale.
If you find yourself wanting to mutate a snapshot, you want ActiveSession.
"""

from dataclasses import dataclass
from enum import Enum


class SubtitleState(str, Enum):
    """What we KNOW about subtitles being shown on a player.

    UNKNOWN means there was no fine-grained timeline data - callers then have to
    fall back to inferring it from the session list (ActiveSession.has_active_subtitles).
    """

    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"

    @classmethod
    def from_flag(cls, flag: bool | None) -> "SubtitleState":
        if flag is None:
            return cls.UNKNOWN
        return cls.ON if flag else cls.OFF


class PlayerState(str, Enum):
    """Playback state reported for a player."""

    PLAYING = "playing"
    PAUSED = "paused"
    BUFFERING = "buffering"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "PlayerState":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class SubtitleStream:
    """One subtitle track of a media item (Plex streamType=3)."""

    id: int
    index: int = 0
    extended_display_title: str = ""
    language: str = ""
    selected: bool = False
    format: str = ""
    title: str = ""
    location: str = ""
    is_external: bool = False

    @property
    def display_name(self) -> str:
        return self.extended_display_title or self.title or self.language or str(self.id)


@dataclass(frozen=True)
class PlayerInfo:
    """The device a session is playing on."""

    title: str
    machine_identifier: str
    address: str = ""
    port: int = 32500
    state: PlayerState = PlayerState.UNKNOWN
    product: str = ""
    platform: str = ""

    @property
    def direct_url(self) -> str:
        """Base URL for talking to the player directly instead of via the server."""
        return f"http://{self.address}:{self.port}"


@dataclass(frozen=True)
class FineGrainedStatus:
    """Result of the high-accuracy timeline query for one player.

    position_ms is None when the timeline didn't carry a time attribute.
    subtitle_stream_id of 0 means no subtitle stream is selected.
    """

    position_ms: int | None
    subtitle_stream_id: int = 0

    @property
    def subtitles_on(self) -> bool:
        return self.subtitle_stream_id > 0


@dataclass(frozen=True)
class SessionSnapshot:
    """One playback session as reported by the server's session list.

    Attributes:
        key: Media metadata key, e.g. "/library/metadata/20884"
        playback_id: Stable while the same media keeps playing, changes on
            episode/media change. THE identity used by the registry.
        position_ms: Coarse view offset (milliseconds)
        selected_subtitle_stream_id: 0 when no subtitle stream is selected
    """

    key: str
    playback_id: str
    player: PlayerInfo
    position_ms: int | None = 0
    selected_subtitle_stream_id: int = 0
    rating_key: str = ""
    session_key: str = ""
    title: str = ""
    grandparent_title: str = ""
    media_type: str = ""

    @property
    def media_title(self) -> str:
        """Show name for episodes, title for everything else."""
        return self.grandparent_title or self.title

    @property
    def machine_id(self) -> str:
        return self.player.machine_identifier

    @property
    def device_name(self) -> str:
        return self.player.title


@dataclass(frozen=True)
class PlayingNotification:
    """A real-time "playing" event pushed by the server.

    Only carries what we route on (client_identifier -> tracked session) and
    the fresh position. state is the raw server string ("playing", "paused", ...).
    """

    session_key: str
    client_identifier: str
    state: str = ""
    view_offset_ms: int | None = None
    rating_key: str = ""
    key: str = ""

    @property
    def player_state(self) -> PlayerState:
        return PlayerState.parse(self.state)
