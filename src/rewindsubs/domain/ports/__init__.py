"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from rewindsubs.domain.entities.session_snapshot import (
    FineGrainedStatus,
    PlayerInfo,
    SessionSnapshot,
    SubtitleStream,
)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a command sent to a player."""

    success: bool
    message: str = ""

    @classmethod
    def ok(cls) -> "CommandResult":
        return cls(success=True)

    @classmethod
    def failed(cls, message: str) -> "CommandResult":
        return cls(success=False, message=message)


# Hey future me, IMediaServerClient is a PORT (Hexagonal Architecture)! The registry and the
# ActiveSession only ever talk to this interface; PlexClient in infrastructure/integrations is the
# real implementation. Tests use AsyncMock(spec=IMediaServerClient). If you change this interface,
# ALL implementations must change too!
class IMediaServerClient(ABC):
    """Port for the media server transport."""

    @abstractmethod
    async def fetch_sessions(self, timeout: float | None = None) -> list[SessionSnapshot]:
        """Fetch all current playback sessions.

        Returns:
            Sessions currently playing (empty list = nobody is watching)

        Raises:
            SessionFetchError: If the list could not be fetched or parsed
        """
        pass

    @abstractmethod
    async def fetch_available_subtitles(self, media_key: str) -> list[SubtitleStream]:
        """Fetch ALL subtitle streams of a media item, including inactive ones.

        The session list only carries the selected stream, hence this separate
        metadata query - done once per newly discovered session.

        Raises:
            MetadataFetchError: If the metadata could not be fetched or parsed
        """
        pass

    @abstractmethod
    async def fetch_fine_grained_status(self, player: PlayerInfo) -> FineGrainedStatus | None:
        """Fetch high-accuracy position and subtitle state from the player's timeline.

        Best effort: returns None when the player doesn't answer. Never raises
        for transport problems.
        """
        pass

    @abstractmethod
    async def set_subtitle_stream(
        self, player: PlayerInfo, stream_id: int | None
    ) -> CommandResult:
        """Select a subtitle stream on the player. stream_id None or 0 disables subtitles."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


__all__ = ["CommandResult", "IMediaServerClient"]
