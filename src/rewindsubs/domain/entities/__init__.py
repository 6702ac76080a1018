"""Domain entities."""

from rewindsubs.domain.entities.session_snapshot import (
    FineGrainedStatus,
    PlayerInfo,
    PlayerState,
    PlayingNotification,
    SessionSnapshot,
    SubtitleState,
    SubtitleStream,
)
from rewindsubs.domain.entities.active_session import (
    ACCURATE_TIMELINE_RESOLUTION,
    DEFAULT_SMALLEST_RESOLUTION,
    ActiveSession,
)

__all__ = [
    "ACCURATE_TIMELINE_RESOLUTION",
    "DEFAULT_SMALLEST_RESOLUTION",
    "ActiveSession",
    "FineGrainedStatus",
    "PlayerInfo",
    "PlayerState",
    "PlayingNotification",
    "SessionSnapshot",
    "SubtitleState",
    "SubtitleStream",
]
