"""Shared fixtures for unit tests."""

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from rewindsubs.domain.entities import PlayerInfo, PlayerState, SessionSnapshot, SubtitleStream
from rewindsubs.domain.ports import CommandResult, IMediaServerClient


@pytest.fixture
def player() -> PlayerInfo:
    return PlayerInfo(
        title="Living Room TV",
        machine_identifier="machine-1",
        address="192.168.1.50",
        state=PlayerState.PLAYING,
    )


@pytest.fixture
def make_snapshot(player: PlayerInfo) -> Callable[..., SessionSnapshot]:
    """Factory for snapshots; position given in SECONDS for readability."""

    def _make(position: float | None = 100.0, **overrides: Any) -> SessionSnapshot:
        values: dict[str, Any] = {
            "key": "/library/metadata/20884",
            "playback_id": "playback-1",
            "player": player,
            "position_ms": None if position is None else int(position * 1000),
            "title": "The One With The Rewind",
            "grandparent_title": "Friends",
            "media_type": "episode",
        }
        values.update(overrides)
        return SessionSnapshot(**values)

    return _make


@pytest.fixture
def subtitle_streams() -> list[SubtitleStream]:
    return [
        SubtitleStream(id=101, index=3, extended_display_title="English SDH (SRT External)"),
        SubtitleStream(id=102, index=4, extended_display_title="English (SRT External)"),
        SubtitleStream(id=103, index=5, extended_display_title="Deutsch (PGS)"),
    ]


@pytest.fixture
def mock_client() -> AsyncMock:
    """Media server client that succeeds at everything and reports no sessions."""
    client = AsyncMock(spec=IMediaServerClient)
    client.fetch_sessions.return_value = []
    client.fetch_available_subtitles.return_value = []
    client.fetch_fine_grained_status.return_value = None
    client.set_subtitle_stream.return_value = CommandResult.ok()
    return client
