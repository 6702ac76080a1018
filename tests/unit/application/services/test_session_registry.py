"""Tests for SessionRegistry reconciliation."""

import logging
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from rewindsubs.application.services.session_registry import (
    FETCH_FAILURE_ESCALATION,
    SessionRegistry,
)
from rewindsubs.domain.entities import (
    FineGrainedStatus,
    PlayerInfo,
    PlayerState,
    SessionSnapshot,
    SubtitleStream,
)
from rewindsubs.domain.exceptions import MetadataFetchError, SessionFetchError


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(mock_client: AsyncMock, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(
        mock_client,
        active_frequency=1,
        max_rewind=60,
        cooldown_count=5,
        subtitle_preference_patterns=["english", "-sdh"],
        missing_grace_period=60,
        clock=clock,
    )


class TestSessionCreation:
    """Test discovering new sessions."""

    async def test_new_session_gets_entity_and_monitor(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        subtitle_streams: list[SubtitleStream],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        mock_client.fetch_available_subtitles.return_value = subtitle_streams

        assert await registry.refresh() is True

        assert registry.get_tracked_session_ids() == ["playback-1"]
        session = registry.get_session("playback-1")
        monitor = registry.get_monitor("playback-1")
        assert session is not None
        assert monitor is not None
        assert monitor.session is session
        assert monitor.latest_watched_position == 100
        assert session.preferred_subtitle is not None
        assert session.preferred_subtitle.id == 102
        mock_client.fetch_available_subtitles.assert_awaited_once_with("/library/metadata/20884")

    async def test_fine_grained_status_applied_on_creation(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        mock_client.fetch_fine_grained_status.return_value = FineGrainedStatus(position_ms=101_500)

        await registry.refresh()

        session = registry.get_session("playback-1")
        assert session is not None
        assert session.position_seconds == 101.5

    async def test_metadata_failure_still_creates_session(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        mock_client.fetch_available_subtitles.side_effect = MetadataFetchError(
            "/library/metadata/20884", "HTTP 500", http_status=500
        )

        await registry.refresh()

        session = registry.get_session("playback-1")
        assert session is not None
        assert session.available_subtitles == ()

    async def test_duplicate_snapshot_creates_once(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(), make_snapshot()]

        await registry.refresh()

        assert registry.get_tracked_session_ids() == ["playback-1"]
        assert registry.get_stats()["sessions_created"] == 1

    async def test_one_broken_session_does_not_block_others(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        bad_player = PlayerInfo(title="Bad", machine_identifier="bad", state=PlayerState.PLAYING)

        async def fine_grained(player: PlayerInfo) -> FineGrainedStatus | None:
            if player.machine_identifier == "bad":
                raise RuntimeError("boom")
            return None

        mock_client.fetch_fine_grained_status.side_effect = fine_grained
        mock_client.fetch_sessions.return_value = [
            make_snapshot(playback_id="bad-1", player=bad_player),
            make_snapshot(playback_id="good-1"),
        ]

        assert await registry.refresh() is True

        assert registry.get_tracked_session_ids() == ["good-1"]


class TestSessionUpdate:
    """Test refreshing known sessions."""

    async def test_known_session_updated_in_place(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        await registry.refresh()
        session = registry.get_session("playback-1")
        monitor = registry.get_monitor("playback-1")

        mock_client.fetch_sessions.return_value = [make_snapshot(position=105)]
        await registry.refresh()

        assert registry.get_session("playback-1") is session
        assert registry.get_monitor("playback-1") is monitor
        assert session is not None
        assert session.position_seconds == 105
        mock_client.fetch_available_subtitles.assert_awaited_once()

    async def test_new_playback_id_creates_new_session(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(playback_id="episode-1")]
        await registry.refresh()

        mock_client.fetch_sessions.return_value = [make_snapshot(playback_id="episode-2")]
        await registry.refresh()

        assert set(registry.get_tracked_session_ids()) == {"episode-1", "episode-2"}


class TestGracePeriod:
    """Test removal of vanished sessions."""

    async def test_absent_within_grace_period_keeps_state(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        clock: FakeClock,
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        await registry.refresh()
        monitor = registry.get_monitor("playback-1")
        assert monitor is not None

        mock_client.fetch_sessions.return_value = []
        for now in (10, 20, 30, 40, 50, 60):
            clock.now = now
            await registry.refresh()

        assert registry.get_monitor("playback-1") is monitor
        assert monitor.is_monitoring is True
        assert monitor.latest_watched_position == 100

    async def test_reappearing_session_is_not_recreated(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        clock: FakeClock,
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        await registry.refresh()
        monitor = registry.get_monitor("playback-1")

        mock_client.fetch_sessions.return_value = []
        clock.now = 10
        await registry.refresh()

        mock_client.fetch_sessions.return_value = [make_snapshot(position=101)]
        clock.now = 20
        await registry.refresh()

        assert registry.get_monitor("playback-1") is monitor
        session = registry.get_session("playback-1")
        assert session is not None
        assert session.missing_since is None
        assert registry.get_stats()["sessions_created"] == 1

    async def test_removed_exactly_once_after_grace_period(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        clock: FakeClock,
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        await registry.refresh()
        monitor = registry.get_monitor("playback-1")
        assert monitor is not None

        mock_client.fetch_sessions.return_value = []
        clock.now = 10
        await registry.refresh()
        clock.now = 71
        await registry.refresh()

        assert registry.get_tracked_session_ids() == []
        assert monitor.is_monitoring is False

        clock.now = 80
        await registry.refresh()
        await registry.remove_all()

        assert registry.get_stats()["sessions_removed"] == 1


class TestFetchFailures:
    """Test behaviour when the session list can't be fetched."""

    async def test_fetch_error_keeps_state(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        clock: FakeClock,
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        await registry.refresh()

        mock_client.fetch_sessions.side_effect = SessionFetchError("timed out")
        for now in (10, 100, 200):
            clock.now = now
            assert await registry.refresh() is False

        session = registry.get_session("playback-1")
        assert session is not None
        assert session.missing_since is None
        assert registry.get_stats()["fetch_failures"] == 3

    async def test_repeated_failures_escalate_to_error(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        mock_client.fetch_sessions.side_effect = SessionFetchError("connection refused")

        with caplog.at_level(logging.WARNING):
            for _ in range(FETCH_FAILURE_ESCALATION):
                await registry.refresh()

        levels = [record.levelno for record in caplog.records]
        assert levels.count(logging.WARNING) == FETCH_FAILURE_ESCALATION - 1
        assert levels.count(logging.ERROR) == 1

    async def test_success_resets_failure_streak(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
    ) -> None:
        mock_client.fetch_sessions.side_effect = SessionFetchError("connection refused")
        await registry.refresh()
        await registry.refresh()

        mock_client.fetch_sessions.side_effect = None
        mock_client.fetch_sessions.return_value = []
        await registry.refresh()

        assert registry.get_stats()["consecutive_fetch_failures"] == 0


class TestLookupsAndTeardown:
    """Test lookups and shutdown."""

    async def test_find_by_machine_id(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        await registry.refresh()

        match = registry.find_by_machine_id("machine-1")

        assert match is not None
        session, monitor = match
        assert session.playback_id == "playback-1"
        assert monitor.playback_id == "playback-1"
        assert registry.find_by_machine_id("someone-else") is None

    async def test_episode_change_routes_player_to_new_session(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        clock: FakeClock,
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot(position=600, playback_id="ep-1")]
        await registry.refresh()

        mock_client.fetch_sessions.return_value = [
            make_snapshot(position=590, playback_id="ep-2", key="/library/metadata/20885")
        ]
        clock.now = 1
        await registry.refresh()

        # ep-1 lingers within the grace period but is no longer live
        assert set(registry.get_tracked_session_ids()) == {"ep-1", "ep-2"}
        match = registry.find_by_machine_id("machine-1")
        assert match is not None
        assert match[0].playback_id == "ep-2"
        assert [monitor.playback_id for monitor in registry.get_live_monitors()] == ["ep-2"]

    async def test_player_with_only_missing_sessions_is_not_found(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        await registry.refresh()

        mock_client.fetch_sessions.return_value = []
        await registry.refresh()

        assert registry.find_by_machine_id("machine-1") is None
        assert registry.get_live_monitors() == []

    async def test_min_resolution_reaches_monitors(
        self,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        registry = SessionRegistry(mock_client, active_frequency=1, min_resolution=8)
        mock_client.fetch_sessions.return_value = [make_snapshot()]

        await registry.refresh()

        monitor = registry.get_monitor("playback-1")
        assert monitor is not None
        assert monitor.resolution() == 8

    async def test_remove_all_stops_every_monitor(
        self,
        registry: SessionRegistry,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [
            make_snapshot(playback_id="a"),
            make_snapshot(playback_id="b"),
        ]
        await registry.refresh()
        monitors = registry.get_monitors()

        await registry.remove_all()

        assert registry.get_tracked_session_ids() == []
        assert all(not monitor.is_monitoring for monitor in monitors)
