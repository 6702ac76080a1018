"""Tests for SessionMonitorWorker."""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest
from pytest_mock import MockerFixture

from rewindsubs.application.services.session_registry import SessionRegistry
from rewindsubs.application.workers.session_monitor_worker import (
    SessionMonitorWorker,
    create_session_monitor_worker,
)
from rewindsubs.config.settings import MonitorSettings, Settings
from rewindsubs.domain.entities import (
    PlayerInfo,
    PlayerState,
    PlayingNotification,
    SessionSnapshot,
    SubtitleStream,
)
from rewindsubs.domain.exceptions import SessionFetchError
from rewindsubs.infrastructure.observability.logging import get_correlation_id

# Hey future me - the worker is tested against a REAL SessionRegistry with a mocked client,
# so these exercise the full cycle: fetch -> reconcile -> passes -> interval choice.


@pytest.fixture
def registry(mock_client: AsyncMock) -> SessionRegistry:
    return SessionRegistry(mock_client, active_frequency=1, max_rewind=60, cooldown_count=5)


@pytest.fixture
def worker(registry: SessionRegistry) -> SessionMonitorWorker:
    return SessionMonitorWorker(
        registry,
        active_frequency=0.01,
        idle_frequency=0.05,
        active_timeout=0.009,
        health_log_interval_cycles=2,
    )


class TestRunCycle:
    """Test a single monitor cycle."""

    async def test_idle_when_nothing_plays(
        self, worker: SessionMonitorWorker, mock_client: AsyncMock
    ) -> None:
        assert await worker.run_cycle() is False
        assert worker.current_interval() == 0.05

    async def test_active_while_a_session_plays(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]

        assert await worker.run_cycle() is True
        assert worker.current_interval() == 0.01
        assert worker.get_tracked_session_ids() == ["playback-1"]

    async def test_paused_session_is_idle(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        paused = PlayerInfo(title="TV", machine_identifier="machine-1", state=PlayerState.PAUSED)
        mock_client.fetch_sessions.return_value = [make_snapshot(player=paused)]

        assert await worker.run_cycle() is False

    async def test_active_timeout_only_after_active_cycle(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]

        await worker.run_cycle()
        await worker.run_cycle()

        timeouts = [call.kwargs["timeout"] for call in mock_client.fetch_sessions.await_args_list]
        assert timeouts == [None, 0.009]

    async def test_rewind_between_cycles_enables_subtitles(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        subtitle_streams: list[SubtitleStream],
    ) -> None:
        mock_client.fetch_available_subtitles.return_value = subtitle_streams
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        await worker.run_cycle()

        mock_client.fetch_sessions.return_value = [make_snapshot(position=80)]
        await worker.run_cycle()
        await asyncio.sleep(0)

        mock_client.set_subtitle_stream.assert_awaited_once()
        monitor = worker.registry.get_monitor("playback-1")
        assert monitor is not None
        assert monitor.temporarily_displaying_subtitles is True

    async def test_fetch_failure_skips_passes(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        mocker: MockerFixture,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        await worker.run_cycle()
        monitor = worker.registry.get_monitor("playback-1")
        assert monitor is not None
        pass_spy = mocker.spy(monitor, "make_monitoring_pass")

        mock_client.fetch_sessions.side_effect = SessionFetchError("timed out")
        assert await worker.run_cycle() is True

        pass_spy.assert_not_called()

    async def test_vanished_session_drops_to_idle_cadence(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        mocker: MockerFixture,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        assert await worker.run_cycle() is True
        monitor = worker.registry.get_monitor("playback-1")
        assert monitor is not None
        pass_spy = mocker.spy(monitor, "make_monitoring_pass")

        mock_client.fetch_sessions.return_value = []

        assert await worker.run_cycle() is False
        assert worker.current_interval() == 0.05
        # still tracked within the grace period, but its frozen snapshot isn't evaluated
        assert worker.get_tracked_session_ids() == ["playback-1"]
        pass_spy.assert_not_called()

    async def test_each_cycle_gets_new_correlation_id(self, worker: SessionMonitorWorker) -> None:
        await worker.run_cycle()
        first = get_correlation_id()
        await worker.run_cycle()

        assert first
        assert get_correlation_id() != first


class TestNotifications:
    """Test routing of real-time playing notifications."""

    async def test_untracked_player_ignored(self, worker: SessionMonitorWorker) -> None:
        notification = PlayingNotification(session_key="1", client_identifier="nobody")

        assert await worker.handle_playing_notification(notification) is False

    async def test_notification_updates_position_and_runs_pass(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        subtitle_streams: list[SubtitleStream],
    ) -> None:
        mock_client.fetch_available_subtitles.return_value = subtitle_streams
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100)]
        await worker.run_cycle()

        handled = await worker.handle_playing_notification(
            PlayingNotification(
                session_key="1",
                client_identifier="machine-1",
                state="playing",
                view_offset_ms=80_000,
            )
        )
        await asyncio.sleep(0)

        assert handled is True
        monitor = worker.registry.get_monitor("playback-1")
        assert monitor is not None
        assert monitor.temporarily_displaying_subtitles is True
        assert worker.get_status()["notifications_handled"] == 1

    async def test_episode_change_routes_notification_to_new_episode(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
        subtitle_streams: list[SubtitleStream],
    ) -> None:
        mock_client.fetch_available_subtitles.return_value = subtitle_streams
        mock_client.fetch_sessions.return_value = [make_snapshot(position=600, playback_id="ep-1")]
        await worker.run_cycle()
        mock_client.fetch_sessions.return_value = [
            make_snapshot(position=590, playback_id="ep-2", key="/library/metadata/20885")
        ]
        await worker.run_cycle()

        handled = await worker.handle_playing_notification(
            PlayingNotification(
                session_key="2", client_identifier="machine-1", view_offset_ms=580_000
            )
        )
        await asyncio.sleep(0)

        assert handled is True
        old_session = worker.registry.get_session("ep-1")
        new_session = worker.registry.get_session("ep-2")
        old_monitor = worker.registry.get_monitor("ep-1")
        new_monitor = worker.registry.get_monitor("ep-2")
        assert old_session is not None and new_session is not None
        assert old_monitor is not None and new_monitor is not None
        assert new_session.position_seconds == 580
        assert new_monitor.temporarily_displaying_subtitles is True
        assert old_session.position_seconds == 600
        assert old_monitor.temporarily_displaying_subtitles is False

    async def test_notification_waking_idle_worker(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        paused = PlayerInfo(title="TV", machine_identifier="machine-1", state=PlayerState.PAUSED)
        mock_client.fetch_sessions.return_value = [make_snapshot(position=100, player=paused)]
        await worker.run_cycle()
        assert worker.current_interval() == 0.05

        await worker.handle_playing_notification(
            PlayingNotification(session_key="1", client_identifier="machine-1", view_offset_ms=80_000)
        )

        assert worker.current_interval() == 0.01


class TestLifecycle:
    """Test start/stop."""

    async def test_start_and_stop(
        self,
        worker: SessionMonitorWorker,
        mock_client: AsyncMock,
        make_snapshot: Callable[..., SessionSnapshot],
    ) -> None:
        mock_client.fetch_sessions.return_value = [make_snapshot()]
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)

        assert worker.is_running is True
        assert worker.get_status()["cycles_completed"] >= 1

        await worker.stop()
        await asyncio.wait_for(task, timeout=1)

        assert worker.is_running is False
        assert worker.get_tracked_session_ids() == []

    async def test_stop_wakes_idle_sleep(self, worker: SessionMonitorWorker) -> None:
        slow = SessionMonitorWorker(worker.registry, active_frequency=1, idle_frequency=3600)
        task = asyncio.create_task(slow.start())
        await asyncio.sleep(0.01)

        await slow.stop()

        await asyncio.wait_for(task, timeout=1)

    async def test_cycle_error_does_not_kill_loop(self, worker: SessionMonitorWorker) -> None:
        worker.registry.refresh = AsyncMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.15)

        await worker.stop()
        await asyncio.wait_for(task, timeout=1)

        status = worker.get_status()
        assert status["errors_total"] >= 2
        assert status["cycles_completed"] == status["errors_total"]


def test_factory_wires_settings(mock_client: AsyncMock) -> None:
    settings = Settings(
        monitor=MonitorSettings(
            active_frequency=2,
            idle_frequency=20,
            max_rewind=45,
            cooldown_count=3,
            subtitle_preference_patterns=["english"],
            missing_grace_period=30,
        )
    )

    worker = create_session_monitor_worker(settings, mock_client)

    assert isinstance(worker, SessionMonitorWorker)
    assert worker.current_interval() == 20
    assert worker.get_status()["running"] is False
    assert worker.registry.get_tracked_session_ids() == []


async def test_factory_wires_min_resolution(
    mock_client: AsyncMock, make_snapshot: Callable[..., SessionSnapshot]
) -> None:
    settings = Settings(monitor=MonitorSettings(active_frequency=2, min_resolution=6))
    worker = create_session_monitor_worker(settings, mock_client)
    mock_client.fetch_sessions.return_value = [make_snapshot()]

    await worker.run_cycle()

    monitor = worker.registry.get_monitor("playback-1")
    assert monitor is not None
    assert monitor.resolution() == 6


def test_get_status_before_start(worker: SessionMonitorWorker) -> None:
    status = worker.get_status()

    assert status["running"] is False
    assert status["uptime_seconds"] == 0
    assert status["last_cycle_at"] is None
