"""Tests for the YouTube multi-stream reconciliation loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.event_bus import STREAM_DETECTED
from services.youtube.connections import YouTubeConnectionManager
from services.youtube.multistream import DISCONNECT_REASON_ENDED, YouTubeMultiStreamManager


@pytest.fixture
def connections():
    return YouTubeConnectionManager()


@pytest.fixture
def detector():
    """Live-id source the tests reprogram between ticks."""
    return AsyncMock(return_value=[])


@pytest.fixture
def build(connections, detector, clock, recording_bus):
    """Factory for a manager wired to a real connection manager."""

    def _build(**kwargs):
        async def connect(video_id):
            async def factory(_vid):
                return MagicMock()

            await connections.connect_to_stream(video_id, factory)

        async def disconnect(video_id, reason):
            await connections.disconnect_from_stream(video_id, reason)

        options = dict(
            connection_manager=connections,
            get_live_video_ids=detector,
            connect_to_stream=connect,
            disconnect_from_stream=disconnect,
            event_bus=recording_bus,
            full_check_interval_ms=300000,
            now=lambda: clock() * 1000.0,
        )
        options.update(kwargs)
        return YouTubeMultiStreamManager(**options)

    return _build


def _messages(mock_method):
    return [c.args[0] for c in mock_method.call_args_list]


@pytest.mark.asyncio
class TestShortage:
    async def test_shortage_warned_once_then_resolved_once(self, build, detector, clock):
        manager = build(max_streams=5)
        detector.return_value = ["A", "B", "C"]

        with patch("services.youtube.multistream.log") as log:
            await manager.check_multi_stream()
            clock.advance(60)
            await manager.check_multi_stream()

            warnings = [m for m in _messages(log.warning) if "shortage" in m]
            assert len(warnings) == 1
            assert "found 3/5" in warnings[0]

            detector.return_value = ["A", "B", "C", "D", "E"]
            clock.advance(60)
            await manager.check_multi_stream()
            clock.advance(60)
            await manager.check_multi_stream()

            resolved = [m for m in _messages(log.info) if "shortage resolved" in m]
            assert len(resolved) == 1

        assert manager.shortage_state.is_in_shortage is False

    async def test_shortage_warning_repeats_after_full_check_interval(self, build, detector, clock):
        manager = build(max_streams=3)
        detector.return_value = ["A"]

        with patch("services.youtube.multistream.log") as log:
            await manager.check_multi_stream()
            clock.advance(301)
            await manager.check_multi_stream()

            assert len([m for m in _messages(log.warning) if "shortage" in m]) == 2

    async def test_zero_max_streams_disables_truncation(self, build, detector, connections):
        manager = build(max_streams=0)
        detector.return_value = ["A", "B", "C", "D", "E", "F", "G"]

        with patch("services.youtube.multistream.log") as log:
            await manager.check_multi_stream()

            assert not [m for m in _messages(log.warning) if "shortage" in m]

        assert connections.get_all_video_ids() == ["A", "B", "C", "D", "E", "F", "G"]


@pytest.mark.asyncio
class TestReconciliation:
    async def test_connects_new_streams_up_to_max(self, build, detector, connections, recording_bus):
        manager = build(max_streams=2)
        detector.return_value = ["A", "B", "C"]

        await manager.check_multi_stream()

        assert connections.get_all_video_ids() == ["A", "B"]
        event = recording_bus.of(STREAM_DETECTED)[0]
        assert event["newStreamIds"] == ["A", "B"]
        assert event["allStreamIds"] == ["A", "B"]
        assert event["connectionCount"] == 2

    async def test_ended_streams_disconnected(self, build, detector, connections):
        manager = build(max_streams=3)
        detector.return_value = ["A", "B"]
        await manager.check_multi_stream()

        detector.return_value = ["B"]
        await manager.check_multi_stream()

        assert connections.get_all_video_ids() == ["B"]

    async def test_empty_detection_preserves_connections(self, build, detector, connections):
        manager = build(max_streams=3)
        detector.return_value = ["A"]
        await manager.check_multi_stream()

        detector.return_value = []
        await manager.check_multi_stream()

        assert connections.get_all_video_ids() == ["A"]

    async def test_at_capacity_skips_detection_until_full_check(self, build, detector, connections, clock):
        manager = build(max_streams=2)
        detector.return_value = ["A", "B"]
        await manager.check_multi_stream()

        # First capacity tick performs the full check, later ones are skipped
        await manager.check_multi_stream()
        assert detector.await_count == 2
        clock.advance(10)
        await manager.check_multi_stream()
        assert detector.await_count == 2

        detector.return_value = ["B"]
        clock.advance(300)
        await manager.check_multi_stream()

        assert detector.await_count == 3
        assert connections.get_all_video_ids() == ["B"]

    async def test_empty_full_check_at_capacity_keeps_connections(self, build, detector, connections, clock):
        manager = build(max_streams=2)
        detector.return_value = ["A", "B"]
        await manager.check_multi_stream()

        detector.return_value = []
        clock.advance(300)
        await manager.check_multi_stream()

        assert detector.await_count == 2
        assert sorted(connections.get_all_video_ids()) == ["A", "B"]

    async def test_concurrent_ticks_do_not_overlap(self, build, detector, connections):
        gate = asyncio.Event()

        async def slow_detect():
            await gate.wait()
            return ["A"]

        detector.side_effect = slow_detect
        manager = build(max_streams=2)

        first = asyncio.create_task(manager.check_multi_stream())
        await asyncio.sleep(0.01)
        await manager.check_multi_stream()
        gate.set()
        await asyncio.wait_for(first, timeout=1)

        assert detector.await_count == 1
        assert connections.get_all_video_ids() == ["A"]

    async def test_connect_failure_reported(self, build, detector):
        on_error = AsyncMock()
        failing = AsyncMock(side_effect=RuntimeError("no chat"))
        manager = build(max_streams=2, connect_to_stream=failing, on_connection_error=on_error)
        detector.return_value = ["A"]

        await manager.check_multi_stream()

        on_error.assert_awaited_once()
        assert on_error.await_args.args[0] == "A"

    async def test_disconnect_reason(self, detector, connections, clock):
        disconnect = AsyncMock()
        manager = YouTubeMultiStreamManager(
            connection_manager=connections,
            get_live_video_ids=detector,
            connect_to_stream=AsyncMock(),
            disconnect_from_stream=disconnect,
            now=lambda: clock() * 1000.0,
        )

        async def factory(_vid):
            return MagicMock()

        await connections.connect_to_stream("OLD", factory)
        detector.return_value = ["NEW"]

        await manager.check_multi_stream()

        disconnect.assert_awaited_once_with("OLD", DISCONNECT_REASON_ENDED)


@pytest.mark.asyncio
class TestMonitoring:
    async def test_initial_check_error_surfaces(self, build, detector):
        detector.side_effect = RuntimeError("quota exhausted")
        manager = build(poll_interval_s=60)

        with pytest.raises(RuntimeError):
            await manager.start_monitoring()

        await manager.stop_monitoring()
        assert not manager.is_monitoring

    async def test_background_errors_swallowed(self, build, detector):
        detector.side_effect = RuntimeError("boom")
        manager = build()

        await manager.check_multi_stream()

    async def test_start_and_stop(self, build, detector):
        manager = build(poll_interval_s=60)

        await manager.start_monitoring()
        assert manager.is_monitoring

        await manager.stop_monitoring()
        assert not manager.is_monitoring

    async def test_invalid_intervals_rejected(self, build):
        with pytest.raises(ValueError):
            build(poll_interval_s=0)
        with pytest.raises(RuntimeError):
            build(connection_manager=None)
