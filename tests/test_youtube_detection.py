"""Tests for YouTube live video detection."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.youtube.detection import (
    StreamDetectionError,
    YouTubeStreamDetectionService,
    is_valid_video_id,
)


@pytest.fixture
def api():
    """Livestream API double resolving every handle to one channel."""
    api = MagicMock()
    api.resolve_channel_id = AsyncMock(return_value="UC123")
    api.list_live_video_ids = AsyncMock(return_value=["vid1", "vid2"])
    return api


@pytest.fixture
def service(api, clock):
    return YouTubeStreamDetectionService(api=api, max_failures=2, cooldown_s=30, clock=clock)


@pytest.mark.asyncio
class TestLiveVideoIds:
    async def test_returns_ids_in_api_order(self, service, api):
        assert await service.get_live_video_ids("@channel") == ["vid1", "vid2"]

        api.resolve_channel_id.assert_awaited_once_with("@channel")
        api.list_live_video_ids.assert_awaited_once_with("UC123")

    async def test_nothing_live_is_empty_list(self, service, api):
        api.list_live_video_ids.return_value = []

        assert await service.get_live_video_ids("@channel") == []

    async def test_lookup_failure_raises(self, service, api):
        api.list_live_video_ids.return_value = None

        with pytest.raises(StreamDetectionError):
            await service.get_live_video_ids("@channel")

    async def test_unresolved_channel_raises(self, service, api):
        api.resolve_channel_id.return_value = None

        with pytest.raises(StreamDetectionError, match="Could not resolve"):
            await service.get_live_video_ids("@ghost")

    async def test_malformed_ids_dropped(self, service, api):
        api.list_live_video_ids.return_value = ["good_id-1", "bad id!", ""]

        assert await service.get_live_video_ids("@channel") == ["good_id-1"]

    async def test_missing_handle_rejected(self, service):
        with pytest.raises(StreamDetectionError):
            await service.get_live_video_ids("")

    async def test_timeout(self, api, clock):
        async def hang(_channel_id):
            await asyncio.sleep(1)

        api.list_live_video_ids = AsyncMock(side_effect=hang)
        service = YouTubeStreamDetectionService(api=api, timeout_ms=10, clock=clock)

        with pytest.raises(StreamDetectionError, match="timed out"):
            await service.get_live_video_ids("@channel")

        assert service.get_usage_metrics()["errors_by_type"] == {"timeout": 1}

    async def test_requires_api(self):
        with pytest.raises(RuntimeError):
            YouTubeStreamDetectionService(api=None)


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_opens_after_consecutive_failures_and_recovers(self, service, api, clock):
        api.list_live_video_ids.return_value = None
        for _ in range(2):
            with pytest.raises(StreamDetectionError):
                await service.get_live_video_ids("@channel")

        assert service.is_circuit_open()

        api.list_live_video_ids.return_value = ["vid1"]
        with pytest.raises(StreamDetectionError, match="Circuit breaker is open"):
            await service.get_live_video_ids("@channel")
        assert api.list_live_video_ids.await_count == 2

        clock.advance(31)

        assert await service.get_live_video_ids("@channel") == ["vid1"]
        assert not service.is_circuit_open()

    async def test_metrics(self, service, api):
        await service.get_live_video_ids("@channel")
        api.list_live_video_ids.return_value = None
        with pytest.raises(StreamDetectionError):
            await service.get_live_video_ids("@channel")

        metrics = service.get_usage_metrics()

        assert metrics["total_requests"] == 2
        assert metrics["successful_requests"] == 1
        assert metrics["failed_requests"] == 1
        assert metrics["error_rate"] == 0.5
        assert metrics["circuit_open"] is False


class TestVideoIdValidation:
    def test_video_ids(self):
        assert is_valid_video_id("dQw4w9WgXcQ")
        assert not is_valid_video_id("has space")
        assert not is_valid_video_id(None)
