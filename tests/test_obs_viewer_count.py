"""Tests for OBS viewer-count output and compact number formatting."""

import re

import pytest

from services.viewer_count.format import format_viewer_count
from services.viewer_count.obs_observer import OBSERVER_ID, OBSViewerCountObserver
from services.viewer_count.system import StreamStatusUpdate, ViewerCountUpdate

FORMAT_PATTERN = re.compile(r"^(0|[1-9]\d{0,2}(\.\d)?[KM]?)$")


@pytest.fixture
def obs_config(make_config):
    return make_config(
        youtube={"enabled": True, "username": "@c", "viewerCountEnabled": True, "viewerCountSource": "yt-viewers"},
        twitch={"enabled": True, "username": "c", "viewerCountEnabled": False, "viewerCountSource": "tw-viewers"},
    )


@pytest.fixture
def observer(fake_obs, obs_config):
    return OBSViewerCountObserver(obs_manager=fake_obs, config_manager=obs_config)


def _update(platform="youtube", count=1234, live=True):
    return ViewerCountUpdate(
        platform=platform, count=count, previous_count=0, is_stream_live=live, timestamp=0.0
    )


@pytest.mark.asyncio
class TestOBSViewerCountObserver:
    async def test_formatted_count_written_to_source(self, observer, fake_obs):
        await observer.on_viewer_count_update(_update(count=1234))

        fake_obs.call.assert_awaited_once_with(
            "SetInputSettings",
            {"inputName": "yt-viewers", "inputSettings": {"text": "1.2K"}, "overlay": True},
        )

    async def test_disabled_platform_skipped(self, observer, fake_obs):
        await observer.on_viewer_count_update(_update(platform="twitch"))

        fake_obs.call.assert_not_awaited()

    async def test_offline_update_skipped(self, observer, fake_obs):
        await observer.on_viewer_count_update(_update(live=False))

        fake_obs.call.assert_not_awaited()

    async def test_going_offline_resets_source(self, observer, fake_obs):
        await observer.on_stream_status_change(
            StreamStatusUpdate(platform="youtube", is_live=False, was_live=True, timestamp=0.0)
        )

        assert fake_obs.call.await_args.args[1]["inputSettings"] == {"text": "0"}

    async def test_disconnected_obs_not_called(self, observer, fake_obs):
        fake_obs.is_connected.return_value = False

        await observer.on_viewer_count_update(_update())

        fake_obs.call.assert_not_awaited()

    async def test_obs_errors_swallowed(self, observer, fake_obs):
        fake_obs.call.side_effect = RuntimeError("source not found")

        await observer.on_viewer_count_update(_update())

    async def test_initialize_zeroes_enabled_sources(self, observer, fake_obs):
        await observer.initialize()

        fake_obs.call.assert_awaited_once()
        assert fake_obs.call.await_args.args[1]["inputName"] == "yt-viewers"

    async def test_requires_collaborators(self, obs_config, fake_obs):
        with pytest.raises(RuntimeError):
            OBSViewerCountObserver(obs_manager=None, config_manager=obs_config)
        with pytest.raises(RuntimeError):
            OBSViewerCountObserver(obs_manager=fake_obs, config_manager=None)

    async def test_observer_id(self, observer):
        assert observer.observer_id == OBSERVER_ID


class TestFormatViewerCount:
    def test_examples(self):
        assert format_viewer_count(0) == "0"
        assert format_viewer_count(999) == "999"
        assert format_viewer_count(1000) == "1K"
        assert format_viewer_count(1250) == "1.3K"
        assert format_viewer_count(9999) == "10K"
        assert format_viewer_count(12_345) == "12K"
        assert format_viewer_count(999_499) == "999K"
        assert format_viewer_count(999_500) == "1M"
        assert format_viewer_count(2_500_000) == "2.5M"
        assert format_viewer_count(10_000_000) == "10M"

    def test_garbage_is_zero(self):
        assert format_viewer_count(None) == "0"
        assert format_viewer_count(-5) == "0"
        assert format_viewer_count("lots") == "0"
        assert format_viewer_count(True) == "0"

    @pytest.mark.parametrize(
        "count, expected",
        [(999_949_999, "999.9M"), (999_950_000, "999.9M"), (10**9, "999.9M"), (12_000_000_000, "999.9M")],
    )
    def test_huge_counts_stay_compact(self, count, expected):
        text = format_viewer_count(count)

        assert text == expected
        assert FORMAT_PATTERN.match(text)

    def test_output_shape(self):
        for n in (1, 7, 42, 999, 1000, 1049, 1050, 5555, 10_000, 99_999, 123_456, 1_000_000, 9_950_000):
            assert FORMAT_PATTERN.match(format_viewer_count(n)), n
