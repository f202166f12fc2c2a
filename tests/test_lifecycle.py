"""Tests for platform adapter startup, health tracking and shutdown."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.event_bus import PLATFORM_EVENT
from core.lifecycle import PlatformHandlers, PlatformLifecycleService
from shared.platforms.state import PlatformHealth


class FakePlatform:
    def __init__(self, name, order, *, fail_init=False, fail_cleanup=False, init_delay=0.0):
        self.name = name
        self.order = order
        self.fail_init = fail_init
        self.fail_cleanup = fail_cleanup
        self.init_delay = init_delay
        self.handlers = None

    async def initialize(self, handlers):
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.fail_init:
            raise ConnectionError(f"{self.name} unreachable")
        self.handlers = handlers

    async def cleanup(self):
        self.order.append(self.name)
        if self.fail_cleanup:
            raise RuntimeError("cleanup exploded")


@pytest.fixture
def cleanup_order():
    return []


@pytest.fixture
def factories(cleanup_order):
    """Factories for every platform, keyed the way the runtime passes them."""

    def factory(name, **kwargs):
        return lambda cfg, deps: FakePlatform(name, cleanup_order, **kwargs)

    return factory


@pytest.fixture
def lifecycle(config_manager, recording_bus, clock):
    return PlatformLifecycleService(config_manager=config_manager, event_bus=recording_bus, clock=clock)


@pytest.mark.asyncio
class TestInitialization:
    async def test_enabled_platforms_initialized(self, lifecycle, factories, clock):
        platforms = await lifecycle.initialize_all_platforms(
            {"youtube": factories("youtube"), "twitch": factories("twitch")}
        )

        assert list(platforms) == ["youtube", "twitch"]
        assert lifecycle.is_platform_available("twitch")
        assert lifecycle.get_platform_connection_time("twitch") == clock()
        assert lifecycle.get_status()["initialized_platforms"] == ["youtube", "twitch"]

    async def test_disabled_platform_skipped(self, lifecycle, factories):
        await lifecycle.initialize_all_platforms({"streamelements": factories("streamelements")})

        assert not lifecycle.is_platform_available("streamelements")
        assert lifecycle.get_status()["disabled_platforms"] == ["streamelements"]

    async def test_youtube_without_username_fails(self, make_config, recording_bus, factories):
        lifecycle = PlatformLifecycleService(
            config_manager=make_config(youtube={"enabled": True}), event_bus=recording_bus
        )

        await lifecycle.initialize_all_platforms({"youtube": factories("youtube")})

        failed = lifecycle.get_status()["failed_platforms"]
        assert failed[0]["name"] == "youtube"
        assert failed[0]["last_error"] == "Missing username"

    async def test_one_failure_does_not_abort_others(self, lifecycle, factories):
        def broken(cfg, deps):
            raise ValueError("bad credentials")

        await lifecycle.initialize_all_platforms(
            {"youtube": broken, "twitch": factories("twitch", fail_init=True), "tiktok": factories("tiktok")}
        )
        await lifecycle.wait_for_background_inits(timeout=1)

        status = lifecycle.get_status()
        assert {f["name"] for f in status["failed_platforms"]} == {"youtube", "twitch"}
        assert status["initialized_platforms"] == ["tiktok"]
        assert status["platform_health"]["twitch"]["failures"] == 1
        assert len(status["recent_errors"]) == 2

    async def test_factory_without_contract_rejected(self, lifecycle):
        await lifecycle.initialize_all_platforms({"twitch": lambda cfg, deps: object()})

        assert not lifecycle.is_platform_available("twitch")
        assert "missing initialize" in lifecycle.health["twitch"]["last_error"]

    async def test_tiktok_initializes_in_background(self, lifecycle, factories):
        await lifecycle.initialize_all_platforms({"tiktok": factories("tiktok", init_delay=0.05)})

        assert lifecycle.health["tiktok"]["state"] == PlatformHealth.STARTING.value
        assert lifecycle.get_status()["background_initializations"] == 1

        assert await lifecycle.wait_for_background_inits(timeout=1) is True
        assert lifecycle.health["tiktok"]["state"] == PlatformHealth.HEALTHY.value

    async def test_stream_detector_gates_twitch(self, config_manager, recording_bus, factories):
        detector = MagicMock()

        async def start(name, cfg, connect, on_status):
            await on_status("waiting", "Stream not live yet")
            await connect()
            await on_status("live", "Stream is live")

        detector.start_stream_detection = AsyncMock(side_effect=start)
        lifecycle = PlatformLifecycleService(
            config_manager=config_manager, event_bus=recording_bus, stream_detector=detector
        )

        await lifecycle.initialize_all_platforms({"twitch": factories("twitch"), "youtube": factories("youtube")})

        detector.start_stream_detection.assert_awaited_once()
        assert detector.start_stream_detection.await_args.args[0] == "twitch"
        assert lifecycle.get_status()["stream_statuses"]["twitch"]["is_live"] is True
        statuses = [e["data"]["status"] for e in recording_bus.of(PLATFORM_EVENT)]
        assert statuses == ["waiting", "live"]


@pytest.mark.asyncio
class TestHandlers:
    async def test_provided_handlers_take_precedence(self, lifecycle, factories):
        custom = PlatformHandlers(on_chat=MagicMock())
        fallback = PlatformHandlers()

        await lifecycle.initialize_all_platforms(
            {"twitch": factories("twitch"), "youtube": factories("youtube")},
            handlers={"twitch": custom, "default": fallback},
        )

        assert lifecycle.get_platform("twitch").handlers is custom
        assert lifecycle.get_platform("youtube").handlers is fallback

    async def test_handlers_factory_used_when_none_provided(self, config_manager, factories):
        built = PlatformHandlers()
        lifecycle = PlatformLifecycleService(config_manager=config_manager, handlers_factory=lambda name: built)

        await lifecycle.initialize_all_platforms({"twitch": factories("twitch")})

        assert lifecycle.get_platform("twitch").handlers is built

    async def test_default_handlers_republish_events(self, lifecycle, recording_bus):
        handlers = lifecycle.create_default_handlers("twitch")

        await handlers.dispatch("on_follow", {"username": "a", "timestamp": "2024-01-01T00:00:00Z"})

        event = recording_bus.of(PLATFORM_EVENT)[0]
        assert event == {
            "platform": "twitch",
            "type": "platform:follow",
            "data": {"username": "a", "timestamp": "2024-01-01T00:00:00Z"},
        }

    async def test_unset_handler_is_noop(self):
        await PlatformHandlers().dispatch("on_chat", {"message": "hi"})


class TestEmitPlatformEvent:
    def test_missing_timestamp_dropped(self, lifecycle, recording_bus):
        assert lifecycle.emit_platform_event("twitch", "platform:chat", {"message": "hi"}) is False
        assert lifecycle.emit_platform_event("twitch", "platform:chat", "hi") is False
        assert recording_bus.of(PLATFORM_EVENT) == []

    def test_stream_detected_needs_no_timestamp(self, lifecycle, recording_bus):
        assert lifecycle.emit_platform_event("youtube", "platform:stream-detected", {"newStreamIds": ["a"]})

    def test_conflicting_type_and_platform_preserved(self, lifecycle, recording_bus):
        lifecycle.emit_platform_event(
            "tiktok",
            "platform:gift",
            {"type": "gift-combo", "platform": "other", "timestamp": "t", "username": "a"},
        )

        data = recording_bus.of(PLATFORM_EVENT)[0]["data"]
        assert data == {"timestamp": "t", "username": "a", "sourceType": "gift-combo", "sourcePlatform": "other"}

    def test_no_event_bus(self, config_manager):
        lifecycle = PlatformLifecycleService(config_manager=config_manager)

        assert lifecycle.emit_platform_event("twitch", "platform:chat", {"timestamp": "t"}) is False

    def test_requires_config(self):
        with pytest.raises(RuntimeError):
            PlatformLifecycleService(config_manager=None)


@pytest.mark.asyncio
class TestShutdown:
    async def test_cleanup_in_reverse_order_despite_errors(self, lifecycle, factories, cleanup_order):
        await lifecycle.initialize_all_platforms(
            {
                "youtube": factories("youtube"),
                "twitch": factories("twitch", fail_cleanup=True),
                "tiktok": factories("tiktok"),
            }
        )
        await lifecycle.wait_for_background_inits(timeout=1)

        await lifecycle.disconnect_all()

        assert cleanup_order == ["tiktok", "twitch", "youtube"]
        assert lifecycle.get_all_platforms() == {}
        assert lifecycle.get_platform_connection_time("youtube") is None

    async def test_pending_background_init_cancelled(self, lifecycle, factories, cleanup_order):
        await lifecycle.initialize_all_platforms({"tiktok": factories("tiktok", init_delay=10)})

        await lifecycle.disconnect_all(background_timeout=1)

        assert lifecycle.background_inits["tiktok"].cancelled()
        assert cleanup_order == ["tiktok"]

    async def test_stream_detector_cleaned_up(self, config_manager):
        detector = MagicMock()
        detector.cleanup = AsyncMock(side_effect=RuntimeError("already stopped"))
        lifecycle = PlatformLifecycleService(config_manager=config_manager, stream_detector=detector)

        await lifecycle.disconnect_all()

        detector.cleanup.assert_awaited_once()
