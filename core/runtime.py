"""
Runtime orchestrator.

Builds every component from the configuration, routes platform events
into the chat router, notification manager and viewer-count system, and
tears everything down in reverse order.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from core.config import ConfigManager, load_secrets
from core.event_bus import EventBus
from core.lifecycle import PlatformHandlers, PlatformLifecycleService
from core.stream_detector import StreamDetector
from services.chat.cooldowns import CommandCooldownService
from services.chat.router import ChatNotificationRouter
from services.notifications.manager import NotificationManager
from services.twitch.platform import TwitchPlatform
from services.viewer_count.obs_observer import OBSViewerCountObserver
from services.viewer_count.system import ViewerCountSystem
from services.youtube.innertube import InnertubeFactory, InnertubeInstanceManager
from services.youtube.platform import YouTubePlatform
from shared.display.queue import DisplayQueue
from shared.logging.logger import get_logger
from shared.runtime.quotas import QuotaRegistry

log = get_logger("core.runtime")

PlatformFactory = Callable[[Dict[str, Any], Dict[str, Any]], Any]

DEFAULT_PLATFORM_FACTORIES: Dict[str, PlatformFactory] = {
    "youtube": YouTubePlatform.from_config,
    "twitch": TwitchPlatform.from_config,
}

# handler name -> notification type routed through the manager
NOTIFICATION_HANDLERS = {
    "on_gift": "platform:gift",
    "on_follow": "platform:follow",
    "on_raid": "platform:raid",
    "on_paypiggy": "platform:paypiggy",
    "on_giftpaypiggy": "platform:giftpaypiggy",
    "on_share": "platform:share",
    "on_envelope": "platform:envelope",
}


class LiveAlertsRuntime:
    """
    Owns the process-scoped components. External collaborators (OBS
    client, display queue, TTS/VFX services, extra platform adapters)
    are injected; everything else is built here.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        *,
        obs_manager=None,
        display_queue=None,
        tts_service=None,
        vfx_service=None,
        tiktok_detection=None,
        platform_factories: Optional[Dict[str, PlatformFactory]] = None,
        secrets: Optional[Dict[str, Optional[str]]] = None,
    ):
        if config_manager is None:
            raise RuntimeError("LiveAlertsRuntime requires a config manager")

        self.config = config_manager
        general = config_manager.get("general")

        # --------------------------------------------------
        # Shared plumbing
        # --------------------------------------------------
        self.event_bus = EventBus(debug=config_manager.is_debug_enabled())
        self.display_queue = display_queue or DisplayQueue.from_config(config_manager.get("displayQueue"))
        self.quota_registry = QuotaRegistry()
        self.innertube_manager = InnertubeInstanceManager(
            factory=InnertubeFactory(),
            timeout_ms=float(config_manager.get_value("youtube", "innertubeTimeoutMs", 10000)),
        )

        # --------------------------------------------------
        # Notifications and chat
        # --------------------------------------------------
        self.notifications = NotificationManager(
            config_manager=config_manager,
            display_queue=self.display_queue,
            event_bus=self.event_bus,
            tts_service=tts_service,
            vfx_service=vfx_service,
        )
        self.cooldowns = CommandCooldownService(
            cooldowns=config_manager.get("cooldowns"),
            event_bus=self.event_bus,
        )

        # --------------------------------------------------
        # Platforms
        # --------------------------------------------------
        self.stream_detector = StreamDetector(
            config=config_manager.get("streamDetection"),
            tiktok_detection=tiktok_detection,
        )
        self.platform_factories = dict(DEFAULT_PLATFORM_FACTORIES)
        self.platform_factories.update(platform_factories or {})

        self.lifecycle = PlatformLifecycleService(
            config_manager=config_manager,
            event_bus=self.event_bus,
            stream_detector=self.stream_detector,
            dependencies={
                "config_manager": config_manager,
                "event_bus": self.event_bus,
                "secrets": secrets if secrets is not None else load_secrets(),
                "quota_registry": self.quota_registry,
                "innertube_manager": self.innertube_manager,
            },
            handlers_factory=self.build_handlers,
        )
        self.router = ChatNotificationRouter(
            config_manager=config_manager,
            display_queue=self.display_queue,
            cooldowns=self.cooldowns,
            lifecycle=self.lifecycle,
            vfx_service=vfx_service,
            event_bus=self.event_bus,
        )

        # --------------------------------------------------
        # Viewer counts
        # --------------------------------------------------
        self.viewer_counts = ViewerCountSystem(
            platform_provider=self.lifecycle.get_all_platforms,
            polling_interval_ms=general.get("viewerCountPollingIntervalMs", 60000),
            treat_null_as_error=bool(general.get("treatNullViewerCountAsError", True)),
            event_bus=self.event_bus,
        )
        self.obs_observer = None
        if obs_manager is not None and config_manager.get_value("obs", "enabled", False):
            self.obs_observer = OBSViewerCountObserver(obs_manager=obs_manager, config_manager=config_manager)
            self.viewer_counts.add_observer(self.obs_observer)

        self._started = False

    # ------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------

    def build_handlers(self, platform: str) -> PlatformHandlers:
        def notify(notification_type: str):
            async def handler(payload: Dict[str, Any]) -> None:
                result = await self.notifications.handle_notification(notification_type, platform, payload)
                if not result.get("success") and result.get("error"):
                    log.warning(f"[{platform}] {notification_type} rejected: {result['error']}")

            return handler

        async def on_chat(payload: Dict[str, Any]) -> None:
            await self.router.handle_chat_message(platform, payload)

        async def on_stream_status(payload: Dict[str, Any]) -> None:
            is_live = payload.get("isLive") if isinstance(payload, dict) else None
            if not isinstance(is_live, bool):
                log.warning(f"[{platform}] Stream status without isLive ignored")
                return
            if not is_live:
                self.router.reset_session()
            await self.viewer_counts.update_stream_status(platform, is_live)

        def on_viewer_count(payload: Any) -> None:
            # Counts come from polling; pushed values are informational only
            log.debug(f"[{platform}] Pushed viewer count ignored: {payload!r}")

        def on_stream_detected(payload: Any) -> None:
            self.lifecycle.emit_platform_event(platform, "platform:stream-detected", payload)

        return PlatformHandlers(
            on_chat=on_chat,
            on_stream_status=on_stream_status,
            on_viewer_count=on_viewer_count,
            on_stream_detected=on_stream_detected,
            **{name: notify(t) for name, t in NOTIFICATION_HANDLERS.items()},
        )

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            log.warning("Runtime already started; start ignored")
            return
        self._started = True

        log.info("[BOOT] Starting LiveAlerts runtime")
        self.notifications.start()
        await self.viewer_counts.initialize()

        await self.lifecycle.initialize_all_platforms(self.platform_factories)

        try:
            self.viewer_counts.start_polling()
        except Exception as e:
            log.error(f"Viewer count polling not started: {e}")

        status = self.lifecycle.get_status()
        log.info(
            f"[BOOT] Platforms ready: {status['initialized_platforms'] or 'none'}; "
            f"failed: {[f['name'] for f in status['failed_platforms']] or 'none'}"
        )

    async def shutdown(self) -> None:
        """
        Reverse order of start: polling, platforms, notification timers.
        """
        log.info("Shutdown initiated")

        steps = (
            ("viewer count system", self.viewer_counts.cleanup),
            ("platforms", self.lifecycle.disconnect_all),
            ("notification manager", self.notifications.shutdown),
            ("innertube instances", self.innertube_manager.cleanup),
        )
        for label, step in steps:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"{label} shutdown error ignored: {e}")

        self.cooldowns.dispose()
        await self.event_bus.drain()
        self.event_bus.clear()
        self._started = False
        log.info("LiveAlerts runtime stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "platforms": self.lifecycle.get_status(),
            "viewer_counts": self.viewer_counts.get_system_status(),
            "notifications": self.notifications.get_stats(),
            "cooldowns": self.cooldowns.get_status(),
            "display_queue_length": (
                self.display_queue.get_queue_length()
                if hasattr(self.display_queue, "get_queue_length")
                else None
            ),
            "event_bus": self.event_bus.get_stats(),
            "quotas": self.quota_registry.snapshot(),
        }


__all__ = ["LiveAlertsRuntime", "DEFAULT_PLATFORM_FACTORIES"]
