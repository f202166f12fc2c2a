"""
YouTube platform adapter.

Wires the Data API detection service, the multi-stream manager, one chat
worker per live stream and the Innertube viewer-count provider behind
the common platform contract:

- initialize(handlers)
- get_viewer_count() -> int | None
- is_enabled()
- cleanup()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.retry import RetryEngine, RetryPolicy
from services.viewer_count.providers import YouTubeViewerCountProvider
from services.youtube.api.chat import YouTubeChatClient, YouTubeChatError
from services.youtube.api.livestream import YouTubeLivestreamAPI
from services.youtube.connections import YouTubeConnectionManager
from services.youtube.detection import YouTubeStreamDetectionService
from services.youtube.innertube import InnertubeFactory, InnertubeInstanceManager
from services.youtube.multistream import YouTubeMultiStreamManager
from services.youtube.viewer_count import ViewerCountExtractionService
from services.youtube.workers.chat_worker import YouTubeChatWorker
from shared.logging.logger import get_logger
from shared.runtime.quotas import QuotaRegistry, QuotaTracker

log = get_logger("youtube.platform")

DISCONNECT_REASON_LOST = "connection lost"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class YouTubePlatform:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        api_key: str,
        general: Optional[Dict[str, Any]] = None,
        event_bus=None,
        retry_engine: Optional[RetryEngine] = None,
        innertube_manager: Optional[InnertubeInstanceManager] = None,
        livestream_api: Optional[YouTubeLivestreamAPI] = None,
        detection: Optional[YouTubeStreamDetectionService] = None,
        connection_manager: Optional[YouTubeConnectionManager] = None,
        quota_tracker: Optional[QuotaTracker] = None,
    ):
        if not config.get("username"):
            raise RuntimeError("YouTubePlatform requires a channel username")
        if not api_key and (livestream_api is None or detection is None):
            raise RuntimeError("YouTubePlatform requires YOUTUBE_API_KEY")

        general = general or {}
        self.config = dict(config)
        self.username = str(config["username"])
        self.api_key = api_key
        self.event_bus = event_bus
        self.quota_tracker = quota_tracker

        self.retry_engine = retry_engine or RetryEngine()
        self.livestream_api = livestream_api or YouTubeLivestreamAPI(
            api_key=api_key,
            quota_tracker=quota_tracker,
        )
        self.detection = detection or YouTubeStreamDetectionService(api=self.livestream_api)
        self.connection_manager = connection_manager or YouTubeConnectionManager()

        self._owns_innertube = innertube_manager is None
        self.innertube_manager = innertube_manager or InnertubeInstanceManager(
            factory=InnertubeFactory(),
            timeout_ms=float(config.get("innertubeTimeoutMs", 10000)),
        )
        self.viewer_count_provider = YouTubeViewerCountProvider(
            get_active_video_ids=self.connection_manager.get_active_video_ids,
            extraction_service=ViewerCountExtractionService(instance_manager=self.innertube_manager),
        )

        self.multistream = YouTubeMultiStreamManager(
            connection_manager=self.connection_manager,
            get_live_video_ids=self._get_live_video_ids,
            connect_to_stream=self._connect_stream,
            disconnect_from_stream=self._disconnect_stream,
            event_bus=event_bus,
            max_streams=int(general.get("maxStreams", 2)),
            poll_interval_s=float(general.get("streamPollingInterval", 60)),
            full_check_interval_ms=float(general.get("fullCheckInterval", 300000)),
            on_connection_error=self._on_stream_dropped,
        )

        self.chat_poll_interval = float(config.get("chatPollIntervalSeconds", 2.5))
        self.handlers = None
        self._is_live = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], dependencies: Dict[str, Any]) -> "YouTubePlatform":
        """
        Platform factory used by the lifecycle service.
        """
        config_manager = dependencies.get("config_manager")
        secrets = dependencies.get("secrets") or {}
        general = config_manager.get("general") if config_manager is not None else {}

        quota_tracker = None
        registry: Optional[QuotaRegistry] = dependencies.get("quota_registry")
        if registry is not None and config.get("dailyQuotaUnits"):
            quota_tracker = registry.register(
                channel=str(config["username"]),
                platform="youtube",
                max_units=int(config["dailyQuotaUnits"]),
                buffer_units=int(config.get("quotaBufferUnits", 0)),
            )

        retry_engine = dependencies.get("retry_engine")
        if retry_engine is None and config_manager is not None:
            retry_engine = RetryEngine(RetryPolicy.from_config(config_manager.get("retry")))

        return cls(
            config,
            api_key=secrets.get("youtube_api_key") or "",
            general=general,
            event_bus=dependencies.get("event_bus"),
            retry_engine=retry_engine,
            innertube_manager=dependencies.get("innertube_manager"),
            quota_tracker=quota_tracker,
        )

    # ------------------------------------------------------------
    # Platform contract
    # ------------------------------------------------------------

    def is_enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    async def initialize(self, handlers) -> None:
        if handlers is None:
            raise RuntimeError("YouTubePlatform.initialize requires handlers")
        self.handlers = handlers
        log.info(f"[youtube] Monitoring channel {self.username} for live streams")
        await self.multistream.start_monitoring()

    async def get_viewer_count(self) -> Optional[int]:
        return await self.viewer_count_provider.get_viewer_count()

    def get_active_video_ids(self) -> List[str]:
        return self.connection_manager.get_active_video_ids()

    async def cleanup(self) -> None:
        await self.multistream.stop_monitoring()
        await self.retry_engine.shutdown()
        await self.connection_manager.cleanup_all_connections()
        if self._owns_innertube:
            await self.innertube_manager.cleanup()
        await self._sync_stream_status()
        log.info("[youtube] Platform cleaned up")

    def get_status(self) -> Dict[str, Any]:
        return {
            "live": self._is_live,
            "multistream": self.multistream.get_status(),
            "detection": self.detection.get_usage_metrics(),
            "retry": self.retry_engine.get_retry_statistics(),
            "quota": self.quota_tracker.snapshot() if self.quota_tracker else None,
        }

    # ------------------------------------------------------------
    # Multi-stream collaborators
    # ------------------------------------------------------------

    async def _get_live_video_ids(self) -> List[str]:
        return await self.detection.get_live_video_ids(self.username)

    async def _connect_stream(self, video_id: str) -> bool:
        connected = await self.connection_manager.connect_to_stream(video_id, self._create_connection)
        await self._sync_stream_status()
        return connected

    async def _disconnect_stream(self, video_id: str, reason: str) -> bool:
        disconnected = await self.connection_manager.disconnect_from_stream(video_id, reason)
        self.retry_engine.reset_retry_count(self._retry_key(video_id))
        await self._sync_stream_status()
        return disconnected

    async def _create_connection(self, video_id: str) -> YouTubeChatWorker:
        live_chat_id = await self.livestream_api.get_live_chat_id(video_id)
        if not live_chat_id:
            raise YouTubeChatError(f"No active live chat for {video_id}")

        def on_first_poll() -> None:
            self.connection_manager.set_connection_ready(video_id)
            self.retry_engine.handle_connection_success(self._retry_key(video_id))

        client = YouTubeChatClient(
            api_key=self.api_key,
            live_chat_id=live_chat_id,
            video_id=video_id,
            quota_tracker=self.quota_tracker,
            poll_interval=self.chat_poll_interval,
            on_first_poll=on_first_poll,
        )
        worker = YouTubeChatWorker(
            video_id=video_id,
            client=client,
            handlers=self.handlers,
            on_drop=self._on_stream_dropped,
        )
        worker.start()
        return worker

    # ------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------

    @staticmethod
    def _retry_key(video_id: str) -> str:
        return f"youtube:{video_id}"

    async def _on_stream_dropped(self, video_id: str, error: Exception) -> None:
        self.connection_manager.mark_connection_broken(video_id, error)

        async def cleanup() -> None:
            await self.connection_manager.disconnect_from_stream(video_id, DISCONNECT_REASON_LOST)
            await self._sync_stream_status()

        async def reconnect() -> None:
            live = await self._get_live_video_ids()
            if video_id not in live:
                log.info(f"[youtube] Stream {video_id} is no longer live; reconnect skipped")
                self.retry_engine.reset_retry_count(self._retry_key(video_id))
                return
            await self._connect_stream(video_id)

        await self.retry_engine.handle_connection_error(
            self._retry_key(video_id),
            error,
            reconnect,
            cleanup,
        )

    # ------------------------------------------------------------

    async def _sync_stream_status(self) -> None:
        is_live = bool(self.connection_manager.get_active_video_ids())
        if is_live == self._is_live:
            return
        self._is_live = is_live
        log.info(f"[youtube] Stream status changed: {'live' if is_live else 'offline'}")

        if self.handlers is None:
            return
        try:
            await self.handlers.dispatch("on_stream_status", {
                "isLive": is_live,
                "videoIds": self.connection_manager.get_active_video_ids(),
                "timestamp": _iso_now(),
            })
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[youtube] Stream status handler error ignored: {e}")


__all__ = ["YouTubePlatform"]
