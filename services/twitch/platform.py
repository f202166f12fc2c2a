"""
Twitch platform adapter: IRC chat and channel notices, Helix viewer count.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from core.retry import RetryEngine, RetryPolicy
from services.twitch.api.chat import TwitchChatClient
from services.twitch.workers.chat_worker import TwitchChatWorker
from services.viewer_count.providers import TwitchHelixClient, TwitchViewerCountProvider
from shared.logging.logger import get_logger

log = get_logger("twitch.platform")

RETRY_KEY = "twitch"


class TwitchPlatform:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        oauth_token: str,
        nickname: Optional[str] = None,
        client_id: Optional[str] = None,
        retry_engine: Optional[RetryEngine] = None,
        client_factory=None,
        helix_client: Optional[TwitchHelixClient] = None,
    ):
        channel = str(config.get("username") or config.get("channel") or "").strip()
        if not channel:
            raise RuntimeError("TwitchPlatform requires a channel username")
        if not oauth_token and client_factory is None:
            raise RuntimeError("TwitchPlatform requires TWITCH_OAUTH_TOKEN")

        self.config = dict(config)
        self.channel = channel
        self.oauth_token = oauth_token
        self.nickname = nickname or channel
        self.retry_engine = retry_engine or RetryEngine()
        self._client_factory = client_factory or self._default_client

        if helix_client is None and client_id and oauth_token:
            helix_client = TwitchHelixClient(client_id=client_id, oauth_token=oauth_token)
        self.viewer_count_provider = (
            TwitchViewerCountProvider(api_client=helix_client, channel=channel)
            if helix_client is not None
            else None
        )

        self.handlers = None
        self.worker: Optional[TwitchChatWorker] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: Dict[str, Any], dependencies: Dict[str, Any]) -> "TwitchPlatform":
        secrets = dependencies.get("secrets") or {}
        config_manager = dependencies.get("config_manager")

        retry_engine = dependencies.get("retry_engine")
        if retry_engine is None and config_manager is not None:
            retry_engine = RetryEngine(RetryPolicy.from_config(config_manager.get("retry")))

        return cls(
            config,
            oauth_token=secrets.get("twitch_oauth_token") or "",
            nickname=secrets.get("twitch_bot_nick"),
            client_id=secrets.get("twitch_client_id"),
            retry_engine=retry_engine,
        )

    def _default_client(self) -> TwitchChatClient:
        return TwitchChatClient(token=self.oauth_token, nickname=self.nickname, channel=self.channel)

    # ------------------------------------------------------------
    # Platform contract
    # ------------------------------------------------------------

    def is_enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    async def initialize(self, handlers) -> None:
        """
        Connect chat; a failed first connect is handed to the retry engine
        and does not fail initialization.
        """
        if handlers is None:
            raise RuntimeError("TwitchPlatform.initialize requires handlers")
        self.handlers = handlers
        self._closed = False

        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._on_drop(e)

    async def get_viewer_count(self) -> Optional[int]:
        if self.viewer_count_provider is None:
            return None
        return await self.viewer_count_provider.get_viewer_count()

    async def cleanup(self) -> None:
        self._closed = True
        await self.retry_engine.shutdown()
        if self.worker is not None:
            await self.worker.shutdown()
            self.worker = None
        log.info("[twitch] Platform cleaned up")

    def get_status(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "connected": bool(self.worker and self.worker.is_connected),
            "retry": self.retry_engine.get_retry_statistics(),
            "viewer_count": self.viewer_count_provider.get_error_stats() if self.viewer_count_provider else None,
        }

    # ------------------------------------------------------------

    async def _connect(self) -> None:
        if self._closed:
            return
        worker = TwitchChatWorker(
            client=self._client_factory(),
            handlers=self.handlers,
            on_connected=lambda: self.retry_engine.handle_connection_success(RETRY_KEY),
            on_drop=self._on_drop,
        )
        await worker.start()
        self.worker = worker

    async def _on_drop(self, error: Exception) -> None:
        if self._closed:
            return

        async def cleanup() -> None:
            if self.worker is not None:
                await self.worker.shutdown()
                self.worker = None

        await self.retry_engine.handle_connection_error(RETRY_KEY, error, self._connect, cleanup)


__all__ = ["TwitchPlatform"]
