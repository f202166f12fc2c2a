"""
Scheduled "is the stream live yet?" checks for platforms whose chat only
exists while a broadcast is running.

Twitch chat is always reachable so it connects immediately. For the other
platforms the detector polls until the stream is live, then runs the
connect callback exactly once. It never touches connection state itself.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from shared.logging.logger import get_logger

log = get_logger("core.stream_detector")

ConnectCallback = Callable[[], Awaitable[Any]]
StatusCallback = Callable[[str, str], Any]

MAX_ERROR_BACKOFF_S = 300.0

STATUS_LIVE = "live"
STATUS_WAITING = "waiting"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"


class StreamDetector:
    """
    Contract:
    - get_live_video_ids(channel_handle) -> [video_id]
    - start_stream_detection(platform, config, connect_callback, status_callback=None)
    """

    def __init__(
        self,
        *,
        config: Optional[Dict[str, Any]] = None,
        youtube_detection=None,
        tiktok_detection=None,
    ):
        cfg = config or {}

        interval = float(cfg.get("retryIntervalSeconds", 15))
        if interval <= 0:
            raise ValueError("streamDetection.retryIntervalSeconds must be positive")

        max_retries = int(cfg.get("maxRetries", -1))
        if max_retries < -1:
            raise ValueError("streamDetection.maxRetries must be -1 or non-negative")

        self.enabled = bool(cfg.get("enabled", True))
        self.retry_interval_s = interval
        self.max_retries = max_retries

        self.youtube_detection = youtube_detection
        self.tiktok_detection = tiktok_detection

        self._attempts: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._live: Dict[str, bool] = {}

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    async def get_live_video_ids(self, channel_handle: str) -> List[str]:
        if self.youtube_detection is None:
            raise RuntimeError("StreamDetector requires a YouTube detection service")
        return await self.youtube_detection.get_live_video_ids(channel_handle)

    async def check_stream_status(self, platform: str, platform_config: Dict[str, Any]) -> bool:
        username = (platform_config or {}).get("username", "")

        if platform == "twitch":
            return True

        if platform == "youtube":
            return bool(await self.get_live_video_ids(username))

        if platform == "tiktok":
            if self.tiktok_detection is None:
                log.warning("[tiktok] No detection service registered; treating as offline")
                return False
            result = self.tiktok_detection.is_live(username)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)

        log.warning(f"Unknown platform for stream detection: {platform}")
        return False

    # ------------------------------------------------------------
    # Detection loop
    # ------------------------------------------------------------

    async def start_stream_detection(
        self,
        platform: str,
        platform_config: Dict[str, Any],
        connect_callback: ConnectCallback,
        status_callback: Optional[StatusCallback] = None,
    ) -> Any:
        """
        Connect now if possible, otherwise keep checking in the background.

        Returns the connect callback's result when the first check finds
        the stream live (or detection is skipped), else None.
        """
        if platform == "twitch":
            log.debug("[twitch] Skipping stream detection (chat always available)")
            return await connect_callback()

        if not self.enabled:
            log.debug(f"[{platform}] Stream detection disabled; connecting directly")
            return await connect_callback()

        self.stop_stream_detection(platform)
        self._attempts[platform] = 0
        self._live[platform] = False
        log.info(f"[{platform}] Starting stream detection")

        outcome, result = await self._attempt(platform, platform_config, connect_callback, status_callback)

        if outcome in (STATUS_WAITING, STATUS_ERROR):
            self._tasks[platform] = asyncio.create_task(
                self._retry_loop(platform, platform_config, connect_callback, status_callback, outcome)
            )
        return result

    async def _attempt(
        self,
        platform: str,
        platform_config: Dict[str, Any],
        connect_callback: ConnectCallback,
        status_callback: Optional[StatusCallback],
    ) -> Tuple[str, Any]:
        attempt = self._attempts.get(platform, 0) + 1
        self._attempts[platform] = attempt

        try:
            is_live = await self.check_stream_status(platform, platform_config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[{platform}] Error detecting stream status (attempt {attempt}): {e}")
            await self._notify(status_callback, STATUS_ERROR, f"Error detecting {platform} stream: {e}")
            return STATUS_ERROR, None

        if is_live:
            log.info(f"[{platform}] Stream detected as live; connecting")
            self._live[platform] = True
            self._attempts.pop(platform, None)
            await self._notify(status_callback, STATUS_LIVE, f"Stream is live, connecting to {platform}")
            return STATUS_LIVE, await connect_callback()

        log.debug(f"[{platform}] Stream not live (attempt {attempt})")
        await self._notify(
            status_callback,
            STATUS_WAITING,
            f"Waiting for {platform} stream to go live (attempt {attempt})",
        )

        if self.max_retries > 0 and attempt >= self.max_retries:
            log.warning(f"[{platform}] Max detection attempts ({self.max_retries}) reached")
            await self._notify(status_callback, STATUS_FAILED, f"Max retry attempts reached for {platform}")
            return STATUS_FAILED, None

        return STATUS_WAITING, None

    async def _retry_loop(
        self,
        platform: str,
        platform_config: Dict[str, Any],
        connect_callback: ConnectCallback,
        status_callback: Optional[StatusCallback],
        last_outcome: str,
    ) -> None:
        while True:
            await asyncio.sleep(self._next_delay(platform, last_outcome))
            try:
                last_outcome, _ = await self._attempt(
                    platform, platform_config, connect_callback, status_callback
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[{platform}] Connect after detection failed: {e}")
                return

            if last_outcome in (STATUS_LIVE, STATUS_FAILED):
                return

    def _next_delay(self, platform: str, last_outcome: str) -> float:
        if last_outcome != STATUS_ERROR:
            return self.retry_interval_s
        attempt = self._attempts.get(platform, 1)
        return min(self.retry_interval_s * (2 ** max(0, attempt - 1)), MAX_ERROR_BACKOFF_S)

    @staticmethod
    async def _notify(callback: Optional[StatusCallback], status: str, message: str) -> None:
        if callback is None:
            return
        try:
            result = callback(status, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning(f"Stream status callback error ignored: {e}")

    # ------------------------------------------------------------

    def is_detecting(self, platform: str) -> bool:
        task = self._tasks.get(platform)
        return bool(task and not task.done())

    def stop_stream_detection(self, platform: str) -> None:
        task = self._tasks.pop(platform, None)
        if task and not task.done():
            task.cancel()

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        platforms = set(self._attempts) | set(self._tasks) | set(self._live)
        return {
            p: {
                "live": self._live.get(p, False),
                "attempts": self._attempts.get(p, 0),
                "detecting": self.is_detecting(p),
            }
            for p in sorted(platforms)
        }

    async def cleanup(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._attempts.clear()
        log.debug("Stream detector cleaned up")


__all__ = ["StreamDetector"]
