"""
Viewer-count providers: one per platform, each exposing
`async get_viewer_count() -> int | None`.

None means "no update this tick"; providers never raise to the poller.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx

from shared.logging.logger import get_logger

log = get_logger("viewer_count.providers")


def categorize_error(error: Any) -> str:
    message = str(error or "").lower()
    if any(k in message for k in ("network", "timeout", "timed out", "connect")):
        return "network"
    if any(k in message for k in ("auth", "token", "unauthorized", "401")):
        return "authentication"
    if any(k in message for k in ("rate limit", "too many requests", "429")):
        return "rate_limit"
    if any(k in message for k in ("not found", "404", "stream", "video")):
        return "resource_not_found"
    return "unknown"


class ViewerCountProvider:
    """
    Base provider with shared error bookkeeping.
    """

    platform = "unknown"

    def __init__(self):
        self._error_stats: Dict[str, Any] = {
            "total_errors": 0,
            "consecutive_errors": 0,
            "last_error": None,
            "error_types": {},
        }

    def is_ready(self) -> bool:
        return True

    async def get_viewer_count(self) -> Optional[int]:
        raise NotImplementedError

    def _handle_provider_error(self, error: Any, operation: str) -> None:
        kind = categorize_error(error)
        stats = self._error_stats
        stats["total_errors"] += 1
        stats["consecutive_errors"] += 1
        stats["last_error"] = str(error)
        stats["error_types"][kind] = stats["error_types"].get(kind, 0) + 1
        log.warning(
            f"[{self.platform}] {operation} failed ({kind}, "
            f"{stats['consecutive_errors']} in a row): {error}"
        )
        return None

    def _reset_error_count(self) -> None:
        self._error_stats["consecutive_errors"] = 0

    def get_error_stats(self) -> Dict[str, Any]:
        stats = dict(self._error_stats)
        stats["error_types"] = dict(self._error_stats["error_types"])
        return stats


# ----------------------------------------------------------------------
# YouTube
# ----------------------------------------------------------------------

class YouTubeViewerCountProvider(ViewerCountProvider):
    """
    Sums concurrent viewers over every active stream (pending or ready),
    not only the chat-ready ones.
    """

    platform = "youtube"

    def __init__(self, *, get_active_video_ids: Callable[[], List[str]], extraction_service):
        super().__init__()
        if extraction_service is None:
            raise RuntimeError("YouTubeViewerCountProvider requires a viewer extraction service")
        self._get_active_video_ids = get_active_video_ids
        self.extraction_service = extraction_service
        self.last_breakdown: List[Dict[str, Any]] = []

    async def get_viewer_count(self) -> Optional[int]:
        try:
            video_ids = list(self._get_active_video_ids() or [])
        except Exception as e:
            return self._handle_provider_error(e, "get_active_video_ids")

        if not video_ids:
            log.debug("[youtube] No active streams; viewer count is 0")
            self.last_breakdown = []
            return 0

        try:
            result = await self.extraction_service.get_aggregated_viewer_count(video_ids)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._handle_provider_error(e, "get_aggregated_viewer_count")

        self.last_breakdown = result.get("streams", [])
        if not result.get("success"):
            return self._handle_provider_error(
                RuntimeError("viewer extraction failed for every stream"),
                "get_aggregated_viewer_count",
            )

        self._reset_error_count()
        return int(result["total_count"])


# ----------------------------------------------------------------------
# Twitch
# ----------------------------------------------------------------------

class TwitchHelixClient:
    """
    Read-only Helix client for stream info.
    """

    STREAMS_URL = "https://api.twitch.tv/helix/streams"

    def __init__(self, *, client_id: str, oauth_token: str, timeout: float = 15.0):
        if not client_id:
            raise RuntimeError("Twitch client_id is required")
        if not oauth_token:
            raise RuntimeError("Twitch OAuth token is required")
        self.client_id = client_id
        self.oauth_token = oauth_token.removeprefix("oauth:")
        self.timeout = timeout

    async def get_stream_info(self, channel: str) -> Dict[str, Any]:
        headers = {
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {self.oauth_token}",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.get(
                self.STREAMS_URL, params={"user_login": channel.lower()}, headers=headers
            )
            r.raise_for_status()
            data = r.json()

        streams = data.get("data", [])
        if not streams:
            return {"is_live": False, "viewer_count": 0}

        stream = streams[0]
        return {
            "is_live": stream.get("type") == "live",
            "viewer_count": int(stream.get("viewer_count") or 0),
            "started_at": stream.get("started_at"),
            "title": stream.get("title"),
        }


class TwitchViewerCountProvider(ViewerCountProvider):
    platform = "twitch"

    def __init__(self, *, api_client: TwitchHelixClient, channel: str):
        super().__init__()
        self.api_client = api_client
        self.channel = (channel or "").lstrip("#").strip()

    def is_ready(self) -> bool:
        return bool(self.api_client and self.channel)

    async def get_viewer_count(self) -> Optional[int]:
        if not self.is_ready():
            log.debug("[twitch] Viewer count provider not configured")
            return None
        try:
            info = await self.api_client.get_stream_info(self.channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._handle_provider_error(e, "get_stream_info")

        self._reset_error_count()
        return info["viewer_count"]


__all__ = [
    "ViewerCountProvider",
    "YouTubeViewerCountProvider",
    "TwitchHelixClient",
    "TwitchViewerCountProvider",
    "categorize_error",
]
