from typing import Dict, List, Optional

import httpx

from services.youtube.models.stream import YouTubeLivestream
from shared.logging.logger import get_logger
from shared.runtime.quotas import QuotaBufferWarning, QuotaExceeded, QuotaTracker

log = get_logger("youtube.livestream")


class YouTubeLivestreamAPI:
    """
    YouTube livestream discovery API (Data API v3).

    Responsibilities:
    - Resolve channel ID from channel ID or @handle
    - List every live broadcast for the channel (multi-stream aware)
    - Resolve activeLiveChatId and concurrent viewers per video
    - Charge each call against the daily quota tracker when one is set

    Read-only; failures are logged and reported as None so callers can
    tell "lookup failed" apart from "nothing is live" ([]).
    """

    CHANNELS_URL = "https://www.googleapis.com/youtube/v3/channels"
    SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
    VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

    # YouTube Data API v3 unit costs
    SEARCH_COST = 100
    LIST_COST = 1

    MAX_RESULTS = 50

    def __init__(
        self,
        *,
        api_key: str,
        quota_tracker: Optional[QuotaTracker] = None,
        timeout: float = 15.0,
    ):
        if not api_key:
            raise RuntimeError("YouTube API key is required")
        self.api_key = api_key
        self.quota_tracker = quota_tracker
        self.timeout = timeout
        self._channel_ids: Dict[str, str] = {}

    # ------------------------------------------------------------

    def _charge(self, units: int) -> bool:
        if not self.quota_tracker:
            return True
        try:
            self.quota_tracker.consume(units)
        except QuotaBufferWarning as warn:
            log.warning(f"[youtube] {warn}")
        except QuotaExceeded as fatal:
            log.error(f"[youtube] {fatal}; Data API call skipped")
            return False
        return True

    async def _get(self, url: str, params: Dict[str, object], *, cost: int, what: str) -> Optional[Dict]:
        if not self._charge(cost):
            return None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                r = await client.get(url, params={**params, "key": self.api_key})
                r.raise_for_status()
                return r.json()
            except Exception as e:
                log.warning(f"[youtube] {what} error: {e}")
                return None

    # ------------------------------------------------------------
    # Channel resolution
    # ------------------------------------------------------------

    async def resolve_channel_id(self, identifier: str) -> Optional[str]:
        """
        Resolve a channel ID from a channel ID or @handle. Cached per handle.
        """
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if identifier in self._channel_ids:
            return self._channel_ids[identifier]

        params: Dict[str, object] = {"part": "id"}
        if identifier.startswith("UC") and len(identifier) == 24:
            params["id"] = identifier
        else:
            params["forHandle"] = identifier.lstrip("@")

        data = await self._get(
            self.CHANNELS_URL, params, cost=self.LIST_COST, what="channel resolution"
        )
        if data is None:
            return None

        items = data.get("items", [])
        if not items:
            log.info(f"[youtube] Channel not found: {identifier}")
            return None

        channel_id = items[0].get("id")
        if channel_id:
            self._channel_ids[identifier] = channel_id
        return channel_id

    # ------------------------------------------------------------
    # Live video discovery
    # ------------------------------------------------------------

    async def list_live_video_ids(self, channel_id: str) -> Optional[List[str]]:
        """
        Every currently live video for a channel, in API order.
        """
        params = {
            "part": "id",
            "channelId": channel_id,
            "eventType": "live",
            "type": "video",
            "maxResults": self.MAX_RESULTS,
        }
        data = await self._get(self.SEARCH_URL, params, cost=self.SEARCH_COST, what="live search")
        if data is None:
            return None

        video_ids: List[str] = []
        for item in data.get("items", []):
            video_id = (item.get("id") or {}).get("videoId")
            if video_id and video_id not in video_ids:
                video_ids.append(video_id)
        return video_ids

    # ------------------------------------------------------------
    # Livestream metadata
    # ------------------------------------------------------------

    async def get_livestream(self, video_id: str) -> Optional[YouTubeLivestream]:
        params = {"part": "snippet,liveStreamingDetails", "id": video_id}
        data = await self._get(self.VIDEOS_URL, params, cost=self.LIST_COST, what="livestream detail")
        if data is None:
            return None

        items = data.get("items", [])
        if not items:
            return None

        item = items[0]
        snippet = item.get("snippet", {})
        live_details = item.get("liveStreamingDetails", {})

        viewers = live_details.get("concurrentViewers")
        try:
            concurrent = int(viewers) if viewers is not None else None
        except (TypeError, ValueError):
            concurrent = None

        return YouTubeLivestream(
            video_id=video_id,
            channel_id=snippet.get("channelId"),
            title=snippet.get("title"),
            live_chat_id=live_details.get("activeLiveChatId"),
            started_at=live_details.get("actualStartTime"),
            concurrent_viewers=concurrent,
            raw=item,
        )

    async def get_live_chat_id(self, video_id: str) -> Optional[str]:
        stream = await self.get_livestream(video_id)
        return stream.live_chat_id if stream else None
