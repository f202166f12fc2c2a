import asyncio
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Dict, Optional, Set

import httpx

from services.youtube.models.message import YouTubeChatMessage
from shared.logging.logger import get_logger
from shared.runtime.quotas import QuotaBufferWarning, QuotaExceeded, QuotaTracker

log = get_logger("youtube.chat")


class YouTubeChatError(RuntimeError):
    """The live chat for a stream can no longer be polled."""


class YouTubeChatClient:
    """
    Polling client for YouTube Live Chat via the Data API v3.

    Responsibilities:
    - Poll liveChat/messages endpoint
    - Respect server-provided polling intervals
    - Deduplicate messages
    - Normalize payloads into YouTubeChatMessage
    - Enforce YouTube API quota limits
    - Raise YouTubeChatError once the chat is gone so the owner can reconnect
    """

    BASE_URL = "https://www.googleapis.com/youtube/v3/liveChat/messages"

    # YouTube Data API v3 cost
    QUOTA_COST_PER_CALL = 5

    # Transient failures tolerated before the chat is considered dropped
    MAX_CONSECUTIVE_ERRORS = 3

    # Status codes meaning the chat ended or was closed for good
    TERMINAL_STATUS_CODES = (401, 403, 404)

    def __init__(
        self,
        *,
        api_key: str,
        live_chat_id: str,
        video_id: str,
        quota_tracker: Optional[QuotaTracker] = None,
        poll_interval: float = 2.5,
        on_first_poll: Optional[Callable[[], None]] = None,
    ):
        if not api_key:
            raise RuntimeError("YouTube API key is required")
        if not live_chat_id:
            raise RuntimeError("YouTube live_chat_id is required")

        self.api_key = api_key
        self.live_chat_id = live_chat_id
        self.video_id = video_id
        self.quota_tracker = quota_tracker
        self.poll_interval = poll_interval
        self._on_first_poll = on_first_poll

        self._page_token: Optional[str] = None
        self._stop_event = asyncio.Event()
        self._seen_ids: Set[str] = set()
        self._polled_once = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def iter_messages(self) -> AsyncGenerator[YouTubeChatMessage, None]:
        """
        Poll YouTube live chat and yield normalized messages.

        Messages already present on the first page are history and are
        marked seen without being yielded.
        """
        self._stop_event.clear()

        params = {
            "part": "snippet,authorDetails",
            "liveChatId": self.live_chat_id,
            "key": self.api_key,
        }
        consecutive_errors = 0

        log.info(
            f"[youtube][{self.video_id}] "
            f"Starting live chat polling (liveChatId={self.live_chat_id})"
        )

        async with httpx.AsyncClient(timeout=15.0) as client:
            while not self._stop_event.is_set():

                if self.quota_tracker:
                    try:
                        self.quota_tracker.consume(self.QUOTA_COST_PER_CALL)
                    except QuotaBufferWarning as warn:
                        log.warning(f"[youtube][{self.video_id}] {warn}")
                    except QuotaExceeded as fatal:
                        log.error(f"[youtube][{self.video_id}] {fatal}; polling halted")
                        return

                if self._page_token:
                    params["pageToken"] = self._page_token

                try:
                    response = await client.get(self.BASE_URL, params=params)
                    response.raise_for_status()
                    data = response.json()

                except asyncio.CancelledError:
                    raise
                except httpx.HTTPStatusError as e:
                    if e.response.status_code in self.TERMINAL_STATUS_CODES:
                        raise YouTubeChatError(
                            f"Live chat unavailable (HTTP {e.response.status_code})"
                        ) from e
                    consecutive_errors += 1
                    log.warning(f"[youtube][{self.video_id}] chat poll error: {e}")
                except Exception as e:
                    consecutive_errors += 1
                    log.warning(f"[youtube][{self.video_id}] chat poll error: {e}")
                else:
                    consecutive_errors = 0

                if consecutive_errors:
                    if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                        raise YouTubeChatError(
                            f"Live chat polling failed {consecutive_errors} times in a row"
                        )
                    await self._sleep(self.poll_interval)
                    continue

                self._page_token = data.get("nextPageToken")

                items = data.get("items", [])
                first_page = not self._polled_once
                for item in items:
                    msg_id = item.get("id")
                    if not msg_id or msg_id in self._seen_ids:
                        continue
                    self._seen_ids.add(msg_id)
                    if not first_page:
                        yield self._normalize_message(item)

                if first_page:
                    self._polled_once = True
                    if self._on_first_poll:
                        self._on_first_poll()

                if data.get("offlineAt"):
                    log.info(f"[youtube][{self.video_id}] Live chat went offline")
                    return

                # Respect server-recommended polling interval
                interval_ms = data.get("pollingIntervalMillis")
                sleep_seconds = (
                    interval_ms / 1000.0
                    if isinstance(interval_ms, (int, float))
                    else self.poll_interval
                )

                log.debug(
                    f"[youtube][{self.video_id}] Poll complete "
                    f"(messages={len(items)}, sleep={sleep_seconds}s)"
                )
                await self._sleep(sleep_seconds)

        log.info(f"[youtube][{self.video_id}] Live chat polling stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def close(self) -> None:
        """
        Signal polling loop to stop.
        """
        self._stop_event.set()

    # ------------------------------------------------------------------ #
    # Normalization helpers
    # ------------------------------------------------------------------ #

    def _normalize_message(self, payload: Dict) -> YouTubeChatMessage:
        """
        Convert a YouTube liveChatMessage resource into a normalized shape.
        """
        snippet = payload.get("snippet", {})
        author_details = payload.get("authorDetails", {})
        message_type = snippet.get("type") or "textMessageEvent"

        super_chat = snippet.get("superChatDetails") or snippet.get("superStickerDetails") or {}
        sponsor = snippet.get("newSponsorDetails") or {}
        milestone = snippet.get("memberMilestoneChatDetails") or {}
        gifting = snippet.get("membershipGiftingDetails") or {}

        text = (
            snippet.get("displayMessage")
            or super_chat.get("userComment")
            or milestone.get("userComment")
            or ""
        )

        return YouTubeChatMessage(
            raw=payload,
            live_chat_id=snippet.get("liveChatId", self.live_chat_id),
            video_id=self.video_id,
            message_id=payload.get("id"),
            message_type=message_type,
            author_name=author_details.get("displayName") or "unknown",
            author_channel_id=author_details.get("channelId"),
            text=text,
            published_at=self._parse_published_at(snippet.get("publishedAt")),
            is_owner=bool(author_details.get("isChatOwner")),
            is_moderator=bool(author_details.get("isChatModerator")),
            is_member=bool(author_details.get("isChatSponsor")),
            amount_micros=_to_int(super_chat.get("amountMicros")),
            currency=super_chat.get("currency"),
            member_level=(
                sponsor.get("memberLevelName")
                or milestone.get("memberLevelName")
                or gifting.get("giftMembershipsLevelName")
            ),
            member_months=_to_int(milestone.get("memberMonth")),
            gift_count=_to_int(gifting.get("giftMembershipsCount")),
            badges=[
                badge
                for badge in [
                    "owner" if author_details.get("isChatOwner") else None,
                    "moderator" if author_details.get("isChatModerator") else None,
                    "member" if author_details.get("isChatSponsor") else None,
                ]
                if badge
            ],
        )

    @staticmethod
    def _parse_published_at(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            return ts.astimezone(timezone.utc)
        except ValueError:
            return None


def _to_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
