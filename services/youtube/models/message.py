from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.chat.events import PlatformEvent, create_platform_event


@dataclass
class YouTubeChatMessage:
    """
    Normalized YouTube liveChatMessage resource.

    `message_type` is the Data API snippet type (textMessageEvent,
    superChatEvent, newSponsorEvent, ...). Monetary amounts are kept in
    micros as delivered and converted when the platform event is built.
    """

    raw: Dict[str, Any]
    live_chat_id: str
    video_id: str
    message_id: Optional[str]
    message_type: str
    author_name: str
    text: str

    author_channel_id: Optional[str] = None
    published_at: Optional[datetime] = None
    is_owner: bool = False
    is_moderator: bool = False
    is_member: bool = False
    amount_micros: Optional[int] = None
    currency: Optional[str] = None
    member_level: Optional[str] = None
    member_months: Optional[int] = None
    gift_count: Optional[int] = None
    badges: List[str] = field(default_factory=list)

    def to_platform_event(self) -> Optional[PlatformEvent]:
        """
        Map to a normalized event, or None for types the runtime ignores.
        """
        common = {
            "platform": "youtube",
            "username": self.author_name,
            "user_id": self.author_channel_id,
            "timestamp": self.published_at,
            "event_id": self.message_id,
            "videoId": self.video_id,
        }

        if self.message_type == "textMessageEvent":
            return create_platform_event(
                "chat",
                message=self.text,
                isOwner=self.is_owner,
                isModerator=self.is_moderator,
                isMember=self.is_member,
                badges=list(self.badges),
                **common,
            )

        if self.message_type in ("superChatEvent", "superStickerEvent"):
            return create_platform_event(
                "gift",
                message=self.text or None,
                giftType="Super Sticker" if self.message_type == "superStickerEvent" else "Super Chat",
                giftCount=1,
                amount=(self.amount_micros or 0) / 1_000_000,
                currency=self.currency or "USD",
                **common,
            )

        if self.message_type in ("newSponsorEvent", "memberMilestoneChatEvent"):
            extra: Dict[str, Any] = {}
            if self.member_months is not None:
                extra["months"] = self.member_months
            return create_platform_event(
                "paypiggy",
                message=self.text or None,
                tier=self.member_level,
                level=self.member_level,
                **extra,
                **common,
            )

        if self.message_type == "membershipGiftingEvent":
            return create_platform_event(
                "giftpaypiggy",
                giftCount=self.gift_count or 1,
                tier=self.member_level,
                **common,
            )

        return None
