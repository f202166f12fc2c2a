from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.chat.events import PlatformEvent, create_platform_event


def _int_tag(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


@dataclass
class TwitchChatMessage:
    """
    Parsed Twitch IRC line (PRIVMSG or USERNOTICE).

    `notice_type` carries the USERNOTICE `msg-id` tag (sub, resub,
    subgift, submysterygift, raid, ...); it is None for PRIVMSG.
    """

    raw: str
    username: str
    channel: str
    text: str

    command: str = "PRIVMSG"
    message_id: Optional[str] = None
    user_id: Optional[str] = None
    room_id: Optional[str] = None
    display_name: Optional[str] = None
    badges: List[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    notice_type: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def bits(self) -> int:
        return _int_tag(self.tags.get("bits"), 0) or 0

    def to_platform_event(self) -> Optional[PlatformEvent]:
        """
        Map to a normalized event, or None for notices the runtime ignores.
        """
        common: Dict[str, Any] = {
            "platform": "twitch",
            "username": self.display_name or self.username,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "event_id": self.message_id,
        }

        if self.command == "PRIVMSG":
            if self.bits > 0:
                return create_platform_event(
                    "gift",
                    message=self.text or None,
                    giftType="bits",
                    giftCount=1,
                    amount=self.bits,
                    currency="bits",
                    **common,
                )
            return create_platform_event(
                "chat",
                message=self.text,
                badges=list(self.badges),
                **common,
            )

        if self.command != "USERNOTICE":
            return None

        tier = self.tags.get("msg-param-sub-plan") or None

        if self.notice_type in ("sub", "resub"):
            extra: Dict[str, Any] = {}
            months = _int_tag(self.tags.get("msg-param-cumulative-months"))
            if months is not None:
                extra["months"] = months
            return create_platform_event(
                "paypiggy",
                message=self.text or None,
                tier=tier,
                isRenewal=self.notice_type == "resub",
                **extra,
                **common,
            )

        if self.notice_type in ("subgift", "submysterygift"):
            count = _int_tag(self.tags.get("msg-param-mass-gift-count"), 1) or 1
            if self.notice_type == "subgift":
                count = 1
            extra = {}
            recipient = self.tags.get("msg-param-recipient-display-name")
            if recipient:
                extra["recipient"] = recipient
            return create_platform_event(
                "giftpaypiggy",
                giftCount=count,
                tier=tier,
                **extra,
                **common,
            )

        if self.notice_type == "raid":
            common["username"] = (
                self.tags.get("msg-param-displayName")
                or self.tags.get("msg-param-login")
                or common["username"]
            )
            return create_platform_event(
                "raid",
                viewerCount=_int_tag(self.tags.get("msg-param-viewerCount"), 0),
                **common,
            )

        return None
