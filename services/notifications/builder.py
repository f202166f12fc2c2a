"""
Notification data builder.

Turns a validated platform payload into the data record a display item
carries: stable id, display / TTS / log messages and the original fields.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from shared.chat.events import kind_from_type

# ----------------------------------------------------------------------
# Priorities (higher wins)
# ----------------------------------------------------------------------

PRIORITY_LEVELS: Dict[str, int] = {
    "CHAT": 1,
    "GREETING": 2,
    "COMMAND": 3,
    "FOLLOW": 4,
    "SHARE": 4,
    "GIFT": 6,
    "ENVELOPE": 6,
    "MEMBER": 8,
    "RAID": 10,
}

# type -> settingKey / priority / VFX command key
NOTIFICATION_CONFIGS: Dict[str, Dict[str, Any]] = {
    "platform:follow": {
        "setting_key": "followsEnabled",
        "priority": PRIORITY_LEVELS["FOLLOW"],
        "command_key": "follows",
    },
    "platform:share": {
        "setting_key": "sharesEnabled",
        "priority": PRIORITY_LEVELS["SHARE"],
        "command_key": "shares",
    },
    "platform:gift": {
        "setting_key": "giftsEnabled",
        "priority": PRIORITY_LEVELS["GIFT"],
        "command_key": "gifts",
    },
    "platform:envelope": {
        "setting_key": "giftsEnabled",
        "priority": PRIORITY_LEVELS["ENVELOPE"],
        "command_key": "envelopes",
    },
    "platform:paypiggy": {
        "setting_key": "paypiggiesEnabled",
        "priority": PRIORITY_LEVELS["MEMBER"],
        "command_key": "paypiggies",
    },
    "platform:subscriber": {
        "setting_key": "paypiggiesEnabled",
        "priority": PRIORITY_LEVELS["MEMBER"],
        "command_key": "paypiggies",
    },
    "platform:giftpaypiggy": {
        "setting_key": "paypiggiesEnabled",
        "priority": PRIORITY_LEVELS["MEMBER"],
        "command_key": "paypiggies",
    },
    "platform:raid": {
        "setting_key": "raidsEnabled",
        "priority": PRIORITY_LEVELS["RAID"],
        "command_key": "raids",
    },
}

MONETIZATION_TYPES = frozenset(
    {"platform:gift", "platform:paypiggy", "platform:subscriber", "platform:giftpaypiggy", "platform:envelope"}
)

CURRENCY_SYMBOLS = {"USD": "$", "CAD": "CA$", "AUD": "A$", "EUR": "€", "GBP": "£", "JPY": "¥"}

# Keys the builder computes itself; payload copies of these are dropped.
_RESERVED_KEYS = {
    "type", "platform", "username", "userId", "id", "message",
    "displayMessage", "ttsMessage", "logMessage", "processedAt", "timestamp",
    "duration",
}

MAX_DISPLAY_USERNAME = 40
MAX_TTS_USERNAME = 25


# ----------------------------------------------------------------------
# Text helpers
# ----------------------------------------------------------------------

def truncate_username(username: Any, max_length: int = MAX_DISPLAY_USERNAME) -> str:
    name = username if isinstance(username, str) else ""
    if len(name) <= max_length:
        return name
    return name[: max_length - 3] + "..."


def sanitize_username_for_tts(username: Any, max_length: int = MAX_TTS_USERNAME) -> str:
    name = username if isinstance(username, str) else ""
    spoken = re.sub(r"[^\w\s]", " ", name)
    spoken = re.sub(r"_+", " ", spoken)
    spoken = re.sub(r"\s+", " ", spoken).strip()
    return spoken[:max_length].strip() or "someone"


def format_ordinal(value: Any) -> str:
    n = abs(int(value))
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    return f"{n}{ {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th') }"


def format_currency(amount: float, currency: str) -> str:
    code = str(currency or "").strip().upper()
    decimals = 0 if code == "JPY" else 2
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{amount:,.{decimals}f}"
    return f"{amount:,.{decimals}f} {code}".strip()


def format_currency_for_tts(amount: float, currency: str) -> str:
    code = str(currency or "").strip().upper()
    whole = int(amount)
    cents = int(round((amount - whole) * 100))
    names = {"USD": "dollars", "CAD": "dollars", "AUD": "dollars", "EUR": "euros", "GBP": "pounds", "JPY": "yen"}
    unit = names.get(code, code)
    if cents and code != "JPY":
        return f"{whole} {unit} {cents}"
    return f"{whole} {unit}"


def _tier_suffix(tier: Any) -> str:
    if not tier or str(tier) in ("1000", "1"):
        return ""
    tier = str(tier)
    return f" (Tier { {'2000': '2', '3000': '3'}.get(tier, tier)})"


def _level_suffix(level: Any) -> str:
    if not level or level == "Member":
        return ""
    return f" ({level})"


def _months(data: Dict[str, Any]) -> int:
    try:
        return max(int(data.get("months") or 0), 0)
    except (TypeError, ValueError):
        return 0


# ----------------------------------------------------------------------
# Per-type messages: (display, tts, log)
# ----------------------------------------------------------------------

def _gift_messages(data: Dict[str, Any]):
    user = truncate_username(data["username"])
    spoken = sanitize_username_for_tts(data["username"])

    if data.get("isAggregated") and data.get("aggregatedMessage"):
        text = data["aggregatedMessage"]
        return text, text, f"Aggregated gifts: {text}"

    gift_type = data["giftType"]
    count = int(data.get("giftCount") or 1)
    amount = float(data.get("amount") or 0)
    currency = str(data.get("currency") or "").strip()
    note = data.get("message") if isinstance(data.get("message"), str) and data["message"].strip() else ""

    if currency.lower() == "bits":
        bits = int(amount)
        display = f"{user} sent {bits} bits" + (f": {note}" if note else "")
        tts = f"{spoken} sent {bits} bits" + (f". {note}" if note else "")
        return display, tts, f"Bits from {data['username']}: {bits}"

    if currency and currency.lower() != "coins":
        display = f"{user} sent a {format_currency(amount, currency)} {gift_type}" + (f": {note}" if note else "")
        tts = f"{spoken} sent a {format_currency_for_tts(amount, currency)} {gift_type}" + (f". {note}" if note else "")
        return display, tts, f"Gift from {data['username']}: {gift_type} ({format_currency(amount, currency)})"

    count_text = f"{count}x " if count > 1 else ""
    coin_label = "coin" if amount == 1 else "coins"
    coin_text = f" ({amount:g} {coin_label})" if amount > 0 else ""
    noun = gift_type if "gift" in gift_type.lower() else f"{gift_type} gift"
    display = f"{user} sent {count_text}{noun}{coin_text}"
    spoken_count = f"{count} " if count > 1 else "a "
    tts = f"{spoken} sent {spoken_count}{gift_type}{'s' if count > 1 else ''}"
    if amount > 0:
        tts += f" for {amount:g} {coin_label}"
    return display, tts, f"Gift from {data['username']}: {count}x {gift_type} ({amount:g} coins)"


def _paypiggy_messages(data: Dict[str, Any], platform: str):
    user = truncate_username(data["username"])
    spoken = sanitize_username_for_tts(data["username"])
    months = _months(data)
    renewal = data.get("isRenewal") is True or months > 1

    if platform == "youtube":
        level = _level_suffix(data.get("level") or data.get("tier"))
        month_text = f" for their {format_ordinal(months)} month" if months > 0 else ""
        if renewal:
            return (
                f"{user} renewed membership{month_text}{level}!",
                f"{spoken} renewed membership{month_text}",
                f"Member renewal: {data['username']} ({months} months)",
            )
        return (
            f"{user} just became a member!{level}",
            f"{spoken} just became a member",
            f"New member: {data['username']}!",
        )

    tier = _tier_suffix(data.get("tier"))
    month_text = f" for {months} months" if months > 0 else ""
    if renewal:
        return (
            f"{user} renewed subscription{month_text}!{tier}",
            f"{spoken} renewed subscription{month_text}",
            f"Subscriber renewal: {data['username']} ({months} months){tier}",
        )
    return (
        f"{user} just subscribed!{tier}",
        f"{spoken} just subscribed",
        f"New subscriber: {data['username']}!{tier}",
    )


def _giftpaypiggy_messages(data: Dict[str, Any], platform: str):
    user = truncate_username(data["username"])
    spoken = sanitize_username_for_tts(data["username"])
    count = int(data["giftCount"])
    noun, plural = ("membership", "memberships") if platform == "youtube" else ("subscription", "subscriptions")
    tier = _tier_suffix(data.get("tier")) if platform == "twitch" else ""
    if count > 1:
        return (
            f"{user} gifted {count} {plural}!{tier}",
            f"{spoken} gifted {count} {plural}",
            f"Gifted {plural}: {data['username']} x{count}",
        )
    return (
        f"{user} gifted a {noun}!{tier}",
        f"{spoken} gifted a {noun}",
        f"Gifted {noun}: {data['username']}",
    )


def generate_messages(notification_type: str, platform: str, data: Dict[str, Any]):
    """
    Return (display, tts, log) for a notification type.
    """
    user = truncate_username(data.get("username"))
    spoken = sanitize_username_for_tts(data.get("username"))

    if notification_type == "platform:follow":
        return f"{user} just followed!", f"{spoken} just followed", f"New follower: {data['username']}"

    if notification_type == "platform:share":
        return f"{user} shared the stream", f"{spoken} shared the stream", f"Stream shared by {data['username']}"

    if notification_type == "platform:raid":
        viewers = int(data["viewerCount"])
        return (
            f"Incoming raid from {user} with {viewers} viewers!",
            f"Incoming raid from {spoken} with {viewers} {'viewer' if viewers == 1 else 'viewers'}",
            f"Incoming raid from {data['username']} with {viewers} viewers!",
        )

    if notification_type == "platform:envelope":
        return (
            f"{user} sent a treasure chest!",
            f"{sanitize_username_for_tts(data['username'], 12)} sent a treasure chest",
            f"Treasure chest from {data['username']}",
        )

    if notification_type == "platform:gift":
        return _gift_messages(data)

    if notification_type in ("platform:paypiggy", "platform:subscriber"):
        return _paypiggy_messages(data, platform)

    if notification_type == "platform:giftpaypiggy":
        return _giftpaypiggy_messages(data, platform)

    if notification_type == "greeting":
        return f"Welcome, {user}!", f"Hi {spoken}", f"Greeting: {data.get('username')}"

    if notification_type == "command":
        command = data.get("command", "")
        return f"{user} used command {command}", f"{spoken} used command {data.get('commandName', '')}", f"Command {command} from {data.get('username')}"

    message = data.get("message") or ""
    return message, f"{spoken} says {message}" if message else "", f"Chat from {data.get('username')}: {message}"


# ----------------------------------------------------------------------

def build_notification(
    notification_type: str,
    platform: str,
    payload: Dict[str, Any],
    *,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Build notification data. Raises ValueError when the payload cannot
    produce a display message.
    """
    if not isinstance(platform, str) or not platform.strip():
        raise ValueError("Notification requires platform")
    platform = platform.strip().lower()

    username = payload.get("username")
    if not isinstance(username, str) or not username.strip():
        raise ValueError("Notification requires username")

    data = {k: v for k, v in payload.items() if k not in _RESERVED_KEYS}
    data["username"] = username.strip()
    if payload.get("message") is not None:
        data["message"] = payload["message"]

    display, tts, log_message = generate_messages(notification_type, platform, data)
    if not display:
        raise ValueError(f"No display message for {notification_type}")

    processed_at = time.time() if now is None else now
    kind = kind_from_type(notification_type) or notification_type
    user_id = payload.get("userId")

    notification: Dict[str, Any] = {
        "id": f"{platform}-{kind}-{uuid4()}",
        "type": notification_type,
        "platform": platform,
        "username": data.pop("username"),
        "userId": str(user_id) if user_id is not None else None,
        "message": data.pop("message", None),
        "displayMessage": display,
        "ttsMessage": tts,
        "logMessage": log_message,
        "processedAt": processed_at,
        "timestamp": datetime.fromtimestamp(processed_at, tz=timezone.utc)
        .isoformat()
        .replace("+00:00", "Z"),
    }
    if payload.get("id"):
        notification["sourceId"] = payload["id"]
    notification.update(data)
    return notification


__all__ = [
    "PRIORITY_LEVELS",
    "NOTIFICATION_CONFIGS",
    "MONETIZATION_TYPES",
    "build_notification",
    "generate_messages",
    "format_currency",
    "format_ordinal",
    "sanitize_username_for_tts",
    "truncate_username",
]
