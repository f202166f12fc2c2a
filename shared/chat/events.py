"""Canonical normalized platform event schema and helpers.

Every platform adapter turns its native payloads into a PlatformEvent and
hands `to_payload()` to the runtime handlers. The payload keys are the
ones the notification manager and chat router consume.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shared.platforms.state import normalize_platform_name

# kind -> canonical platform-scoped type
EVENT_TYPES: Dict[str, str] = {
    "chat": "platform:chat",
    "follow": "platform:follow",
    "gift": "platform:gift",
    "paypiggy": "platform:paypiggy",
    "giftpaypiggy": "platform:giftpaypiggy",
    "subscriber": "platform:subscriber",
    "raid": "platform:raid",
    "share": "platform:share",
    "envelope": "platform:envelope",
}

NOTIFICATION_KINDS = tuple(k for k in EVENT_TYPES if k != "chat")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_iso(ts: Any) -> str:
    if not ts:
        return _utc_now_iso()
    if isinstance(ts, datetime):
        parsed = ts
    else:
        try:
            parsed = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"timestamp is not ISO-8601: {ts}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def is_iso_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def kind_from_type(value: str) -> Optional[str]:
    """'platform:gift' or 'gift' -> 'gift'; unknown -> None."""
    raw = str(value or "").strip().lower()
    kind = raw.split(":", 1)[1] if raw.startswith("platform:") else raw
    return kind if kind in EVENT_TYPES else None


# ----------------------------------------------------------------------
# Field validation
# ----------------------------------------------------------------------

def _finite(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_event_fields(kind: str, payload: Dict[str, Any]) -> List[str]:
    """
    Return the list of problems with `payload` for the given event kind.
    An empty list means the payload is valid.
    """
    problems: List[str] = []

    if not _non_empty_str(payload.get("username")):
        problems.append("username is required")

    ts = payload.get("timestamp")
    if ts is not None and not is_iso_timestamp(ts):
        problems.append("timestamp must be ISO-8601")

    if kind in ("gift", "envelope"):
        if not _non_empty_str(payload.get("giftType")):
            problems.append("giftType is required")
        count = payload.get("giftCount")
        if not _finite(count) or count < 1:
            problems.append("giftCount must be a finite number >= 1")
        amount = payload.get("amount")
        if not _finite(amount) or amount < 0:
            problems.append("amount must be a finite number >= 0")
        if not _non_empty_str(payload.get("currency")):
            problems.append("currency is required")

    elif kind == "giftpaypiggy":
        count = payload.get("giftCount")
        if not _finite(count) or count < 1:
            problems.append("giftCount must be a finite number >= 1")

    elif kind in ("paypiggy", "subscriber"):
        months = payload.get("months")
        if months is not None and (not _finite(months) or months < 0):
            problems.append("months must be a non-negative number")

    elif kind == "raid":
        viewers = payload.get("viewerCount")
        if not _finite(viewers) or viewers < 0:
            problems.append("viewerCount must be a finite number >= 0")

    elif kind == "chat":
        if not isinstance(payload.get("message"), str):
            problems.append("message is required")

    return problems


# ----------------------------------------------------------------------
# Event model
# ----------------------------------------------------------------------

@dataclass
class PlatformEvent:
    kind: str
    platform: str
    username: str
    id: str
    timestamp: str
    timestamp_ms: float
    user_id: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    processed_at: float = field(default_factory=time.time)

    @property
    def type(self) -> str:
        return EVENT_TYPES[self.kind]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "platform": self.platform,
            "username": self.username,
            "userId": self.user_id,
            "id": self.id,
            "timestamp": self.timestamp,
            "timestampMs": self.timestamp_ms,
        }
        if self.message is not None:
            payload["message"] = self.message
        payload.update(self.data)
        return payload


def create_platform_event(
    kind: str,
    *,
    platform: str,
    username: str,
    user_id: Optional[str] = None,
    message: Optional[str] = None,
    timestamp: Any = None,
    event_id: Optional[str] = None,
    **data: Any,
) -> PlatformEvent:
    """
    Build a validated PlatformEvent. Raises ValueError when a field the
    variant requires is missing or malformed.
    """
    if kind not in EVENT_TYPES:
        raise ValueError(f"Unsupported event kind: {kind}")

    platform = normalize_platform_name(platform)
    iso = _normalize_iso(timestamp)

    candidate = {"username": username, "message": message, "timestamp": iso, **data}
    problems = validate_event_fields(kind, candidate)
    if problems:
        raise ValueError(f"Invalid {kind} event: {'; '.join(problems)}")

    return PlatformEvent(
        kind=kind,
        platform=platform,
        username=str(username).strip(),
        id=event_id or f"{platform}-{kind}-{uuid4()}",
        timestamp=iso,
        timestamp_ms=time.monotonic() * 1000.0,
        user_id=str(user_id) if user_id is not None else None,
        message=message,
        data=dict(data),
    )


__all__ = [
    "EVENT_TYPES",
    "NOTIFICATION_KINDS",
    "PlatformEvent",
    "create_platform_event",
    "is_iso_timestamp",
    "kind_from_type",
    "validate_event_fields",
]
