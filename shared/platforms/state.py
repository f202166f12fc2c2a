"""Platform health and connection state definitions.

This module centralizes the runtime's interpretation of platform states.
Two vocabularies exist and are kept deliberately small:

- PlatformHealth   : lifecycle of a platform adapter (starting -> healthy,
                     retrying or failed), tracked by the lifecycle service
- ConnectionStatus : lifecycle of a single YouTube stream connection
                     (pending -> ready, broken, terminated)

Both accept loose inputs (strings, booleans) so config and telemetry
ingestion stays tolerant.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet


class PlatformHealth(Enum):
    UNKNOWN = "unknown"
    DISABLED = "disabled"
    STARTING = "starting"
    HEALTHY = "healthy"
    RETRYING = "retrying"
    FAILED = "failed"

    @classmethod
    def from_value(
        cls, value: Any, *, default: "PlatformHealth" = None
    ) -> "PlatformHealth":
        if isinstance(value, cls):
            return value

        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if normalized in {member.name.lower(), member.value}:
                    return member
            # Legacy vocabulary used by older dashboards
            if normalized in {"ready", "connected"}:
                return cls.HEALTHY
            if normalized == "initializing":
                return cls.STARTING

        if isinstance(value, bool):
            return cls.HEALTHY if value else cls.FAILED

        return default or cls.UNKNOWN


class ConnectionStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    BROKEN = "broken"
    TERMINATED = "terminated"

    @classmethod
    def from_value(
        cls, value: Any, *, default: "ConnectionStatus" = None
    ) -> "ConnectionStatus":
        if isinstance(value, cls):
            return value

        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if normalized in {member.name.lower(), member.value}:
                    return member

        return default or cls.BROKEN


# Statuses that count as "active" for viewer aggregation
ACTIVE_CONNECTION_STATUSES: FrozenSet[ConnectionStatus] = frozenset(
    {ConnectionStatus.PENDING, ConnectionStatus.READY}
)

SUPPORTED_PLATFORMS = ("youtube", "twitch", "tiktok", "streamelements")

# Platforms whose chat is reachable without a live broadcast.
DEFAULT_LIVE_STATUS: Dict[str, bool] = {
    "tiktok": False,
    "twitch": True,
    "youtube": False,
}


def normalize_platform_name(value: Any) -> str:
    platform = str(value or "").strip().lower()
    if platform not in SUPPORTED_PLATFORMS:
        raise ValueError(f"Unsupported platform: {value}")
    return platform


__all__ = [
    "PlatformHealth",
    "ConnectionStatus",
    "ACTIVE_CONNECTION_STATUSES",
    "SUPPORTED_PLATFORMS",
    "DEFAULT_LIVE_STATUS",
    "normalize_platform_name",
]
