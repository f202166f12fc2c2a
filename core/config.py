"""
Runtime configuration manager.

Loads `shared/config/livealerts.json` (or the path in LIVEALERTS_CONFIG),
deep-merges it over built-in defaults, and validates the result with a
JSON Schema. Validation failures are treated as warnings: offending keys
fall back to their defaults so the runtime can continue booting.

Secrets never live in the JSON document; they are read from the
environment (see `load_secrets`).
"""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from shared.logging.logger import get_logger

log = get_logger("core.config")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "shared" / "config" / "livealerts.json"


class ConfigurationError(RuntimeError):
    """Raised when a subsystem cannot start because of invalid configuration."""


# ----------------------------------------------------------------------
# Defaults
# ----------------------------------------------------------------------

DEFAULTS: Dict[str, Any] = {
    "general": {
        "debugEnabled": False,
        "viewerCountPollingIntervalMs": 60000,
        "treatNullViewerCountAsError": True,
        "messagesEnabled": True,
        "commandsEnabled": True,
        "greetingsEnabled": True,
        "farewellsEnabled": True,
        "followsEnabled": True,
        "giftsEnabled": True,
        "raidsEnabled": True,
        "paypiggiesEnabled": True,
        "sharesEnabled": True,
        "filterOldMessages": True,
        "userSuppressionEnabled": True,
        "maxNotificationsPerUser": 5,
        "suppressionWindowMs": 60000,
        "suppressionDurationMs": 300000,
        "suppressionCleanupIntervalMs": 300000,
        "streamPollingInterval": 60,
        "fullCheckInterval": 300000,
        "maxStreams": 2,
        "maxMessageLength": 500,
        "ttsEnabled": False,
    },
    "cooldowns": {
        "defaultCooldownMs": 5000,
        "heavyCommandCooldownMs": 30000,
        "heavyCommandThreshold": 3,
        "heavyCommandWindowMs": 60000,
        "globalCooldownMs": 60000,
        "maxEntries": 1000,
    },
    "spam": {
        "enabled": True,
        "detectionWindow": 5,
        "maxIndividualNotifications": 2,
        "lowValueThreshold": 10,
        "dedupeEnabled": False,
        "dedupeWindowMs": 2000,
    },
    "retry": {
        "baseDelayMs": 2000,
        "maxDelayMs": 60000,
        "exponentCap": 10,
        "maxAttempts": 0,
        "stopOnAuthError": True,
    },
    "streamDetection": {
        "enabled": True,
        "retryIntervalSeconds": 15,
        "maxRetries": -1,
        "timeoutMs": 15000,
    },
    "displayQueue": {
        "maxQueueSize": 100,
    },
    "obs": {
        "enabled": False,
    },
    "tts": {
        "enabled": False,
        "onlyForGifts": False,
    },
    "commands": {},
    "youtube": {
        "enabled": False,
        "username": "",
        "notificationsEnabled": True,
        "viewerCountEnabled": True,
        "viewerCountSource": "youtube-viewer-count",
        "dailyQuotaUnits": 10000,
        "quotaBufferUnits": 500,
        "chatPollIntervalSeconds": 2.5,
        "innertubeTimeoutMs": 10000,
    },
    "twitch": {
        "enabled": False,
        "username": "",
        "notificationsEnabled": True,
        "viewerCountEnabled": True,
        "viewerCountSource": "twitch-viewer-count",
    },
    "tiktok": {
        "enabled": False,
        "username": "",
        "notificationsEnabled": True,
        "viewerCountEnabled": True,
        "viewerCountSource": "tiktok-viewer-count",
    },
    "streamelements": {
        "enabled": False,
        "notificationsEnabled": True,
        "viewerCountEnabled": False,
    },
}

PLATFORM_SECTIONS = ("youtube", "twitch", "tiktok", "streamelements")


# ----------------------------------------------------------------------
# Schema (structural only; unknown keys are allowed)
# ----------------------------------------------------------------------

_BOOL = {"type": "boolean"}
_NON_NEG_INT = {"type": "integer", "minimum": 0}
_NUMBER = {"type": "number"}

_PLATFORM_SCHEMA = {
    "type": "object",
    "properties": {
        "enabled": _BOOL,
        "username": {"type": "string"},
        "notificationsEnabled": _BOOL,
        "viewerCountEnabled": _BOOL,
        "viewerCountSource": {"type": "string"},
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "general": {
            "type": "object",
            "properties": {
                "viewerCountPollingIntervalMs": _NUMBER,
                "maxNotificationsPerUser": _NON_NEG_INT,
                "suppressionWindowMs": _NON_NEG_INT,
                "suppressionDurationMs": _NON_NEG_INT,
                "suppressionCleanupIntervalMs": _NON_NEG_INT,
                "streamPollingInterval": _NUMBER,
                "fullCheckInterval": _NON_NEG_INT,
                "maxStreams": _NON_NEG_INT,
                "maxMessageLength": _NON_NEG_INT,
                "userSuppressionEnabled": _BOOL,
                "messagesEnabled": _BOOL,
                "commandsEnabled": _BOOL,
                "greetingsEnabled": _BOOL,
                "farewellsEnabled": _BOOL,
                "followsEnabled": _BOOL,
                "giftsEnabled": _BOOL,
                "raidsEnabled": _BOOL,
                "paypiggiesEnabled": _BOOL,
                "sharesEnabled": _BOOL,
            },
        },
        "cooldowns": {
            "type": "object",
            "properties": {
                "defaultCooldownMs": _NON_NEG_INT,
                "heavyCommandCooldownMs": _NON_NEG_INT,
                "heavyCommandThreshold": _NON_NEG_INT,
                "heavyCommandWindowMs": _NON_NEG_INT,
                "maxEntries": _NON_NEG_INT,
            },
        },
        "spam": {
            "type": "object",
            "properties": {
                "enabled": _BOOL,
                "detectionWindow": _NUMBER,
                "maxIndividualNotifications": _NON_NEG_INT,
                "lowValueThreshold": _NUMBER,
                "dedupeEnabled": _BOOL,
                "dedupeWindowMs": _NON_NEG_INT,
            },
        },
        "retry": {"type": "object"},
        "streamDetection": {"type": "object"},
        "displayQueue": {"type": "object"},
        "obs": {"type": "object"},
        "tts": {"type": "object"},
        "commands": {"type": "object"},
        **{name: _PLATFORM_SCHEMA for name in PLATFORM_SECTIONS},
    },
}


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"Config not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            log.warning(f"Config root at {path} is not an object; ignoring")
    except Exception as e:
        log.warning(f"Failed to load config {path} ({e}); using defaults")

    return {}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _drop_path(payload: Dict[str, Any], path: List[Any]) -> None:
    node: Any = payload
    for part in path[:-1]:
        if not isinstance(node, dict) or part not in node:
            return
        node = node[part]
    if isinstance(node, dict) and path:
        node.pop(path[-1], None)


def validate_config(raw: Dict[str, Any]) -> List[str]:
    """
    Validate a raw config document and strip invalid keys in place.

    Returns the list of human-readable problems found.
    """
    validator = Draft7Validator(CONFIG_SCHEMA)
    problems: List[str] = []

    for error in sorted(validator.iter_errors(raw), key=lambda e: list(e.path)):
        location = ".".join(str(p) for p in error.path) or "<root>"
        problems.append(f"{location}: {error.message}")
        if error.path:
            _drop_path(raw, list(error.path))

    return problems


def load_secrets() -> Dict[str, Optional[str]]:
    """
    Resolve platform credentials from the environment (after load_dotenv).
    """
    return {
        "youtube_api_key": os.getenv("YOUTUBE_API_KEY"),
        "twitch_oauth_token": os.getenv("TWITCH_OAUTH_TOKEN"),
        "twitch_client_id": os.getenv("TWITCH_CLIENT_ID"),
        "twitch_bot_nick": os.getenv("TWITCH_BOT_NICK"),
    }


# ----------------------------------------------------------------------
# Config manager
# ----------------------------------------------------------------------

class ConfigManager:
    """
    Read-mostly view over the merged configuration document.

    Contract used by the core:
    - get(section) / get_value(section, key, default)
    - get_section(platform) / get_platform_config(platform)
    - are_notifications_enabled(setting_key, platform)
    - is_enabled(platform), get_platforms()
    - get_tts_config(), is_debug_enabled()
    """

    def __init__(self, raw: Optional[Dict[str, Any]] = None):
        raw = copy.deepcopy(raw) if raw is not None else {}

        problems = validate_config(raw)
        for problem in problems:
            log.warning(f"Config validation warning: {problem}; using default")

        self._data = _deep_merge(DEFAULTS, raw)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ConfigManager":
        resolved = Path(path or os.getenv("LIVEALERTS_CONFIG") or DEFAULT_CONFIG_PATH)
        manager = cls(_load_json(resolved))
        log.info(
            f"Configuration loaded from {resolved} "
            f"(enabled platforms: {manager.get_platforms()})"
        )
        return manager

    # ------------------------------------------------------------

    def get(self, section: str) -> Dict[str, Any]:
        value = self._data.get(section)
        return dict(value) if isinstance(value, dict) else {}

    def get_value(self, section: str, key: str, default: Any = None) -> Any:
        return self.get(section).get(key, default)

    def require_section(self, section: str) -> Dict[str, Any]:
        value = self._data.get(section)
        if not isinstance(value, dict):
            raise ConfigurationError(f"Missing configuration section: {section}")
        return dict(value)

    def get_section(self, platform: str) -> Dict[str, Any]:
        return self.get(str(platform).lower())

    def get_platform_config(self, platform: str) -> Dict[str, Any]:
        return self.get_section(platform)

    def is_enabled(self, platform: str) -> bool:
        return bool(self.get_section(platform).get("enabled", False))

    def get_platforms(self) -> List[str]:
        return [name for name in PLATFORM_SECTIONS if self.is_enabled(name)]

    def are_notifications_enabled(self, setting_key: str, platform: Optional[str] = None) -> bool:
        """
        Platform-level flags override general ones.

        A platform with `notificationsEnabled: false` mutes every type.
        """
        if platform:
            section = self.get_section(platform)
            if section.get("notificationsEnabled") is False:
                return False
            if setting_key in section:
                return bool(section[setting_key])

        return bool(self.get("general").get(setting_key, True))

    def get_tts_config(self) -> Dict[str, Any]:
        tts = self.get("tts")
        tts["enabled"] = bool(tts.get("enabled") or self.get("general").get("ttsEnabled"))
        return tts

    def is_debug_enabled(self) -> bool:
        return bool(self.get("general").get("debugEnabled", False))

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


__all__ = [
    "ConfigManager",
    "ConfigurationError",
    "DEFAULTS",
    "CONFIG_SCHEMA",
    "PLATFORM_SECTIONS",
    "load_secrets",
    "validate_config",
]
