"""
Chat routing: chat lines, greetings and `!commands` into the display queue.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import time
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple

from core.event_bus import VFX_COMMAND_REQUESTED
from services.chat.cooldowns import CommandCooldownService
from services.notifications.builder import PRIORITY_LEVELS, build_notification
from shared.logging.logger import get_logger

log = get_logger("chat.router")

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_HTML_TAG = re.compile(r"<[^>]+>")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Greetings that accompany a command outrank the command itself
GREETING_WITH_COMMAND_PRIORITY = 6


def sanitize_chat_message(raw: Any, max_length: int = 500) -> str:
    text = raw if isinstance(raw, str) else ""
    text = _ZERO_WIDTH.sub(" ", text)
    text = _HTML_TAG.sub(" ", text)
    text = _CONTROL.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    if max_length and len(text) > max_length:
        text = text[:max_length].rstrip()
    return text


class FirstMessageTracker:
    """
    Remembers who has chatted during the current streaming session.
    """

    def __init__(self):
        self._seen: Set[Tuple[str, str]] = set()

    def is_first_message(self, platform: str, user_key: str) -> bool:
        key = (platform, user_key)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def reset(self) -> None:
        self._seen.clear()


class ChatNotificationRouter:
    def __init__(
        self,
        *,
        config_manager,
        display_queue,
        cooldowns: CommandCooldownService,
        lifecycle=None,
        first_messages: Optional[FirstMessageTracker] = None,
        vfx_service=None,
        event_bus=None,
    ):
        if config_manager is None:
            raise RuntimeError("ChatNotificationRouter requires a config manager")
        if display_queue is None:
            raise RuntimeError("ChatNotificationRouter requires a display queue")
        if cooldowns is None:
            raise RuntimeError("ChatNotificationRouter requires a command cooldown service")

        self.config_manager = config_manager
        self.display_queue = display_queue
        self.cooldowns = cooldowns
        self.lifecycle = lifecycle
        self.first_messages = first_messages or FirstMessageTracker()
        self.vfx_service = vfx_service
        self.event_bus = event_bus

    # ------------------------------------------------------------

    async def handle_chat_message(self, platform: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        platform = str(platform or "").lower()
        username = payload.get("username")

        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            return self._skipped(platform, username, "empty message")

        if not self._flag(platform, "messagesEnabled"):
            return self._skipped(platform, username, "messages disabled")

        if self._is_old_message(platform, payload.get("timestamp")):
            return self._skipped(platform, username, "old message (sent before connection)")

        max_length = int(self.config_manager.get_value("general", "maxMessageLength", 500) or 0)
        text = sanitize_chat_message(message, max_length)
        if not text:
            return self._skipped(platform, username, "empty after sanitization")

        user_key = str(payload.get("userId") or str(username or "").lower())
        is_first = self.first_messages.is_first_message(platform, user_key)
        greetings_enabled = self._flag(platform, "greetingsEnabled")

        log.info(f"[{platform}] {username}: {text[:200]}")
        self._enqueue("chat", platform, PRIORITY_LEVELS["CHAT"], {
            "username": username,
            "userId": payload.get("userId"),
            "message": text,
        })

        command = self.detect_command(text) if self._flag(platform, "commandsEnabled") else None
        if command:
            routed = await self._process_command(platform, payload, user_key, command, is_first and greetings_enabled)
            return {"routed": True, "command": command["command"] if routed else None, "greeted": is_first and greetings_enabled and routed}

        greeted = False
        if is_first and greetings_enabled:
            self._enqueue("greeting", platform, PRIORITY_LEVELS["GREETING"], {
                "username": username,
                "userId": payload.get("userId"),
            })
            greeted = True

        return {"routed": True, "command": None, "greeted": greeted}

    def reset_session(self) -> None:
        self.first_messages.reset()

    # ------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------

    def detect_command(self, text: str) -> Optional[Dict[str, Any]]:
        """
        Match the first word of a `!` message against the `commands`
        section. Entries are either a trigger string or a dict with a
        `trigger` key.
        """
        if not text.startswith("!"):
            return None
        trigger = text.split()[0].lower()

        for command_key, entry in self.config_manager.get("commands").items():
            if isinstance(entry, str):
                entry = {"trigger": entry}
            if not isinstance(entry, dict):
                continue
            configured = str(entry.get("trigger") or entry.get("command") or "").lower()
            if configured and not configured.startswith("!"):
                configured = f"!{configured}"
            if configured == trigger:
                return {**entry, "command_key": command_key, "command": configured}
        return None

    async def _process_command(
        self,
        platform: str,
        payload: Dict[str, Any],
        user_key: str,
        command: Dict[str, Any],
        greet: bool,
    ) -> bool:
        username = payload.get("username")
        section = self.config_manager.get_section(platform)
        cooldowns = self.config_manager.get("cooldowns")
        per_user = section.get("defaultCooldownMs", cooldowns.get("defaultCooldownMs"))
        heavy = section.get("heavyCommandCooldownMs", cooldowns.get("heavyCommandCooldownMs"))
        global_ms = section.get("globalCooldownMs", cooldowns.get("globalCooldownMs"))

        if not self.cooldowns.check_user_cooldown(user_key, per_user, heavy):
            log.warning(f"[{platform}] {username} tried {command['command']} but is on per-user cooldown")
            return False
        if not self.cooldowns.check_global_cooldown(command["command"], global_ms):
            log.warning(f"[{platform}] {username} tried {command['command']} but it is on global cooldown")
            return False

        self.cooldowns.update_user_cooldown(user_key)
        self.cooldowns.update_global_cooldown(command["command"])

        if greet:
            self._enqueue("greeting", platform, GREETING_WITH_COMMAND_PRIORITY, {
                "username": username,
                "userId": payload.get("userId"),
            })

        vfx_config = {k: v for k, v in command.items() if k not in ("trigger",)}
        self._enqueue(
            "command",
            platform,
            PRIORITY_LEVELS["COMMAND"],
            {
                "username": username,
                "userId": payload.get("userId"),
                "command": command["command"],
                "commandName": command["command"].lstrip("!"),
            },
            vfx_config=vfx_config,
        )

        context = {"username": username, "platform": platform, "type": "command", **vfx_config}
        if self.event_bus is not None:
            self.event_bus.emit(VFX_COMMAND_REQUESTED, context)
        if self.vfx_service is not None:
            try:
                result = self.vfx_service.execute_command(command, context)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[{platform}] VFX command {command['command']} failed: {e}")
        return True

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _flag(self, platform: str, key: str) -> bool:
        section = self.config_manager.get_section(platform)
        if isinstance(section.get(key), bool):
            return section[key]
        return bool(self.config_manager.get_value("general", key, True))

    def _is_old_message(self, platform: str, timestamp: Any) -> bool:
        if self.lifecycle is None or not timestamp:
            return False
        if not self.config_manager.get_value("general", "filterOldMessages", True):
            return False

        connected_at = self.lifecycle.get_platform_connection_time(platform)
        if not connected_at:
            return False

        if isinstance(timestamp, datetime):
            sent = timestamp.timestamp()
        else:
            try:
                sent = datetime.fromisoformat(str(timestamp).replace("Z", "+00:00")).timestamp()
            except ValueError:
                return False
        return sent < connected_at

    def _enqueue(
        self,
        item_type: str,
        platform: str,
        priority: int,
        payload: Dict[str, Any],
        *,
        vfx_config: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            data = build_notification(item_type, platform, payload)
        except ValueError as e:
            log.warning(f"[{platform}] Could not build {item_type} item: {e}")
            return False

        item: Dict[str, Any] = {
            "type": item_type,
            "platform": platform,
            "priority": priority,
            "data": data,
            "created_at": time.time(),
        }
        if vfx_config:
            item["vfx_config"] = vfx_config

        try:
            self.display_queue.add_item(item)
        except Exception as e:
            log.warning(f"[{platform}] Display queue rejected {item_type}: {e}")
            return False
        return True

    @staticmethod
    def _skipped(platform: str, username: Any, reason: str) -> Dict[str, Any]:
        log.debug(f"[{platform}] Chat from {username} skipped: {reason}")
        return {"routed": False, "reason": reason}


__all__ = ["ChatNotificationRouter", "FirstMessageTracker", "sanitize_chat_message"]
