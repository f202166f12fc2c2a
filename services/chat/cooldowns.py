"""
Chat command cooldowns.

Per-user cooldown with heavy-user escalation, plus a global per-command
cooldown. Blocks are announced on the event bus.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.event_bus import (
    COOLDOWN_BLOCKED,
    COOLDOWN_GLOBAL_BLOCKED,
    COOLDOWN_HEAVY_DETECTED,
    COOLDOWN_RESET,
)
from shared.logging.logger import get_logger

log = get_logger("chat.cooldowns")

# Global entries older than this are dropped by cleanup
GLOBAL_ENTRY_TTL_MS = 600_000


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CommandCooldownService:
    def __init__(
        self,
        *,
        cooldowns: Dict[str, Any],
        event_bus=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if cooldowns is None:
            raise RuntimeError("CommandCooldownService requires a cooldowns config section")

        self.default_cooldown_ms = float(cooldowns.get("defaultCooldownMs", 5000))
        self.heavy_cooldown_ms = float(cooldowns.get("heavyCommandCooldownMs", 30000))
        self.heavy_threshold = int(cooldowns.get("heavyCommandThreshold", 3))
        self.heavy_window_ms = float(cooldowns.get("heavyCommandWindowMs", 60000))
        self.global_cooldown_ms = float(cooldowns.get("globalCooldownMs", 60000))
        self.max_entries = int(cooldowns.get("maxEntries", 1000))

        self.event_bus = event_bus
        self._clock = clock

        # user_id -> last command time (ms); insertion order tracks age
        self._last_command: "OrderedDict[str, float]" = OrderedDict()
        self._heavy: Dict[str, bool] = {}
        self._history: Dict[str, List[float]] = {}
        self._global: Dict[str, float] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _emit(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(topic, {**payload, "timestamp": _iso_now()})

    # ------------------------------------------------------------
    # Per-user
    # ------------------------------------------------------------

    def check_user_cooldown(
        self,
        user_id: str,
        cooldown_ms: Optional[float] = None,
        heavy_cooldown_ms: Optional[float] = None,
    ) -> bool:
        """
        True when `user_id` may run a command now.
        """
        if not user_id or not isinstance(user_id, str):
            log.warning("Invalid user id for cooldown check; command blocked")
            return False

        cooldown_ms = self.default_cooldown_ms if cooldown_ms is None else cooldown_ms
        heavy_cooldown_ms = self.heavy_cooldown_ms if heavy_cooldown_ms is None else heavy_cooldown_ms
        if cooldown_ms < 0 or heavy_cooldown_ms < 0:
            log.warning("Negative cooldown values; command blocked")
            return False

        now = self._now_ms()
        last = self._last_command.get(user_id)

        if last is not None and self._heavy.get(user_id):
            remaining = heavy_cooldown_ms - (now - last)
            if remaining > 0:
                log.debug(f"User {user_id} under heavy command limit ({remaining / 1000:.0f}s left)")
                self._emit(COOLDOWN_BLOCKED, {"user_id": user_id, "type": "heavy", "remaining_ms": remaining})
                return False
            self._heavy[user_id] = False

        if last is not None:
            remaining = cooldown_ms - (now - last)
            if remaining > 0:
                log.debug(f"User {user_id} on cooldown ({remaining / 1000:.0f}s left)")
                self._emit(COOLDOWN_BLOCKED, {"user_id": user_id, "type": "regular", "remaining_ms": remaining})
                return False

        return True

    def update_user_cooldown(self, user_id: str) -> None:
        if not user_id or not isinstance(user_id, str):
            log.warning("Invalid user id for cooldown update ignored")
            return

        now = self._now_ms()
        self._last_command[user_id] = now
        self._last_command.move_to_end(user_id)

        window_start = now - self.heavy_window_ms
        history = [t for t in self._history.get(user_id, []) if t >= window_start]
        history.append(now)
        self._history[user_id] = history

        if len(history) >= self.heavy_threshold and not self._heavy.get(user_id):
            self._heavy[user_id] = True
            log.info(
                f"User {user_id} flagged as heavy command user "
                f"({len(history)} commands in {int(self.heavy_window_ms)}ms)"
            )
            self._emit(
                COOLDOWN_HEAVY_DETECTED,
                {"user_id": user_id, "command_count": len(history), "window_ms": self.heavy_window_ms},
            )

        if len(self._last_command) > self.max_entries:
            self.trim_entries()

    def reset_user_cooldown(self, user_id: str) -> None:
        self._last_command.pop(user_id, None)
        self._heavy.pop(user_id, None)
        self._history.pop(user_id, None)
        self._emit(COOLDOWN_RESET, {"user_id": user_id})

    # ------------------------------------------------------------
    # Global
    # ------------------------------------------------------------

    def check_global_cooldown(self, command: str, cooldown_ms: Optional[float] = None) -> bool:
        cooldown_ms = self.global_cooldown_ms if cooldown_ms is None else cooldown_ms
        if not command or cooldown_ms <= 0:
            return True

        last = self._global.get(command)
        if last is None:
            return True

        remaining = cooldown_ms - (self._now_ms() - last)
        if remaining > 0:
            log.debug(f"Command {command} on global cooldown ({remaining / 1000:.0f}s left)")
            self._emit(COOLDOWN_GLOBAL_BLOCKED, {"command": command, "remaining_ms": remaining})
            return False
        return True

    def update_global_cooldown(self, command: str) -> None:
        if command:
            self._global[command] = self._now_ms()

    # ------------------------------------------------------------

    def trim_entries(self) -> int:
        """
        Drop the oldest half of tracked users once `max_entries` is exceeded,
        and global entries older than ten minutes.
        """
        removed = 0
        if len(self._last_command) > self.max_entries:
            for _ in range(max(self.max_entries // 2, 1)):
                if not self._last_command:
                    break
                user_id, _ = self._last_command.popitem(last=False)
                self._heavy.pop(user_id, None)
                self._history.pop(user_id, None)
                removed += 1

        now = self._now_ms()
        for command in [c for c, t in self._global.items() if now - t > GLOBAL_ENTRY_TTL_MS]:
            del self._global[command]

        if removed:
            log.debug(f"Trimmed {removed} cooldown entries")
        return removed

    def get_cooldown_status(self, user_id: str) -> Dict[str, Any]:
        last = self._last_command.get(user_id)
        return {
            "user_id": user_id,
            "last_command_ms": last,
            "is_heavy": bool(self._heavy.get(user_id)),
            "command_count": len(self._history.get(user_id, [])),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "active_users": len(self._last_command),
            "heavy_users": sum(1 for v in self._heavy.values() if v),
            "global_commands_tracked": len(self._global),
            "max_entries": self.max_entries,
        }

    def dispose(self) -> None:
        self._last_command.clear()
        self._heavy.clear()
        self._history.clear()
        self._global.clear()


__all__ = ["CommandCooldownService"]
