"""
Notification manager: typed dispatch from platform payloads to the
display queue.

Pipeline for `handle_notification(type, platform, payload)`:

    type check -> feature gate -> zero-amount filter -> validation
    -> dedupe -> user suppression -> spam aggregation -> build
    -> enqueue -> TTS / VFX side effects

Every outcome is a result dict; nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import re
import time
from typing import Any, Callable, Dict, Optional

from core.event_bus import NOTIFICATION_ENQUEUED, TTS_SPEECH_REQUESTED, VFX_COMMAND_REQUESTED
from services.notifications.builder import (
    MONETIZATION_TYPES,
    NOTIFICATION_CONFIGS,
    PRIORITY_LEVELS,
    build_notification,
)
from services.notifications.spam import DonationSpamDetection, SpamDetectionConfig
from services.notifications.suppression import UserSuppressionTracker
from shared.chat.events import kind_from_type, validate_event_fields
from shared.logging.logger import get_logger

log = get_logger("notifications.manager")

# Paid-support aliases that adapters must map to platform:paypiggy themselves
DISALLOWED_PAID_ALIASES = frozenset(
    {"subscription", "subscribe", "membership", "member", "superfan", "supporter", "paid_supporter"}
)

# Payload fields the caller may set but the manager owns
_STRIPPED_FIELDS = ("type", "platform", "user", "displayName", "duration")

_TTS_UNSAFE = re.compile(r"<[^>]+>|https?://\S+")


def sanitize_tts_text(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    cleaned = _TTS_UNSAFE.sub(" ", text)
    return re.sub(r"\s+", " ", cleaned).strip()


class NotificationManager:
    def __init__(
        self,
        *,
        config_manager,
        display_queue,
        event_bus,
        tts_service=None,
        vfx_service=None,
        spam_detector: Optional[DonationSpamDetection] = None,
        suppression: Optional[UserSuppressionTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if config_manager is None:
            raise RuntimeError("NotificationManager requires a config manager")
        if display_queue is None:
            raise RuntimeError("NotificationManager requires a display queue")
        if event_bus is None:
            raise RuntimeError("NotificationManager requires an event bus")

        self.config_manager = config_manager
        self.display_queue = display_queue
        self.event_bus = event_bus
        self.tts_service = tts_service
        self.vfx_service = vfx_service
        self._clock = clock

        general = config_manager.get("general")
        self.suppression = suppression or UserSuppressionTracker.from_config(general, clock=clock)

        spam_cfg = config_manager.get("spam")
        if spam_detector is None and spam_cfg.get("enabled", True):
            spam_detector = DonationSpamDetection(
                SpamDetectionConfig.from_config(spam_cfg),
                on_aggregated_donation=self.handle_aggregated_donation,
                clock=clock,
            )
        self.spam_detector = spam_detector

        self.dedupe_enabled = bool(spam_cfg.get("dedupeEnabled", False))
        self.dedupe_window_ms = float(spam_cfg.get("dedupeWindowMs", 2000))
        self._recent: Dict[str, float] = {}

        self._stats = {
            "received": 0,
            "enqueued": 0,
            "disabled": 0,
            "suppressed": 0,
            "duplicates": 0,
            "spam_held": 0,
            "invalid": 0,
            "side_effect_errors": 0,
        }

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def start(self) -> None:
        self.suppression.start_sweeper()
        if self.spam_detector:
            self.spam_detector.start_cleanup()

    async def shutdown(self) -> None:
        await self.suppression.stop_sweeper()
        if self.spam_detector:
            await self.spam_detector.destroy()

    # ------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------

    async def handle_notification(
        self, notification_type: str, platform: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._handle(notification_type, platform, payload, skip_spam=False)

    async def handle_aggregated_donation(self, aggregated: Dict[str, Any]) -> Dict[str, Any]:
        """
        Enqueue one gift standing in for a batch of held low-value gifts.
        """
        gift_types = aggregated.get("giftTypes") or ["Gift"]
        payload = {
            "username": aggregated["username"],
            "userId": aggregated.get("userId"),
            "giftType": gift_types[0] if len(gift_types) == 1 else "Multiple Gifts",
            "giftCount": max(int(aggregated.get("totalGifts") or 1), 1),
            "amount": float(aggregated.get("totalCoins") or 0),
            "currency": "coins",
            "isAggregated": True,
            "aggregatedMessage": aggregated.get("message"),
        }
        return await self._handle("platform:gift", aggregated["platform"], payload, skip_spam=True)

    # ------------------------------------------------------------

    async def _handle(
        self,
        notification_type: str,
        platform: str,
        payload: Dict[str, Any],
        *,
        skip_spam: bool,
    ) -> Dict[str, Any]:
        self._stats["received"] += 1

        if not isinstance(platform, str) or not platform.strip():
            log.warning(f"Invalid platform {platform!r} for {notification_type}; ignored")
            return {"success": False, "error": "Invalid platform type"}
        platform = platform.strip().lower()

        if not isinstance(payload, dict):
            log.warning(f"[{platform}] {notification_type} payload is not a mapping; ignored")
            return {"success": False, "error": "Invalid notification data"}

        if notification_type in DISALLOWED_PAID_ALIASES:
            log.warning(f"[{platform}] Unsupported paid alias type '{notification_type}'")
            return {"success": False, "error": "Unsupported paid alias"}

        config = NOTIFICATION_CONFIGS.get(notification_type)
        if config is None:
            log.warning(f"[{platform}] Unknown notification type '{notification_type}'")
            return {"success": False, "error": "Unknown notification type"}

        embedded = payload.get("type")
        if embedded and embedded != notification_type:
            log.warning(
                f"[{platform}] Notification type mismatch: payload says '{embedded}', "
                f"called as '{notification_type}'"
            )
            return {"success": False, "error": "Unknown notification type"}

        data = {k: v for k, v in payload.items() if k not in _STRIPPED_FIELDS}

        # Feature gating
        if not self._notifications_enabled(config["setting_key"], platform):
            self._stats["disabled"] += 1
            log.debug(f"[{platform}] {notification_type} notifications disabled; skipped")
            return {"success": True, "skipped": "disabled"}

        is_error = data.get("isError") is True

        # Zero-amount fiat gifts never reach the screen
        if notification_type == "platform:gift" and not is_error:
            amount = data.get("amount")
            currency = str(data.get("currency") or "").strip().lower()
            if (
                isinstance(amount, (int, float))
                and not isinstance(amount, bool)
                and amount <= 0
                and currency
                and currency not in ("coins", "bits")
            ):
                log.debug(f"[{platform}] Zero-amount gift from {data.get('username')} filtered")
                return {"success": False, "filtered": True, "reason": "Zero amount not displayed"}

        kind = kind_from_type(notification_type)
        if not is_error:
            problems = validate_event_fields(kind, data)
            if problems:
                self._stats["invalid"] += 1
                log.warning(f"[{platform}] Invalid {notification_type} ignored: {'; '.join(problems)}")
                return {"success": False, "error": "Invalid notification data", "problems": problems}

        if isinstance(data.get("username"), str):
            data["username"] = data["username"].strip()
        if data.get("userId") is not None:
            data["userId"] = str(data["userId"])

        if self._is_duplicate(notification_type, platform, data):
            self._stats["duplicates"] += 1
            log.debug(f"[{platform}] Duplicate {notification_type} from {data.get('username')} skipped")
            return {"success": False, "suppressed": True, "reason": "duplicate"}

        user_key = self._user_key(platform, data)
        if self.suppression.is_suppressed(user_key):
            self._stats["suppressed"] += 1
            log.debug(f"[{platform}] Notification suppressed for {data.get('username')} ({notification_type})")
            return {"success": False, "suppressed": True, "reason": "user_suppression"}

        if (
            notification_type == "platform:gift"
            and self.spam_detector is not None
            and not skip_spam
            and not data.get("isAggregated")
            and not is_error
        ):
            gift_count = data["giftCount"]
            spam = self.spam_detector.handle_donation_spam(
                user_key,
                data["username"],
                data["amount"] / gift_count,
                data["giftType"],
                int(gift_count),
                platform,
            )
            if not spam["should_show"]:
                self._stats["spam_held"] += 1
                return {"success": False, "suppressed": True, "reason": "spam_detection"}

        self.suppression.track(user_key)

        try:
            notification = build_notification(notification_type, platform, data)
        except (KeyError, TypeError, ValueError) as e:
            self._stats["invalid"] += 1
            log.warning(f"[{platform}] Could not build {notification_type}: {e}")
            return {"success": False, "error": "Notification build failed"}

        priority = config["priority"]
        item = {
            "type": notification_type,
            "platform": platform,
            "priority": priority,
            "data": notification,
            "created_at": time.time(),
        }

        try:
            self.display_queue.add_item(item)
        except Exception as e:
            log.warning(f"[{platform}] Display queue rejected {notification_type}: {e}")
            return {"success": False, "error": "Display queue error"}

        self._stats["enqueued"] += 1
        if self._debug_enabled():
            log.info(f"[{platform}] {notification['logMessage']}")

        await self._process_tts(notification_type, platform, notification)
        await self._process_vfx(config["command_key"], notification_type, platform, notification)

        self.event_bus.emit(NOTIFICATION_ENQUEUED, item)

        return {
            "success": True,
            "notification_type": notification_type,
            "platform": platform,
            "priority": priority,
            "data": notification,
        }

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _notifications_enabled(self, setting_key: str, platform: str) -> bool:
        try:
            return self.config_manager.are_notifications_enabled(setting_key, platform)
        except Exception as e:
            log.warning(f"[{platform}] Notification flag lookup failed for {setting_key}: {e}")
            return False

    def _debug_enabled(self) -> bool:
        try:
            return bool(self.config_manager.is_debug_enabled())
        except Exception:
            return False

    @staticmethod
    def _user_key(platform: str, data: Dict[str, Any]) -> str:
        if data.get("userId"):
            return f"{platform}:{data['userId']}"
        return f"{platform}:{str(data.get('username', '')).lower()}"

    def _is_duplicate(self, notification_type: str, platform: str, data: Dict[str, Any]) -> bool:
        if not self.dedupe_enabled:
            return False

        now_ms = self._clock() * 1000.0
        for key in [k for k, seen in self._recent.items() if now_ms - seen > self.dedupe_window_ms]:
            del self._recent[key]

        key = f"{notification_type}|{platform}|{json.dumps(data, sort_keys=True, default=str)}"
        if key in self._recent:
            return True
        self._recent[key] = now_ms
        return False

    async def _process_tts(self, notification_type: str, platform: str, notification: Dict[str, Any]) -> None:
        try:
            tts = self.config_manager.get_tts_config()
            if not tts.get("enabled"):
                return
            if tts.get("onlyForGifts") and notification_type not in MONETIZATION_TYPES:
                return

            text = sanitize_tts_text(notification.get("ttsMessage"))
            if not text:
                return

            self.event_bus.emit(
                TTS_SPEECH_REQUESTED,
                {
                    "text": text,
                    "notification_type": notification_type,
                    "platform": platform,
                    "source": "notification-manager",
                },
            )
            if self.tts_service is not None:
                result = self.tts_service.speak(
                    text,
                    {"platform": platform, "username": notification.get("username"), "type": notification_type},
                )
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["side_effect_errors"] += 1
            log.warning(f"[{platform}] TTS for {notification_type} failed: {e}")

    async def _process_vfx(
        self, command_key: str, notification_type: str, platform: str, notification: Dict[str, Any]
    ) -> None:
        try:
            command = self.config_manager.get("commands").get(command_key)
            if not command:
                return

            context = {
                "command_key": command_key,
                "command": command,
                "username": notification.get("username"),
                "platform": platform,
                "type": notification_type,
            }
            self.event_bus.emit(VFX_COMMAND_REQUESTED, context)
            if self.vfx_service is not None:
                result = self.vfx_service.execute_command(command, context)
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["side_effect_errors"] += 1
            log.warning(f"[{platform}] VFX for {notification_type} failed: {e}")

    # ------------------------------------------------------------

    def get_priority_for_type(self, notification_type: str) -> int:
        if notification_type in NOTIFICATION_CONFIGS:
            return NOTIFICATION_CONFIGS[notification_type]["priority"]
        if notification_type == "chat":
            return PRIORITY_LEVELS["CHAT"]
        if notification_type in ("greeting", "farewell"):
            return PRIORITY_LEVELS["GREETING"]
        if notification_type == "command":
            return PRIORITY_LEVELS["COMMAND"]
        raise KeyError(f"Missing priority mapping for {notification_type}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "supported_types": sorted(NOTIFICATION_CONFIGS),
            "display_queue_length": self.display_queue.get_queue_length()
            if hasattr(self.display_queue, "get_queue_length")
            else None,
            "suppression": self.suppression.get_stats(),
            "spam": self.spam_detector.get_statistics() if self.spam_detector else None,
        }


__all__ = ["NotificationManager", "DISALLOWED_PAID_ALIASES", "sanitize_tts_text"]
