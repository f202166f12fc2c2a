"""
Low-value donation spam detection.

Per user, the first `max_individual_notifications` low-value gifts inside
`detection_window` seconds are shown as-is. Later ones are held and, when
the window closes, reported once through `on_aggregated_donation`.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from shared.logging.logger import get_logger

log = get_logger("notifications.spam")

AggregatedCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


@dataclass
class SpamPlatformConfig:
    enabled: bool
    low_value_threshold: float
    detection_window_s: float
    max_individual_notifications: int


class SpamDetectionConfig:
    """
    Platform-level view of the `spam` section. YouTube Super Chats are
    never aggregated.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        low_value_threshold: float = 10,
        detection_window_s: float = 5,
        max_individual_notifications: int = 2,
    ):
        self.enabled = enabled
        self.low_value_threshold = low_value_threshold
        self.detection_window_s = detection_window_s
        self.max_individual_notifications = max_individual_notifications

        default = SpamPlatformConfig(
            enabled=enabled,
            low_value_threshold=low_value_threshold,
            detection_window_s=detection_window_s,
            max_individual_notifications=max_individual_notifications,
        )
        self._platforms: Dict[str, SpamPlatformConfig] = {
            "tiktok": default,
            "twitch": default,
            "youtube": SpamPlatformConfig(
                enabled=False,
                low_value_threshold=1.0,
                detection_window_s=detection_window_s,
                max_individual_notifications=max_individual_notifications,
            ),
        }
        self._default = default

    @classmethod
    def from_config(cls, spam: Dict[str, Any]) -> "SpamDetectionConfig":
        return cls(
            enabled=bool(spam.get("enabled", True)),
            low_value_threshold=float(spam.get("lowValueThreshold", 10)),
            detection_window_s=float(spam.get("detectionWindow", 5)),
            max_individual_notifications=int(spam.get("maxIndividualNotifications", 2)),
        )

    def get_platform_config(self, platform: str) -> SpamPlatformConfig:
        return self._platforms.get(str(platform).lower(), self._default)


@dataclass
class _Donation:
    timestamp: float
    unit_amount: float
    gift_type: str
    gift_count: int


@dataclass
class _UserTracker:
    username: str
    platform: str
    donations: List[_Donation] = field(default_factory=list)
    aggregated_count: int = 0
    last_reset: float = 0.0
    timer: Optional[asyncio.Task] = None


class DonationSpamDetection:
    CLEANUP_INTERVAL_S = 30.0

    def __init__(
        self,
        config: SpamDetectionConfig,
        *,
        on_aggregated_donation: Optional[AggregatedCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if config is None:
            raise RuntimeError("DonationSpamDetection requires a spam config")
        self.config = config
        self.on_aggregated_donation = on_aggregated_donation
        self._clock = clock
        self._trackers: Dict[str, _UserTracker] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------

    def is_low_value_donation(self, unit_amount: Any, platform: str) -> bool:
        cfg = self.config.get_platform_config(platform)
        if not cfg.enabled or unit_amount is None:
            return False
        return unit_amount <= cfg.low_value_threshold

    def handle_donation_spam(
        self,
        user_id: str,
        username: str,
        unit_amount: float,
        gift_type: str,
        gift_count: int,
        platform: str,
    ) -> Dict[str, Any]:
        """
        Return {"should_show": bool, "aggregated_message": None}.
        """
        cfg = self.config.get_platform_config(platform)
        if not cfg.enabled or not self.is_low_value_donation(unit_amount, platform):
            return {"should_show": True, "aggregated_message": None}

        now = self._clock()
        tracker = self._trackers.get(user_id)
        if tracker is None:
            tracker = _UserTracker(username=username, platform=platform, last_reset=now)
            self._trackers[user_id] = tracker

        tracker.donations = [
            d for d in tracker.donations if now - d.timestamp <= cfg.detection_window_s
        ]
        tracker.donations.append(
            _Donation(timestamp=now, unit_amount=unit_amount, gift_type=gift_type, gift_count=gift_count)
        )

        current = len(tracker.donations)
        if current <= cfg.max_individual_notifications:
            log.debug(
                f"[{platform}] {username}: low-value gift "
                f"{current}/{cfg.max_individual_notifications} shown individually"
            )
            return {"should_show": True, "aggregated_message": None}

        tracker.aggregated_count += gift_count
        tracker.username = username
        tracker.platform = platform

        if tracker.timer is None or tracker.timer.done():
            log.info(
                f"[{platform}] {username}: aggregating low-value gifts "
                f"for {cfg.detection_window_s:g}s"
            )
            tracker.timer = asyncio.get_running_loop().create_task(
                self._aggregate_after(user_id, cfg.detection_window_s)
            )

        return {"should_show": False, "aggregated_message": None}

    async def _aggregate_after(self, user_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        tracker = self._trackers.get(user_id)
        if tracker is None:
            return
        tracker.timer = None
        await self.process_aggregated_donation(user_id)

    async def process_aggregated_donation(self, user_id: str) -> Optional[Dict[str, Any]]:
        tracker = self._trackers.get(user_id)
        if tracker is None or not tracker.donations:
            return None

        total_coins = sum(d.unit_amount * d.gift_count for d in tracker.donations)
        total_gifts = sum(d.gift_count for d in tracker.donations)
        gift_types: List[str] = []
        for d in tracker.donations:
            if d.gift_type not in gift_types:
                gift_types.append(d.gift_type)

        if total_gifts > 1:
            message = (
                f"{tracker.username} sent {total_gifts} gifts worth "
                f"{total_coins:g} coins ({', '.join(gift_types)})"
            )
        else:
            message = f"{tracker.username} sent {total_gifts} gift worth {total_coins:g} coins ({gift_types[0]})"

        aggregated = {
            "userId": user_id,
            "username": tracker.username,
            "platform": tracker.platform,
            "totalCoins": total_coins,
            "totalGifts": total_gifts,
            "giftTypes": gift_types,
            "message": message,
        }

        tracker.donations = []
        tracker.aggregated_count = 0
        tracker.last_reset = self._clock()

        log.info(f"[{tracker.platform}] Aggregated donation: {message}")

        if self.on_aggregated_donation:
            try:
                result = self.on_aggregated_donation(aggregated)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[{tracker.platform}] Aggregated donation handler error ignored: {e}")

        return aggregated

    # ------------------------------------------------------------

    def cleanup(self, *, force: bool = False) -> int:
        now = self._clock()
        keep_s = 0.0 if force else self.config.detection_window_s * 2
        removed = 0

        for user_id in list(self._trackers):
            tracker = self._trackers[user_id]
            tracker.donations = [d for d in tracker.donations if now - d.timestamp <= keep_s]
            if not tracker.donations and (force or now - tracker.last_reset > keep_s):
                if tracker.timer is not None:
                    tracker.timer.cancel()
                del self._trackers[user_id]
                removed += 1

        if removed:
            log.debug(f"[Spam] Cleanup removed {removed} tracked user(s)")
        return removed

    def start_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.CLEANUP_INTERVAL_S)
            self.cleanup()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "tracked_users": len(self._trackers),
            "total_notifications": sum(len(t.donations) for t in self._trackers.values()),
            "enabled": self.config.enabled,
            "threshold": self.config.low_value_threshold,
        }

    async def destroy(self) -> None:
        tasks = []
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            tasks.append(self._cleanup_task)
            self._cleanup_task = None
        for tracker in self._trackers.values():
            if tracker.timer is not None:
                tracker.timer.cancel()
                tasks.append(tracker.timer)
        self._trackers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["DonationSpamDetection", "SpamDetectionConfig", "SpamPlatformConfig"]
