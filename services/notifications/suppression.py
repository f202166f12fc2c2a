"""
Per-user notification suppression.

A sliding window counts each user's notifications. Reaching
`max_notifications_per_user` inside the window suppresses the user for
`suppression_duration_ms`. A background sweeper drops stale entries.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from shared.logging.logger import get_logger

log = get_logger("notifications.suppression")


@dataclass
class SuppressionRecord:
    timestamps: List[float] = field(default_factory=list)
    suppressed_until: Optional[float] = None


class UserSuppressionTracker:
    def __init__(
        self,
        *,
        enabled: bool = True,
        max_notifications_per_user: int = 5,
        suppression_window_ms: float = 60000,
        suppression_duration_ms: float = 300000,
        cleanup_interval_ms: float = 300000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = enabled
        self.max_notifications_per_user = max_notifications_per_user
        self.suppression_window_ms = suppression_window_ms
        self.suppression_duration_ms = suppression_duration_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self._clock = clock

        self._records: Dict[str, SuppressionRecord] = {}
        self._suppressed_count = 0
        self._sweeper: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, general: Dict[str, Any], **kwargs) -> "UserSuppressionTracker":
        return cls(
            enabled=bool(general.get("userSuppressionEnabled", True)),
            max_notifications_per_user=int(general.get("maxNotificationsPerUser", 5)),
            suppression_window_ms=float(general.get("suppressionWindowMs", 60000)),
            suppression_duration_ms=float(general.get("suppressionDurationMs", 300000)),
            cleanup_interval_ms=float(general.get("suppressionCleanupIntervalMs", 300000)),
            **kwargs,
        )

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    # ------------------------------------------------------------

    def is_suppressed(self, user_key: str) -> bool:
        """
        True when the user is inside a suppression period, or when the
        window already holds the maximum; the latter starts a new period.
        """
        if not self.enabled or not user_key:
            return False

        record = self._records.get(user_key)
        if record is None:
            return False

        now = self._now_ms()
        if record.suppressed_until is not None and now < record.suppressed_until:
            self._suppressed_count += 1
            return True

        window_start = now - self.suppression_window_ms
        recent = [t for t in record.timestamps if t > window_start]
        record.timestamps = recent

        if len(recent) >= self.max_notifications_per_user:
            record.suppressed_until = now + self.suppression_duration_ms
            self._suppressed_count += 1
            log.info(
                f"[Suppression] {user_key} exceeded {self.max_notifications_per_user} "
                f"notifications in {int(self.suppression_window_ms)}ms; suppressed for "
                f"{int(self.suppression_duration_ms)}ms"
            )
            return True

        return False

    def track(self, user_key: str) -> None:
        if not self.enabled or not user_key:
            return
        record = self._records.setdefault(user_key, SuppressionRecord())
        record.timestamps.append(self._now_ms())

    def cleanup(self) -> int:
        now = self._now_ms()
        cutoff = now - self.suppression_window_ms
        cleaned = 0

        for user_key in list(self._records):
            record = self._records[user_key]
            before = len(record.timestamps)
            record.timestamps = [t for t in record.timestamps if t > cutoff]
            if record.suppressed_until is not None and now > record.suppressed_until:
                record.suppressed_until = None

            if not record.timestamps and record.suppressed_until is None:
                del self._records[user_key]
                cleaned += 1
            elif before != len(record.timestamps):
                cleaned += 1

        if cleaned:
            log.debug(f"[Suppression] Cleaned up {cleaned} user suppression entries")
        return cleaned

    # ------------------------------------------------------------
    # Sweeper
    # ------------------------------------------------------------

    def start_sweeper(self) -> None:
        if not self.enabled or self.cleanup_interval_ms <= 0:
            return
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._stop_event.clear()
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        log.debug(f"[Suppression] Sweeper started ({int(self.cleanup_interval_ms)}ms)")

    async def _sweep_loop(self) -> None:
        interval = self.cleanup_interval_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                return
            try:
                self.cleanup()
            except Exception as e:
                log.warning(f"[Suppression] Sweep error ignored: {e}")

    async def stop_sweeper(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
            log.debug("[Suppression] Sweeper stopped")

    # ------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        now = self._now_ms()
        return {
            "enabled": self.enabled,
            "tracked_users": len(self._records),
            "suppressed_users": sum(
                1
                for r in self._records.values()
                if r.suppressed_until is not None and now < r.suppressed_until
            ),
            "suppressed_notifications": self._suppressed_count,
        }


__all__ = ["UserSuppressionTracker", "SuppressionRecord"]
