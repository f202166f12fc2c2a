"""
Daily API unit accounting for the YouTube Data API.

Each channel gets one tracker per platform. Callers charge units before
issuing a request; the tracker refuses charges past the daily limit and
signals once when usage crosses into the configured safety buffer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.quotas")


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ======================================================================
# Exceptions
# ======================================================================

class QuotaExceeded(RuntimeError):
    """The charge would take usage past the daily limit; nothing was charged."""


class QuotaBufferWarning(RuntimeError):
    """
    The charge was applied and usage is now inside the buffer zone.
    Raised only on the crossing, not on later charges.
    """


# ======================================================================
# Policy
# ======================================================================

@dataclass(frozen=True)
class QuotaPolicy:
    max_units: int
    buffer_units: int = 0

    def __post_init__(self):
        if self.max_units < 0 or self.buffer_units < 0:
            raise ValueError("Quota units must be non-negative")

    @property
    def buffer_threshold(self) -> int:
        return max(0, self.max_units - self.buffer_units)


# ======================================================================
# Tracker
# ======================================================================

class QuotaTracker:
    def __init__(
        self,
        *,
        channel: str,
        platform: str,
        policy: QuotaPolicy,
        today: Callable[[], date] = _utc_today,
    ):
        self.channel = channel
        self.platform = platform
        self.policy = policy
        self._today = today
        self._day = today()
        self._used = 0

    def _roll_over(self) -> None:
        current = self._today()
        if current != self._day:
            log.debug(f"[{self.platform}] Quota for {self.channel} reset ({self._used} units used on {self._day})")
            self._day = current
            self._used = 0

    @property
    def used(self) -> int:
        self._roll_over()
        return self._used

    @property
    def remaining(self) -> int:
        return max(0, self.policy.max_units - self.used)

    def consume(self, units: int) -> None:
        if units <= 0:
            return

        before = self.used
        after = before + units
        limit = self.policy.max_units

        if after > limit:
            raise QuotaExceeded(f"Quota exceeded: {after} / {limit}")

        self._used = after
        threshold = self.policy.buffer_threshold
        if before < threshold <= after:
            raise QuotaBufferWarning(f"Quota buffer entered: {after} / {limit}")

    def status(self) -> str:
        used = self.used
        if used >= self.policy.max_units:
            return "exhausted"
        if used >= self.policy.buffer_threshold:
            return "buffer"
        return "ok"

    def snapshot(self) -> Dict[str, object]:
        used = self.used
        next_reset = datetime.combine(self._day + timedelta(days=1), time.min, tzinfo=timezone.utc)
        return {
            "used": used,
            "remaining": max(0, self.policy.max_units - used),
            "max": self.policy.max_units,
            "buffer": self.policy.buffer_units,
            "reset_at": next_reset.isoformat(),
        }


# ======================================================================
# Registry
# ======================================================================

class QuotaRegistry:
    """
    Process-scoped trackers keyed by (channel, platform).

    register() is idempotent: a second registration for the same pair
    returns the first tracker and keeps its policy, so every Data API
    caller for a channel draws from one daily allowance.
    """

    def __init__(self):
        self._trackers: Dict[tuple, QuotaTracker] = {}

    def register(
        self,
        *,
        channel: str,
        platform: str,
        max_units: int,
        buffer_units: int = 0,
    ) -> QuotaTracker:
        key = (channel, platform)
        tracker = self._trackers.get(key)
        if tracker is not None:
            if tracker.policy.max_units != max_units:
                log.debug(f"[{platform}] Quota for {channel} already registered; new limit {max_units} ignored")
            return tracker

        tracker = QuotaTracker(
            channel=channel,
            platform=platform,
            policy=QuotaPolicy(max_units=max_units, buffer_units=buffer_units),
        )
        self._trackers[key] = tracker
        log.info(f"[{platform}] Quota tracking for {channel}: {max_units} units/day ({buffer_units} buffer)")
        return tracker

    def get(self, *, channel: str, platform: str) -> Optional[QuotaTracker]:
        return self._trackers.get((channel, platform))

    def all(self) -> List[QuotaTracker]:
        return list(self._trackers.values())

    def snapshot(self) -> List[Dict[str, object]]:
        return [
            {"platform": t.platform, "channel": t.channel, "status": t.status(), **t.snapshot()}
            for t in self._trackers.values()
        ]


__all__ = [
    "QuotaBufferWarning",
    "QuotaExceeded",
    "QuotaPolicy",
    "QuotaRegistry",
    "QuotaTracker",
]
