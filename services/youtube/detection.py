"""
Live video detection for a YouTube channel.

Wraps the Data API lookup with a timeout, a small circuit breaker and
usage metrics. Unlike the raw API, lookup failures are raised as
StreamDetectionError so callers can tell them apart from "no streams".
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Callable, Dict, List, Optional

from shared.logging.logger import get_logger

log = get_logger("youtube.detection")

_VIDEO_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class StreamDetectionError(RuntimeError):
    """Live stream lookup failed (as opposed to finding nothing live)."""


def is_valid_video_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_VIDEO_ID.match(value))


class YouTubeStreamDetectionService:
    """
    Contract:
    - get_live_video_ids(channel_handle) -> [video_id] in API order
    - get_usage_metrics()
    """

    def __init__(
        self,
        *,
        api,
        timeout_ms: float = 15000,
        max_failures: int = 3,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if api is None:
            raise RuntimeError("YouTubeStreamDetectionService requires a livestream API client")

        self.api = api
        self.timeout_ms = timeout_ms
        self.max_failures = max_failures
        self.cooldown_s = cooldown_s
        self._clock = clock

        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

        self._metrics: Dict[str, Any] = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_response_ms": 0.0,
            "errors_by_type": {},
        }

    # ------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------

    def is_circuit_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self.cooldown_s:
            log.info("[youtube] Detection circuit breaker closed after cooldown")
            self._reset_circuit()
            return False
        return True

    def _reset_circuit(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None

    def _record_failure(self, kind: str) -> None:
        self._metrics["failed_requests"] += 1
        errors = self._metrics["errors_by_type"]
        errors[kind] = errors.get(kind, 0) + 1

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.max_failures and self._opened_at is None:
            self._opened_at = self._clock()
            log.warning(
                f"[youtube] Detection circuit breaker opened after "
                f"{self._consecutive_failures} consecutive failures"
            )

    # ------------------------------------------------------------

    async def get_live_video_ids(self, channel_handle: str) -> List[str]:
        if not channel_handle:
            raise StreamDetectionError("Channel handle is required for stream detection")

        self._metrics["total_requests"] += 1

        if self.is_circuit_open():
            self._metrics["failed_requests"] += 1
            raise StreamDetectionError("Circuit breaker is open; detection temporarily unavailable")

        started = time.perf_counter()
        try:
            video_ids = await asyncio.wait_for(
                self._lookup(channel_handle), timeout=self.timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            self._record_failure("timeout")
            raise StreamDetectionError(
                f"Stream detection timed out after {int(self.timeout_ms)}ms"
            ) from None
        except StreamDetectionError:
            self._record_failure("lookup")
            raise

        self._metrics["successful_requests"] += 1
        self._metrics["total_response_ms"] += (time.perf_counter() - started) * 1000.0
        self._reset_circuit()

        log.debug(f"[youtube] Detected {len(video_ids)} live stream(s) for {channel_handle}")
        return video_ids

    async def _lookup(self, channel_handle: str) -> List[str]:
        channel_id = await self.api.resolve_channel_id(channel_handle)
        if not channel_id:
            raise StreamDetectionError(f"Could not resolve YouTube channel {channel_handle}")

        video_ids = await self.api.list_live_video_ids(channel_id)
        if video_ids is None:
            raise StreamDetectionError(f"Live search failed for channel {channel_id}")

        valid = [v for v in video_ids if is_valid_video_id(v)]
        if len(valid) != len(video_ids):
            log.warning(f"[youtube] Dropped {len(video_ids) - len(valid)} malformed video id(s)")
        return valid

    # ------------------------------------------------------------

    def get_usage_metrics(self) -> Dict[str, Any]:
        m = self._metrics
        total = m["total_requests"]
        ok = m["successful_requests"]
        return {
            "total_requests": total,
            "successful_requests": ok,
            "failed_requests": m["failed_requests"],
            "average_response_ms": round(m["total_response_ms"] / ok, 3) if ok else 0.0,
            "error_rate": (m["failed_requests"] / total) if total else 0.0,
            "errors_by_type": dict(m["errors_by_type"]),
            "circuit_open": self._opened_at is not None,
        }


__all__ = ["StreamDetectionError", "YouTubeStreamDetectionService", "is_valid_video_id"]
