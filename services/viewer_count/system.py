"""
Viewer-count polling engine.

One polling task per live platform. Each tick asks the platform adapter
for its viewer count and fans valid results out to registered observers,
one at a time. Stream liveness transitions start and stop the per-platform
tasks and are reported to observers separately.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from core.config import ConfigurationError
from core.event_bus import STREAM_STATUS, VIEWER_COUNT_UPDATED
from services.youtube.extractor import is_valid_viewer_count
from shared.logging.logger import get_logger
from shared.platforms.state import DEFAULT_LIVE_STATUS

log = get_logger("viewer_count.system")


# ----------------------------------------------------------------------
# Observer contract
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ViewerCountUpdate:
    platform: str
    count: int
    previous_count: int
    is_stream_live: bool
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StreamStatusUpdate:
    platform: str
    is_live: bool
    was_live: bool
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ViewerCountObserver(ABC):
    """
    Base class for anything that reacts to viewer-count changes.

    Observers are registered by `observer_id`; registering a second
    observer with the same id replaces the first.
    """

    def __init__(self, *, observer_id: str):
        self.observer_id = observer_id

    @abstractmethod
    async def on_viewer_count_update(self, update: ViewerCountUpdate) -> None:
        raise NotImplementedError

    @abstractmethod
    async def on_stream_status_change(self, status: StreamStatusUpdate) -> None:
        raise NotImplementedError

    async def initialize(self) -> None:
        return None

    async def cleanup(self) -> None:
        return None


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def resolve_polling_interval_ms(value: Any) -> float:
    """
    Validate `general.viewerCountPollingIntervalMs`.

    Values <= 0 are legal and disable polling.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigurationError(f"Invalid viewer count polling interval: {value!r}")
    return float(value)


# ----------------------------------------------------------------------

class ViewerCountSystem:
    """
    Per-platform viewer-count poller with observer fan-out.

    `platform_provider` is re-read on every call so a platform map swapped
    in after construction is picked up by the next tick.
    """

    HISTORY_SIZE = 50

    def __init__(
        self,
        *,
        platform_provider: Callable[[], Dict[str, Any]],
        polling_interval_ms: Any,
        treat_null_as_error: bool = True,
        event_bus=None,
        observer_cleanup_timeout_s: float = 5.0,
        now: Callable[[], float] = time.time,
    ):
        if not callable(platform_provider):
            raise RuntimeError("ViewerCountSystem requires a platform provider")

        self.platform_provider = platform_provider
        self.polling_interval = resolve_polling_interval_ms(polling_interval_ms)
        self.treat_null_as_error = treat_null_as_error
        self.event_bus = event_bus
        self.observer_cleanup_timeout_s = observer_cleanup_timeout_s
        self._now = now

        self.counts: Dict[str, int] = {name: 0 for name in DEFAULT_LIVE_STATUS}
        self.previous_counts: Dict[str, int] = {name: 0 for name in DEFAULT_LIVE_STATUS}
        self.last_updated: Dict[str, Optional[float]] = {name: None for name in DEFAULT_LIVE_STATUS}
        self.stream_status: Dict[str, bool] = dict(DEFAULT_LIVE_STATUS)
        self.observers: Dict[str, ViewerCountObserver] = {}
        self.polling_handles: Dict[str, asyncio.Task] = {}
        self.is_polling = False

        # Bumped whenever a platform's polling is stopped; in-flight ticks
        # compare against it before each observer call.
        self._generations: Dict[str, int] = {}
        self._in_flight: Set[str] = set()
        self._draining: Set[asyncio.Task] = set()
        self._status_history: Deque[Dict[str, Any]] = deque(maxlen=self.HISTORY_SIZE)
        self._cleaned_up = False

        self._stats = {
            "total_polls": 0,
            "successful_polls": 0,
            "failed_polls": 0,
            "skipped_polls": 0,
            "observer_errors": 0,
        }

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #

    def add_observer(self, observer: ViewerCountObserver) -> None:
        observer_id = getattr(observer, "observer_id", None)
        if not isinstance(observer_id, str) or not observer_id.strip():
            raise ValueError("Observer must have a non-empty observer_id")
        for method in ("on_viewer_count_update", "on_stream_status_change"):
            if not callable(getattr(observer, method, None)):
                raise ValueError(f"Observer '{observer_id}' is missing {method}()")

        if observer_id in self.observers:
            log.info(f"[ViewerCount] Replacing observer '{observer_id}'")
        self.observers[observer_id] = observer
        log.debug(f"[ViewerCount] Observer '{observer_id}' registered ({len(self.observers)} total)")

    def remove_observer(self, observer_id: str) -> bool:
        removed = self.observers.pop(observer_id, None) is not None
        if removed:
            log.debug(f"[ViewerCount] Observer '{observer_id}' removed")
        return removed

    async def initialize(self) -> None:
        """
        Run each observer's initialize(); failures are logged only.
        """
        for observer_id, observer in list(self.observers.items()):
            try:
                await observer.initialize()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[ViewerCount] Observer '{observer_id}' initialize failed: {e}")
        log.info(f"[ViewerCount] Initialized with {len(self.observers)} observer(s)")

    async def _notify_update(self, update: ViewerCountUpdate, generation: Optional[int]) -> None:
        for observer_id, observer in list(self.observers.items()):
            if generation is not None and self._generations.get(update.platform, 0) != generation:
                log.debug(f"[ViewerCount] Polling stopped; skipping remaining observers for {update.platform}")
                return
            try:
                await observer.on_viewer_count_update(update)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["observer_errors"] += 1
                log.warning(f"[ViewerCount] Observer '{observer_id}' update error ignored: {e}")

    async def _notify_status(self, status: StreamStatusUpdate) -> None:
        for observer_id, observer in list(self.observers.items()):
            try:
                await observer.on_stream_status_change(status)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["observer_errors"] += 1
                log.warning(f"[ViewerCount] Observer '{observer_id}' status error ignored: {e}")

    # ------------------------------------------------------------------ #
    # Platforms
    # ------------------------------------------------------------------ #

    def validate_platform_for_polling(self, platform: str) -> Dict[str, Any]:
        try:
            platforms = self.platform_provider() or {}
        except Exception as e:
            return {"valid": False, "platform": None, "reason": f"platform provider failed: {e}"}

        adapter = platforms.get(platform)
        if adapter is None:
            return {"valid": False, "platform": None, "reason": "platform not registered"}
        if not callable(getattr(adapter, "get_viewer_count", None)):
            return {"valid": False, "platform": None, "reason": "platform has no viewer count capability"}
        return {"valid": True, "platform": adapter, "reason": None}

    def is_stream_live(self, platform: str) -> bool:
        return bool(self.stream_status.get(platform, False))

    async def update_stream_status(self, platform: str, is_live: bool) -> None:
        platform = str(platform or "").lower()
        if platform not in self.stream_status:
            log.warning(f"[ViewerCount] Unknown platform '{platform}' status update ignored")
            return

        is_live = bool(is_live)
        was_live = self.stream_status[platform]
        self.stream_status[platform] = is_live
        now = self._now()

        self._status_history.append(
            {"platform": platform, "is_live": is_live, "was_live": was_live, "timestamp": now}
        )

        if was_live != is_live:
            log.info(
                f"[ViewerCount] {platform} stream is now "
                f"{'LIVE' if is_live else 'OFFLINE'}"
            )
            status = StreamStatusUpdate(
                platform=platform, is_live=is_live, was_live=was_live, timestamp=now
            )
            if self.event_bus:
                self.event_bus.emit(STREAM_STATUS, status.to_dict())
            await self._notify_status(status)

        if is_live:
            if self.is_polling:
                self.start_platform_polling(platform)
            return

        self.stop_platform_polling(platform)
        if was_live:
            previous = self.counts.get(platform, 0)
            self.previous_counts[platform] = previous
            self.counts[platform] = 0
            self.last_updated[platform] = now
            await self._notify_update(
                ViewerCountUpdate(
                    platform=platform,
                    count=0,
                    previous_count=previous,
                    is_stream_live=False,
                    timestamp=now,
                ),
                None,
            )

    # ------------------------------------------------------------------ #
    # Polling
    # ------------------------------------------------------------------ #

    def start_polling(self) -> None:
        if self.polling_interval <= 0:
            log.info("[ViewerCount] Polling disabled (interval <= 0)")
            return
        if self.is_polling:
            log.debug("[ViewerCount] Polling already active")
            return

        self.is_polling = True
        self._cleaned_up = False
        for platform, live in self.stream_status.items():
            if live:
                self.start_platform_polling(platform)

        log.info(
            f"[ViewerCount] Polling started every {int(self.polling_interval)}ms "
            f"for {sorted(self.polling_handles)}"
        )

    def start_platform_polling(self, platform: str) -> None:
        if not self.is_polling:
            return
        task = self.polling_handles.get(platform)
        if task is not None and not task.done():
            return

        generation = self._generations.get(platform, 0)
        self.polling_handles[platform] = asyncio.get_running_loop().create_task(
            self._platform_loop(platform, generation)
        )
        log.debug(f"[ViewerCount] Polling handle started for {platform}")

    def stop_platform_polling(self, platform: str) -> None:
        self._generations[platform] = self._generations.get(platform, 0) + 1
        task = self.polling_handles.pop(platform, None)
        if task is None:
            return

        if platform in self._in_flight:
            # Let the running tick finish; it exits on the generation check.
            self._draining.add(task)
            task.add_done_callback(self._draining.discard)
        else:
            task.cancel()
        log.debug(f"[ViewerCount] Polling handle stopped for {platform}")

    def stop_polling(self) -> None:
        for platform in list(self.polling_handles):
            self.stop_platform_polling(platform)
        for platform in list(self._in_flight):
            self._generations[platform] = self._generations.get(platform, 0) + 1
        if self.is_polling:
            log.info("[ViewerCount] Polling stopped")
        self.is_polling = False

    async def _platform_loop(self, platform: str, generation: int) -> None:
        interval_s = self.polling_interval / 1000.0
        while self._generations.get(platform, 0) == generation:
            await self._tick(platform, generation)
            if self._generations.get(platform, 0) != generation:
                return
            await asyncio.sleep(interval_s)

    async def poll_platform(self, platform: str) -> Optional[int]:
        """
        Run a single tick for `platform` outside the polling schedule.
        """
        return await self._tick(platform, self._generations.get(platform, 0))

    async def _tick(self, platform: str, generation: int) -> Optional[int]:
        if not self.is_stream_live(platform):
            return None
        if platform in self._in_flight:
            self._stats["skipped_polls"] += 1
            log.debug(f"[ViewerCount] Previous {platform} tick still running; skipped")
            return None

        check = self.validate_platform_for_polling(platform)
        if not check["valid"]:
            log.debug(f"[ViewerCount] {platform} not pollable: {check['reason']}")
            return None

        self._in_flight.add(platform)
        self._stats["total_polls"] += 1
        try:
            try:
                count = check["platform"].get_viewer_count()
                if inspect.isawaitable(count):
                    count = await count
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["failed_polls"] += 1
                log.warning(f"[ViewerCount] {platform} viewer count fetch failed: {e}")
                return None

            if count is None:
                if self.treat_null_as_error:
                    self._stats["failed_polls"] += 1
                    log.debug(f"[ViewerCount] {platform} returned no viewer count")
                    return None
                count = 0

            if not is_valid_viewer_count(count):
                self._stats["failed_polls"] += 1
                log.warning(f"[ViewerCount] {platform} returned invalid viewer count {count!r}; ignored")
                return None

            if self._generations.get(platform, 0) != generation:
                return None

            count = int(count)
            now = self._now()
            previous = self.counts.get(platform, 0)
            self.previous_counts[platform] = previous
            self.counts[platform] = count
            self.last_updated[platform] = now
            self._stats["successful_polls"] += 1

            update = ViewerCountUpdate(
                platform=platform,
                count=count,
                previous_count=previous,
                is_stream_live=True,
                timestamp=now,
            )
            if self.event_bus:
                self.event_bus.emit(VIEWER_COUNT_UPDATED, update.to_dict())
            await self._notify_update(update, generation)
            return count
        finally:
            self._in_flight.discard(platform)

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def cleanup(self) -> None:
        self.stop_polling()

        if self._draining:
            await asyncio.wait(list(self._draining), timeout=self.observer_cleanup_timeout_s)

        observers = list(self.observers.items())
        self.observers.clear()

        for observer_id, observer in observers:
            try:
                await asyncio.wait_for(
                    observer.cleanup(), timeout=self.observer_cleanup_timeout_s
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                log.warning(f"[ViewerCount] Observer '{observer_id}' cleanup timed out")
            except Exception as e:
                log.warning(f"[ViewerCount] Observer '{observer_id}' cleanup error ignored: {e}")

        for platform in self.counts:
            self.counts[platform] = 0
            self.previous_counts[platform] = 0

        if not self._cleaned_up:
            log.info(f"[ViewerCount] Cleaned up ({len(observers)} observer(s) released)")
        self._cleaned_up = True

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def get_polling_efficiency(self) -> Dict[str, Any]:
        total = self._stats["total_polls"]
        ok = self._stats["successful_polls"]
        return {
            **self._stats,
            "success_rate": round(ok / total * 100, 2) if total else 0.0,
        }

    def get_stream_status_history(self, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            dict(entry)
            for entry in self._status_history
            if platform is None or entry["platform"] == platform
        ]

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "is_polling": self.is_polling,
            "polling_interval_ms": self.polling_interval,
            "active_handles": sorted(self.polling_handles),
            "counts": dict(self.counts),
            "stream_status": dict(self.stream_status),
            "observers": sorted(self.observers),
            "efficiency": self.get_polling_efficiency(),
        }


__all__ = [
    "ViewerCountSystem",
    "ViewerCountObserver",
    "ViewerCountUpdate",
    "StreamStatusUpdate",
    "resolve_polling_interval_ms",
]
