"""
YouTube multi-stream lifecycle loop.

A channel can broadcast several streams at once (e.g. horizontal and
vertical). Each tick reconciles the set of live video ids reported by the
detector with the connection manager, up to `max_streams` connections.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.event_bus import STREAM_DETECTED
from shared.logging.logger import get_logger

log = get_logger("youtube.multistream")

DISCONNECT_REASON_ENDED = "stream no longer live"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class ShortageState:
    is_in_shortage: bool = False
    last_warning_time: Optional[float] = None
    last_known_available: int = 0
    last_known_required: int = 0


class YouTubeMultiStreamManager:
    """
    Binds detection, the connection manager and the retry engine.

    Collaborators are plain callables so the manager does not depend on
    how connections are created:
    - get_live_video_ids() -> [video_id]
    - connect_to_stream(video_id)
    - disconnect_from_stream(video_id, reason)
    - on_connection_error(video_id, error), optional
    """

    def __init__(
        self,
        *,
        connection_manager,
        get_live_video_ids: Callable[[], Awaitable[List[str]]],
        connect_to_stream: Callable[[str], Awaitable[Any]],
        disconnect_from_stream: Callable[[str, str], Awaitable[Any]],
        event_bus=None,
        max_streams: int = 2,
        poll_interval_s: float = 60.0,
        full_check_interval_ms: float = 300000,
        on_connection_error: Optional[Callable[[str, Exception], Any]] = None,
        now: Callable[[], float] = _monotonic_ms,
    ):
        if connection_manager is None:
            raise RuntimeError("YouTubeMultiStreamManager requires a connection manager")
        if poll_interval_s <= 0:
            raise ValueError("streamPollingInterval must be positive")
        if full_check_interval_ms < 0:
            raise ValueError("fullCheckInterval must be non-negative")

        self.connection_manager = connection_manager
        self._get_live_video_ids = get_live_video_ids
        self._connect = connect_to_stream
        self._disconnect = disconnect_from_stream
        self._on_connection_error = on_connection_error
        self.event_bus = event_bus

        self.max_streams = int(max_streams)
        self.poll_interval_s = float(poll_interval_s)
        self.full_check_interval_ms = float(full_check_interval_ms)
        self._now = now

        self.last_full_stream_check: Optional[float] = None
        self.last_video_ids_update: Optional[float] = None
        self.shortage_state = ShortageState()

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------
    # Monitoring loop
    # ------------------------------------------------------------

    @property
    def is_monitoring(self) -> bool:
        return bool(self._monitor_task and not self._monitor_task.done())

    async def start_monitoring(self) -> None:
        """
        Run one check (errors surface to the caller), then keep checking
        every `poll_interval_s` in the background.
        """
        await self.stop_monitoring()
        self._stop_event.clear()

        log.info(f"[youtube] Starting multi-stream monitoring (interval: {self.poll_interval_s}s)")
        self._monitor_task = asyncio.create_task(self._monitor_loop())

        try:
            await self.check_multi_stream(throw_on_error=True)
        except Exception as e:
            log.error(f"[youtube] Initial multi-stream check failed: {e}")
            raise

    async def _monitor_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                await self.check_multi_stream()

    async def stop_monitoring(self) -> None:
        self._stop_event.set()
        task = self._monitor_task
        self._monitor_task = None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------

    async def check_multi_stream(self, *, throw_on_error: bool = False) -> None:
        if self._tick_lock.locked():
            log.debug("[youtube] Multi-stream check already in flight; skipping tick")
            return

        async with self._tick_lock:
            try:
                await self._check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[youtube] Error in multi-stream check: {e}")
                if throw_on_error:
                    raise

    async def _check(self) -> None:
        max_streams = self.max_streams
        current = self.connection_manager.get_connection_count()
        active = self.connection_manager.get_active_video_ids()
        now = self._now()

        if max_streams > 0 and current >= max_streams and active:
            await self._throttled_check(now, current, active)
            return

        video_ids = list(await self._get_live_video_ids())

        if max_streams > 0 and len(video_ids) > max_streams:
            log.debug(f"[youtube] Limiting to maxStreams={max_streams} (found {len(video_ids)})")
            video_ids = video_ids[:max_streams]

        self.check_stream_shortage_and_warn(len(video_ids), max_streams)

        if video_ids:
            log.info(f"[youtube] Detected live streams: {', '.join(video_ids)}")

        self.last_video_ids_update = now

        previous = [v for v in active if self.connection_manager.has_connection(v)]
        new_stream_ids = [v for v in video_ids if v not in previous]

        for video_id in video_ids:
            if self.connection_manager.has_connection(video_id):
                continue
            try:
                await self._connect(video_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._report_connection_error(video_id, e)

        if new_stream_ids:
            self._emit_stream_detected(new_stream_ids, video_ids)

        if not video_ids and self.connection_manager.get_connection_count() > 0:
            log.warning("[youtube] Stream detection failed, preserving existing connections")
            return

        for video_id in self.connection_manager.get_all_video_ids():
            if video_id not in video_ids:
                log.debug(f"[youtube] Stream ended, disconnecting: {video_id}")
                await self._disconnect(video_id, DISCONNECT_REASON_ENDED)

        self.log_status(include_details=True)

    async def _throttled_check(self, now: float, current: int, active: List[str]) -> None:
        since_full = (
            now - self.last_full_stream_check
            if self.last_full_stream_check is not None
            else float("inf")
        )

        if since_full < self.full_check_interval_ms:
            remaining_s = round((self.full_check_interval_ms - since_full) / 1000.0)
            log.debug(
                f"[youtube] Skipping check: at capacity {current}/{self.max_streams}. "
                f"Next full check in {remaining_s}s"
            )
            self.log_status()
            return

        log.debug(f"[youtube] Periodic full check at capacity ({len(active)} active streams)")
        self.last_full_stream_check = now

        video_ids = list(await self._get_live_video_ids())[: self.max_streams]

        if not video_ids and self.connection_manager.get_connection_count() > 0:
            log.warning("[youtube] Stream detection failed, preserving existing connections")
            return

        changed = False
        for video_id in self.connection_manager.get_all_video_ids():
            if video_id not in video_ids:
                log.info(f"[youtube] Stream ended, disconnecting: {video_id}")
                await self._disconnect(video_id, DISCONNECT_REASON_ENDED)
                changed = True

        if not changed:
            log.debug(f"[youtube] All {len(active)} streams still live, no changes needed")

        self.log_status()

    # ------------------------------------------------------------

    def check_stream_shortage_and_warn(self, available: int, max_streams: int) -> None:
        now = self._now()
        state = self.shortage_state
        in_shortage = max_streams > 0 and available < max_streams

        if in_shortage:
            should_warn = (
                state.last_warning_time is None
                or (now - state.last_warning_time) >= self.full_check_interval_ms
            )
            if should_warn:
                log.warning(
                    f"[youtube] Stream shortage detected: found {available}/{max_streams} streams. "
                    "Some content may be missed."
                )
                state.last_warning_time = now
            else:
                log.info(
                    f"[youtube] Stream status: {available}/{max_streams} streams available "
                    "(shortage persists)"
                )
            state.is_in_shortage = True
            state.last_known_available = available
            state.last_known_required = max_streams

        elif state.is_in_shortage:
            log.info(f"[youtube] Stream shortage resolved: {available}/{max_streams} streams available")
            state.is_in_shortage = False
            state.last_warning_time = None

    async def _report_connection_error(self, video_id: str, error: Exception) -> None:
        log.warning(f"[youtube] Failed to connect to stream {video_id}: {error}")
        if self._on_connection_error is None:
            return
        try:
            result = self._on_connection_error(video_id, error)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[youtube] Connection error handler failed for {video_id}: {e}")

    def _emit_stream_detected(self, new_stream_ids: List[str], all_stream_ids: List[str]) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit(
            STREAM_DETECTED,
            {
                "platform": "youtube",
                "eventType": "stream-detected",
                "newStreamIds": list(new_stream_ids),
                "allStreamIds": list(all_stream_ids),
                "detectionTime": self._now(),
                "connectionCount": self.connection_manager.get_connection_count(),
            },
        )

    def log_status(self, *, include_details: bool = False) -> None:
        stored = self.connection_manager.get_all_video_ids()
        if not stored:
            log.debug("[youtube] No YouTube connections established")
            return

        ready = [v for v in stored if self.connection_manager.is_connection_ready(v)]
        log.info(f"[youtube] Multi-stream status: {len(ready)} ready, {len(stored)} total connections")

        if include_details:
            for video_id in stored:
                if video_id not in ready:
                    log.info(f"[youtube] Waiting for chat on stream: {video_id}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "monitoring": self.is_monitoring,
            "max_streams": self.max_streams,
            "last_full_stream_check": self.last_full_stream_check,
            "shortage": {
                "is_in_shortage": self.shortage_state.is_in_shortage,
                "last_known_available": self.shortage_state.last_known_available,
                "last_known_required": self.shortage_state.last_known_required,
            },
            "connections": self.connection_manager.get_connection_status(),
        }


__all__ = ["YouTubeMultiStreamManager", "ShortageState", "DISCONNECT_REASON_ENDED"]
