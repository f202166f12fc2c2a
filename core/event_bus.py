"""
Process-scoped event bus.

Handlers are isolated: a failing handler is logged, counted, and re-emitted
on the `handler-error` topic, but never propagates to the emitter. Async
handlers are scheduled on the running loop and tracked so shutdown can
drain them.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from shared.logging.logger import get_logger

log = get_logger("core.event_bus")


# ----------------------------------------------------------------------
# Topics referenced by the core
# ----------------------------------------------------------------------

STREAM_DETECTED = "platform:stream-detected"
STREAM_STATUS = "platform:stream-status"
PLATFORM_EVENT = "platform:event"
VIEWER_COUNT_UPDATED = "viewer-count:updated"
NOTIFICATION_ENQUEUED = "notification:enqueued"
TTS_SPEECH_REQUESTED = "tts:speech-requested"
VFX_COMMAND_REQUESTED = "vfx:command-requested"
COOLDOWN_BLOCKED = "cooldown:blocked"
COOLDOWN_GLOBAL_BLOCKED = "cooldown:global-blocked"
COOLDOWN_HEAVY_DETECTED = "cooldown:heavy-detected"
COOLDOWN_RESET = "cooldown:reset"
HANDLER_ERROR = "handler-error"


@dataclass
class _Subscription:
    handler: Callable[..., Any]
    once: bool = False


@dataclass
class TopicStats:
    emitted: int = 0
    succeeded: int = 0
    failed: int = 0
    total_ms: float = 0.0
    last_emitted_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        handled = self.succeeded + self.failed
        return {
            "emitted": self.emitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "average_ms": round(self.total_ms / handled, 3) if handled else 0.0,
            "last_emitted_at": self.last_emitted_at,
        }


class EventBus:
    """
    Minimal pub/sub hub.

    Contract:
    - subscribe(topic, handler, once=False) -> unsubscribe callable
    - unsubscribe(topic, handler) -> bool
    - emit(topic, event) -> number of handlers invoked
    """

    def __init__(self, *, debug: bool = False, max_listeners: int = 50):
        self.debug = debug
        self.max_listeners = max_listeners
        self._subscriptions: Dict[str, List[_Subscription]] = {}
        self._stats: Dict[str, TopicStats] = {}
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------

    def subscribe(
        self,
        topic: str,
        handler: Callable[..., Any],
        *,
        once: bool = False,
    ) -> Callable[[], bool]:
        if not callable(handler):
            raise TypeError(f"Handler for event '{topic}' must be callable")

        subs = self._subscriptions.setdefault(topic, [])
        subs.append(_Subscription(handler=handler, once=once))

        if len(subs) > self.max_listeners:
            log.warning(
                f"[EventBus] '{topic}' has {len(subs)} listeners "
                f"(max {self.max_listeners}); possible leak"
            )

        if self.debug:
            log.debug(f"[EventBus] Subscribed to '{topic}' (listeners={len(subs)})")

        return lambda: self.unsubscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Callable[..., Any]) -> bool:
        subs = self._subscriptions.get(topic, [])
        for sub in subs:
            if sub.handler is handler or sub.handler == handler:
                subs.remove(sub)
                if not subs:
                    self._subscriptions.pop(topic, None)
                return True

        log.warning(f"[EventBus] Handler not found for unsubscription from '{topic}'")
        return False

    def listener_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    # ------------------------------------------------------------

    def emit(self, topic: str, event: Any = None) -> int:
        stats = self._stats.setdefault(topic, TopicStats())
        stats.emitted += 1
        stats.last_emitted_at = time.time()

        subs = list(self._subscriptions.get(topic, []))
        if self.debug:
            log.debug(f"[EventBus] Emitting '{topic}' to {len(subs)} listener(s)")

        for sub in subs:
            if sub.once:
                self.unsubscribe(topic, sub.handler)
            self._invoke(topic, sub.handler, event)

        return len(subs)

    def _invoke(self, topic: str, handler: Callable[..., Any], event: Any) -> None:
        started = time.perf_counter()
        try:
            result = handler(event)
        except Exception as e:
            self._record_failure(topic, started, e)
            return

        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                log.warning(
                    f"[EventBus] Async handler for '{topic}' dropped (no running loop)"
                )
                if inspect.iscoroutine(result):
                    result.close()
                return

            task = loop.create_task(self._await_handler(topic, result, started))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return

        self._record_success(topic, started)

    async def _await_handler(self, topic: str, awaitable, started: float) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failure(topic, started, e)
            return
        self._record_success(topic, started)

    def _record_success(self, topic: str, started: float) -> None:
        stats = self._stats.setdefault(topic, TopicStats())
        stats.succeeded += 1
        stats.total_ms += (time.perf_counter() - started) * 1000.0

    def _record_failure(self, topic: str, started: float, error: Exception) -> None:
        stats = self._stats.setdefault(topic, TopicStats())
        stats.failed += 1
        stats.total_ms += (time.perf_counter() - started) * 1000.0
        log.warning(f"[EventBus] Handler error for '{topic}' ignored: {error}")

        # Never recurse on the error topic itself
        if topic != HANDLER_ERROR:
            self.emit(HANDLER_ERROR, {"topic": topic, "error": error})

    # ------------------------------------------------------------

    async def drain(self) -> None:
        """
        Wait for scheduled async handlers to finish.
        """
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {topic: stats.to_dict() for topic, stats in sorted(self._stats.items())}

    def clear(self) -> None:
        self._subscriptions.clear()
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()


__all__ = [
    "EventBus",
    "TopicStats",
    "STREAM_DETECTED",
    "STREAM_STATUS",
    "PLATFORM_EVENT",
    "VIEWER_COUNT_UPDATED",
    "NOTIFICATION_ENQUEUED",
    "TTS_SPEECH_REQUESTED",
    "VFX_COMMAND_REQUESTED",
    "COOLDOWN_BLOCKED",
    "COOLDOWN_GLOBAL_BLOCKED",
    "COOLDOWN_HEAVY_DETECTED",
    "COOLDOWN_RESET",
    "HANDLER_ERROR",
]
