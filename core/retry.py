"""
Shared reconnect scheduler for platform connections.

One pending timer per platform key. A new error for the same key cancels
the pending timer and reschedules with the newest cleanup/reconnect
closures (most recent wins). The engine never raises to its callers:
cleanup failures are logged, reconnect failures schedule another attempt.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.logging.logger import get_logger

log = get_logger("core.retry")

ReconnectFn = Callable[[], Any]
CleanupFn = Callable[[], Any]


@dataclass
class RetryPolicy:
    base_delay_ms: float = 2000.0
    max_delay_ms: float = 60000.0
    exponent_cap: int = 10
    max_attempts: int = 0  # <= 0 means unlimited
    stop_on_auth_error: bool = True

    def __post_init__(self):
        if self.base_delay_ms <= 0:
            raise ValueError("RetryPolicy base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            self.max_delay_ms = self.base_delay_ms
        self.exponent_cap = max(0, int(self.exponent_cap))

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RetryPolicy":
        cfg = cfg if isinstance(cfg, dict) else {}
        return cls(
            base_delay_ms=float(cfg.get("baseDelayMs", cls.base_delay_ms)),
            max_delay_ms=float(cfg.get("maxDelayMs", cls.max_delay_ms)),
            exponent_cap=int(cfg.get("exponentCap", cls.exponent_cap)),
            max_attempts=int(cfg.get("maxAttempts", cls.max_attempts)),
            stop_on_auth_error=bool(cfg.get("stopOnAuthError", cls.stop_on_auth_error)),
        )

    def delay_ms(self, attempt: int) -> float:
        exponent = min(max(0, attempt), self.exponent_cap)
        return min(self.base_delay_ms * (2 ** exponent), self.max_delay_ms)


@dataclass
class RetryRecord:
    attempt: int = 0
    timer: Optional[asyncio.Task] = None
    last_error: Optional[str] = None
    last_scheduled_ms: Optional[float] = None
    total_failures: int = 0
    gave_up: bool = False


def is_auth_error(error: Any) -> bool:
    if error is None:
        return False
    status = getattr(error, "status_code", None) or getattr(
        getattr(error, "response", None), "status_code", None
    )
    if status == 401:
        return True
    text = str(error).lower()
    return "401" in text or "unauthorized" in text


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RetryEngine:
    """
    Contract:
    - handle_connection_error(platform_key, error, reconnect_fn, cleanup_fn)
    - reset_retry_count(platform_key)
    - get_retry_count(platform_key)
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()
        self._records: Dict[str, RetryRecord] = {}
        self._closed = False

    # ------------------------------------------------------------

    def _record(self, platform_key: str) -> RetryRecord:
        return self._records.setdefault(platform_key, RetryRecord())

    def get_retry_count(self, platform_key: str) -> int:
        record = self._records.get(platform_key)
        return record.attempt if record else 0

    def has_pending_retry(self, platform_key: str) -> bool:
        record = self._records.get(platform_key)
        return bool(record and record.timer and not record.timer.done())

    def calculate_delay_ms(self, platform_key: str) -> float:
        return self.policy.delay_ms(self.get_retry_count(platform_key))

    # ------------------------------------------------------------

    async def handle_connection_error(
        self,
        platform_key: str,
        error: Any,
        reconnect_fn: ReconnectFn,
        cleanup_fn: Optional[CleanupFn] = None,
    ) -> Optional[float]:
        """
        Schedule a reconnect for `platform_key`.

        Returns the scheduled delay in ms, or None when no attempt was
        scheduled (auth failure, attempt limit, engine closed).
        """
        if self._closed:
            log.debug(f"[{platform_key}] Retry engine closed; error not rescheduled")
            return None

        record = self._record(platform_key)
        record.last_error = str(error) if error is not None else None
        record.total_failures += 1

        log.warning(f"[{platform_key}] Connection error: {error}")

        # Cleanup completes before anything is scheduled
        if cleanup_fn is not None:
            try:
                await _maybe_await(cleanup_fn())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[{platform_key}] Cleanup error ignored: {e}")

        self._cancel_timer(record)

        if self.policy.stop_on_auth_error and is_auth_error(error):
            record.gave_up = True
            log.error(
                f"[{platform_key}] Authentication failure; retries stopped until "
                "credentials are refreshed"
            )
            return None

        if self.policy.max_attempts > 0 and record.attempt >= self.policy.max_attempts:
            record.gave_up = True
            log.error(
                f"[{platform_key}] Max retry attempts ({self.policy.max_attempts}) "
                "reached; giving up"
            )
            return None

        delay_ms = self.policy.delay_ms(record.attempt)
        record.attempt += 1
        record.gave_up = False
        record.last_scheduled_ms = delay_ms

        log.info(
            f"[{platform_key}] Reconnect attempt {record.attempt} "
            f"scheduled in {delay_ms / 1000:.1f}s"
        )

        record.timer = asyncio.create_task(
            self._fire(platform_key, delay_ms, reconnect_fn, cleanup_fn)
        )
        return delay_ms

    async def _fire(
        self,
        platform_key: str,
        delay_ms: float,
        reconnect_fn: ReconnectFn,
        cleanup_fn: Optional[CleanupFn],
    ) -> None:
        await asyncio.sleep(delay_ms / 1000.0)

        record = self._record(platform_key)
        # This timer is now running; it must not cancel itself on reschedule
        if record.timer is asyncio.current_task():
            record.timer = None

        try:
            await _maybe_await(reconnect_fn())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[{platform_key}] Reconnect attempt {record.attempt} failed: {e}")
            await self.handle_connection_error(platform_key, e, reconnect_fn, cleanup_fn)
            return

        log.info(f"[{platform_key}] Reconnect attempt {record.attempt} succeeded")

    # ------------------------------------------------------------

    def handle_connection_success(self, platform_key: str) -> None:
        record = self._records.get(platform_key)
        if record and record.attempt:
            log.info(f"[{platform_key}] Connection restored after {record.attempt} attempt(s)")
        self.reset_retry_count(platform_key)

    def reset_retry_count(self, platform_key: str) -> None:
        record = self._records.get(platform_key)
        if not record:
            return
        self._cancel_timer(record)
        record.attempt = 0
        record.gave_up = False

    @staticmethod
    def _cancel_timer(record: RetryRecord) -> None:
        timer = record.timer
        record.timer = None
        if timer and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    # ------------------------------------------------------------

    async def execute_with_retry(
        self,
        platform_key: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        attempts: int = 3,
    ) -> Any:
        """
        Run `fn` immediately, retrying inline with backoff on failure.

        Unlike handle_connection_error this surfaces the last error.
        """
        last_error: Optional[Exception] = None
        for attempt in range(max(1, attempts)):
            try:
                result = await _maybe_await(fn())
                self.handle_connection_success(platform_key)
                return result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if self.policy.stop_on_auth_error and is_auth_error(e):
                    break
                if attempt + 1 < attempts:
                    delay_ms = self.policy.delay_ms(attempt)
                    log.debug(
                        f"[{platform_key}] Attempt {attempt + 1}/{attempts} failed ({e}); "
                        f"retrying in {delay_ms / 1000:.1f}s"
                    )
                    await asyncio.sleep(delay_ms / 1000.0)

        raise last_error  # type: ignore[misc]

    def get_retry_statistics(self) -> Dict[str, Dict[str, Any]]:
        return {
            key: {
                "attempt": record.attempt,
                "pending": bool(record.timer and not record.timer.done()),
                "last_error": record.last_error,
                "last_delay_ms": record.last_scheduled_ms,
                "total_failures": record.total_failures,
                "gave_up": record.gave_up,
            }
            for key, record in sorted(self._records.items())
        }

    async def shutdown(self) -> None:
        self._closed = True
        timers = [r.timer for r in self._records.values() if r.timer and not r.timer.done()]
        for record in self._records.values():
            record.timer = None
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        log.debug(f"Retry engine shut down ({len(timers)} pending timer(s) cancelled)")


__all__ = ["RetryEngine", "RetryPolicy", "RetryRecord", "is_auth_error"]
