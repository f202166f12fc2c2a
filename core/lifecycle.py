"""
Platform adapter lifecycle.

Builds every enabled adapter, wires it to a uniform set of handlers and
records per-platform health. Slow adapters (TikTok waits for the stream
to start) are initialized in the background so startup never blocks on
them. Shutdown cleans adapters up in reverse registration order.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.event_bus import PLATFORM_EVENT
from shared.logging.logger import get_logger
from shared.platforms.state import PlatformHealth

log = get_logger("core.lifecycle")

PlatformFactory = Callable[[Dict[str, Any], Dict[str, Any]], Any]
Handler = Callable[[Any], Any]

# Platforms whose initialization may wait indefinitely
BACKGROUND_PLATFORMS = ("tiktok",)

# Platforms that manage their own stream detection
SELF_DETECTING_PLATFORMS = ("youtube", "tiktok")

MAX_RECENT_ERRORS = 50


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PlatformHandlers:
    """
    Callbacks an adapter invokes with normalized payloads.

    Unset callbacks are no-ops so an adapter may implement any subset of
    the chat / monetization / viewer-count capabilities.
    """

    on_chat: Optional[Handler] = None
    on_gift: Optional[Handler] = None
    on_follow: Optional[Handler] = None
    on_raid: Optional[Handler] = None
    on_paypiggy: Optional[Handler] = None
    on_giftpaypiggy: Optional[Handler] = None
    on_share: Optional[Handler] = None
    on_envelope: Optional[Handler] = None
    on_viewer_count: Optional[Handler] = None
    on_stream_status: Optional[Handler] = None
    on_stream_detected: Optional[Handler] = None

    async def dispatch(self, name: str, data: Any) -> None:
        handler = getattr(self, name, None)
        if handler is None:
            return
        result = handler(data)
        if inspect.isawaitable(result):
            await result


# handler name -> event type carried on `platform:event`
HANDLER_EVENT_TYPES: Dict[str, str] = {
    "on_chat": "platform:chat",
    "on_gift": "platform:gift",
    "on_follow": "platform:follow",
    "on_raid": "platform:raid",
    "on_paypiggy": "platform:paypiggy",
    "on_giftpaypiggy": "platform:giftpaypiggy",
    "on_share": "platform:share",
    "on_envelope": "platform:envelope",
    "on_viewer_count": "platform:viewer-count",
    "on_stream_status": "platform:stream-status",
    "on_stream_detected": "platform:stream-detected",
}

# Events dropped when the payload carries no timestamp
TIMESTAMPED_EVENT_TYPES = frozenset(
    v for k, v in HANDLER_EVENT_TYPES.items() if k != "on_stream_detected"
)


class PlatformLifecycleService:
    """
    Contract:
    - initialize_all_platforms(platform_factories, handlers=None)
    - get_status() / is_platform_available(name) / get_platform_connection_time(name)
    - disconnect_all()
    """

    def __init__(
        self,
        *,
        config_manager,
        event_bus=None,
        stream_detector=None,
        dependencies: Optional[Dict[str, Any]] = None,
        handlers_factory: Optional[Callable[[str], Optional[PlatformHandlers]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if config_manager is None:
            raise RuntimeError("PlatformLifecycleService requires a config manager")

        self.config_manager = config_manager
        self.event_bus = event_bus
        self.stream_detector = stream_detector
        self.dependencies = dict(dependencies or {})
        self.handlers_factory = handlers_factory
        self._clock = clock

        # Insertion order is registration order
        self.platforms: Dict[str, Any] = {}
        self.connection_times: Dict[str, float] = {}
        self.health: Dict[str, Dict[str, Any]] = {}
        self.stream_statuses: Dict[str, Dict[str, Any]] = {}
        self.errors: List[Dict[str, Any]] = []
        self.background_inits: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------

    async def initialize_all_platforms(
        self,
        platform_factories: Dict[str, PlatformFactory],
        handlers: Optional[Dict[str, PlatformHandlers]] = None,
    ) -> Dict[str, Any]:
        """
        Build and connect every enabled platform.

        Construction happens in the order given so cleanup order is
        deterministic; connecting runs concurrently. A failing platform
        is recorded and never aborts the others.
        """
        log.info("Initializing platform connections")
        pending: List[Awaitable[None]] = []

        for name, factory in platform_factories.items():
            name = str(name).lower()
            self._ensure_health(name)
            cfg = self.config_manager.get_section(name)

            if not cfg or not cfg.get("enabled"):
                log.debug(f"[{name}] Skipped (disabled or not configured)")
                self.update_platform_health(name, state=PlatformHealth.DISABLED)
                continue

            self.update_platform_health(name, state=PlatformHealth.STARTING)

            if name == "youtube" and not cfg.get("username"):
                log.error("[youtube] Enabled but no username is configured")
                self.mark_platform_failure(name, "Missing username")
                continue

            try:
                instance = await self._create_instance(name, factory, dict(cfg))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"[{name}] Failed to create platform: {e}")
                self.mark_platform_failure(name, e)
                continue

            self.platforms[name] = instance
            platform_handlers = self.resolve_handlers(name, handlers)
            pending.append(self._start_platform(name, instance, platform_handlers, dict(cfg)))

        if pending:
            await asyncio.gather(*pending)

        log.info(
            f"Platform initialization finished "
            f"({len(self.platforms)} registered, {len(self.background_inits)} in background)"
        )
        return dict(self.platforms)

    async def _create_instance(self, name: str, factory: PlatformFactory, cfg: Dict[str, Any]) -> Any:
        if not callable(factory):
            raise RuntimeError(f"Invalid platform factory for {name}")

        instance = factory(cfg, self.dependencies)
        if inspect.isawaitable(instance):
            instance = await instance

        missing = [m for m in ("initialize", "cleanup") if not callable(getattr(instance, m, None))]
        if missing:
            raise RuntimeError(f"Platform {name} is missing {', '.join(missing)}()")
        return instance

    async def _start_platform(
        self,
        name: str,
        instance: Any,
        handlers: PlatformHandlers,
        cfg: Dict[str, Any],
    ) -> None:
        async def connect() -> Any:
            log.info(f"[{name}] Connecting")
            result = instance.initialize(handlers)
            if inspect.isawaitable(result):
                await result
            self.mark_platform_ready(name)
            return instance

        async def on_status(status: str, message: str) -> None:
            self._record_stream_status(name, status, message)

        if name in BACKGROUND_PLATFORMS:
            log.info(f"[{name}] Initializing in background")
            self.background_inits[name] = asyncio.get_running_loop().create_task(
                self._background_init(name, connect)
            )
            return

        try:
            if name in SELF_DETECTING_PLATFORMS or self.stream_detector is None:
                await connect()
            else:
                await self.stream_detector.start_stream_detection(name, cfg, connect, on_status)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"[{name}] Failed to initialize: {e}")
            self.mark_platform_failure(name, e)

    async def _background_init(self, name: str, connect: Callable[[], Awaitable[Any]]) -> None:
        try:
            await connect()
            log.info(f"[{name}] Background initialization completed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"[{name}] Background initialization failed: {e}")
            self.mark_platform_failure(name, e)

    async def wait_for_background_inits(self, timeout: float = 30.0) -> bool:
        """
        Wait up to `timeout` seconds; returns False when some are still running.
        """
        tasks = [t for t in self.background_inits.values() if not t.done()]
        if not tasks:
            return True
        log.info(f"Waiting for {len(tasks)} background platform initialization(s)")
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        if still_running:
            log.warning(f"{len(still_running)} background initialization(s) still running after {timeout:g}s")
        return not still_running

    # ------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------

    def resolve_handlers(
        self,
        name: str,
        provided: Optional[Dict[str, PlatformHandlers]] = None,
    ) -> PlatformHandlers:
        if provided:
            if provided.get(name) is not None:
                return provided[name]
            if provided.get("default") is not None:
                return provided["default"]
        if self.handlers_factory is not None:
            built = self.handlers_factory(name)
            if built is not None:
                return built
        return self.create_default_handlers(name)

    def create_default_handlers(self, name: str) -> PlatformHandlers:
        """
        Handlers that republish adapter payloads as `platform:event`.
        """
        def emitter(event_type: str) -> Handler:
            return lambda data: self.emit_platform_event(name, event_type, data)

        return PlatformHandlers(**{h: emitter(t) for h, t in HANDLER_EVENT_TYPES.items()})

    def emit_platform_event(self, name: str, event_type: str, data: Any) -> bool:
        if self.event_bus is None:
            log.debug(f"[{name}] No event bus; {event_type} dropped")
            return False

        if not isinstance(data, dict):
            if event_type in TIMESTAMPED_EVENT_TYPES:
                log.warning(f"[{name}] {event_type} without timestamp ignored (payload: {data!r})")
                return False
        else:
            data = self._sanitize_event_data(name, event_type, data)
            if event_type in TIMESTAMPED_EVENT_TYPES and not data.get("timestamp"):
                log.warning(f"[{name}] {event_type} without timestamp ignored")
                return False

        self.event_bus.emit(PLATFORM_EVENT, {"platform": name, "type": event_type, "data": data})
        return True

    @staticmethod
    def _sanitize_event_data(name: str, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        rest = {k: v for k, v in data.items() if k not in ("type", "platform")}
        if data.get("type") and data["type"] != event_type:
            rest["sourceType"] = data["type"]
        if data.get("platform") and data["platform"] != name:
            rest["sourcePlatform"] = data["platform"]
        return rest

    def _record_stream_status(self, name: str, status: str, message: str) -> None:
        status = str(status or "").lower()
        timestamp = _iso_now()
        log.info(f"[{name}] Stream status: {status} - {message}")
        self.stream_statuses[name] = {
            "status": status,
            "message": message,
            "timestamp": timestamp,
            "is_live": status == "live",
        }
        if status == "waiting" and self.health.get(name, {}).get("state") != PlatformHealth.HEALTHY.value:
            self.update_platform_health(name, state=PlatformHealth.RETRYING)
        elif status == "failed":
            self.mark_platform_failure(name, message)

        self.emit_platform_event(name, HANDLER_EVENT_TYPES["on_stream_status"], {
            "status": status,
            "message": message,
            "isLive": status == "live",
            "timestamp": timestamp,
        })

    # ------------------------------------------------------------
    # Health
    # ------------------------------------------------------------

    def _ensure_health(self, name: str) -> Dict[str, Any]:
        return self.health.setdefault(name, {
            "state": PlatformHealth.UNKNOWN.value,
            "attempts": 0,
            "failures": 0,
            "last_error": None,
            "last_updated": None,
            "last_connection": None,
        })

    def update_platform_health(self, name: str, **patch: Any) -> Dict[str, Any]:
        entry = self._ensure_health(name)
        state = patch.pop("state", None)
        if state is not None:
            state = PlatformHealth.from_value(state)
            if state is PlatformHealth.STARTING:
                entry["attempts"] += 1
            elif state is PlatformHealth.FAILED:
                entry["failures"] += 1
            entry["state"] = state.value

        entry.update(patch)
        entry["last_updated"] = patch.get("last_updated") or _iso_now()
        return entry

    def mark_platform_ready(self, name: str) -> None:
        if self.health.get(name, {}).get("state") == PlatformHealth.HEALTHY.value:
            return
        self.connection_times[name] = self._clock()
        self.update_platform_health(
            name,
            state=PlatformHealth.HEALTHY,
            last_error=None,
            last_connection=_iso_now(),
        )
        log.info(f"[{name}] Platform ready")

    def mark_platform_failure(self, name: str, error: Any) -> None:
        message = str(error)
        self.errors.append({"platform": name, "message": message, "timestamp": _iso_now()})
        del self.errors[:-MAX_RECENT_ERRORS]
        self.update_platform_health(name, state=PlatformHealth.FAILED, last_error=message)

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    def get_platform_connection_time(self, name: str) -> Optional[float]:
        return self.connection_times.get(name)

    def is_platform_available(self, name: str) -> bool:
        return self.platforms.get(name) is not None

    def get_platform(self, name: str) -> Any:
        return self.platforms.get(name)

    def get_all_platforms(self) -> Dict[str, Any]:
        return dict(self.platforms)

    def get_status(self) -> Dict[str, Any]:
        def with_state(state: PlatformHealth) -> List[str]:
            return [n for n, h in self.health.items() if h["state"] == state.value]

        return {
            "timestamp": _iso_now(),
            "initialized_platforms": with_state(PlatformHealth.HEALTHY),
            "initializing_platforms": with_state(PlatformHealth.STARTING) + with_state(PlatformHealth.RETRYING),
            "failed_platforms": [
                {
                    "name": n,
                    "last_error": self.health[n]["last_error"],
                    "failures": self.health[n]["failures"],
                    "last_updated": self.health[n]["last_updated"],
                }
                for n in with_state(PlatformHealth.FAILED)
            ],
            "disabled_platforms": with_state(PlatformHealth.DISABLED),
            "platform_health": {n: dict(h) for n, h in self.health.items()},
            "connection_times": dict(self.connection_times),
            "stream_statuses": dict(self.stream_statuses),
            "background_initializations": len(self.background_inits),
            "recent_errors": self.errors[-10:],
        }

    # ------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------

    async def disconnect_all(self, *, background_timeout: float = 10.0) -> None:
        log.info("Cleaning up all platforms")

        for task in self.background_inits.values():
            if not task.done():
                task.cancel()
        if self.background_inits:
            await asyncio.wait(list(self.background_inits.values()), timeout=background_timeout)

        if self.stream_detector is not None:
            try:
                await self.stream_detector.cleanup()
            except Exception as e:
                log.warning(f"Stream detector cleanup error ignored: {e}")

        for name in reversed(list(self.platforms)):
            platform = self.platforms[name]
            try:
                result = platform.cleanup()
                if inspect.isawaitable(result):
                    await result
                log.info(f"[{name}] Cleaned up")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"[{name}] Error during cleanup: {e}")
            finally:
                self.platforms.pop(name, None)
                self.connection_times.pop(name, None)

    shutdown = disconnect_all

    def dispose(self) -> None:
        self.platforms.clear()
        self.connection_times.clear()
        self.background_inits.clear()
        self.health.clear()
        self.errors.clear()
        self.stream_statuses.clear()
        log.debug("Platform lifecycle disposed")


__all__ = [
    "HANDLER_EVENT_TYPES",
    "PlatformHandlers",
    "PlatformLifecycleService",
]
