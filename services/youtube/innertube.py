"""
YouTube Innertube client construction.

The `innertube` distribution is imported lazily the first time a client is
needed; concurrent first callers share a single import. Everything here is
process-scoped and owned by the runtime: there are no module-level caches.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from shared.logging.logger import get_logger

log = get_logger("youtube.innertube")

DEFAULT_CLIENT_NAME = "WEB"

# A builder turns keyword config into a client exposing `get_info(video_id)`
Builder = Callable[..., Any]
Importer = Callable[[], Any]


class InnertubeCreationError(RuntimeError):
    """Client construction failed or timed out."""


# ----------------------------------------------------------------------
# Adapter over the `innertube` PyPI client
# ----------------------------------------------------------------------

def _runs_text(node: Any) -> Optional[str]:
    if not isinstance(node, dict):
        return None
    if isinstance(node.get("simpleText"), str):
        return node["simpleText"]
    runs = node.get("runs")
    if isinstance(runs, list):
        return "".join(str(r.get("text", "")) for r in runs if isinstance(r, dict))
    return None


def _primary_info_renderer(next_response: Dict[str, Any]) -> Dict[str, Any]:
    contents = (
        next_response.get("contents", {})
        .get("twoColumnWatchNextResults", {})
        .get("results", {})
        .get("results", {})
        .get("contents", [])
    )
    for item in contents if isinstance(contents, list) else []:
        if isinstance(item, dict) and "videoPrimaryInfoRenderer" in item:
            return item["videoPrimaryInfoRenderer"] or {}
    return {}


def map_video_info(player: Dict[str, Any], next_response: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reshape raw `player` + `next` responses into the document consumed by
    the viewer extractor (primary_info / video_details / basic_info).
    """
    details = player.get("videoDetails", {}) if isinstance(player, dict) else {}
    primary = _primary_info_renderer(next_response if isinstance(next_response, dict) else {})

    view_renderer = primary.get("viewCount", {}).get("videoViewCountRenderer", {})
    view_text = _runs_text(view_renderer.get("viewCount"))
    is_live = bool(details.get("isLive") or view_renderer.get("isLive"))

    return {
        "primary_info": {
            "view_count": {"view_count": {"text": view_text}},
        },
        "video_details": {
            "viewer_count": view_renderer.get("originalViewCount") if is_live else None,
        },
        "basic_info": {
            "id": details.get("videoId"),
            "is_live": is_live,
            "view_count": details.get("viewCount"),
        },
    }


class InnertubeInfoClient:
    """
    Async facade over the synchronous `innertube.InnerTube` client.
    """

    def __init__(self, client: Any):
        self._client = client

    async def get_info(self, video_id: str) -> Dict[str, Any]:
        player = await asyncio.to_thread(self._client.player, video_id)
        next_response = await asyncio.to_thread(self._client.next, video_id)
        return map_video_info(player, next_response)

    def close(self) -> None:
        adaptor = getattr(self._client, "adaptor", None)
        session = getattr(adaptor, "session", None)
        if session is not None and hasattr(session, "close"):
            session.close()


def default_importer() -> Builder:
    module = importlib.import_module("innertube")

    def build(client: str = DEFAULT_CLIENT_NAME, **_ignored: Any) -> InnertubeInfoClient:
        return InnertubeInfoClient(module.InnerTube(client))

    return build


# ----------------------------------------------------------------------
# Factory
# ----------------------------------------------------------------------

class InnertubeFactory:
    """
    Lazily imports the client binding once and builds client instances.

    Tests swap the binding with `configure(importer=...)`.
    """

    def __init__(self, *, importer: Optional[Importer] = None):
        self._importer: Importer = importer or default_importer
        self._builder: Optional[Builder] = None
        self._import_task: Optional[asyncio.Task] = None

    def configure(self, *, importer: Optional[Importer] = None) -> None:
        self._importer = importer or default_importer
        self._builder = None
        self._import_task = None

    # ------------------------------------------------------------

    async def _load_builder(self) -> Builder:
        if self._builder is not None:
            return self._builder

        if self._import_task is None:
            self._import_task = asyncio.ensure_future(self._run_importer())

        task = self._import_task
        try:
            builder = await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Failed imports are not memoized; the next caller retries
            if self._import_task is task:
                self._import_task = None
            raise

        self._builder = builder
        return builder

    async def _run_importer(self) -> Builder:
        result = self._importer()
        if inspect.isawaitable(result):
            result = await result
        if not callable(result):
            raise TypeError("Innertube importer must return a callable builder")
        log.debug("[youtube] Innertube binding loaded")
        return result

    # ------------------------------------------------------------

    async def create_instance(self) -> Any:
        return await self.create_with_config({})

    async def create_with_config(self, cfg: Optional[Dict[str, Any]] = None) -> Any:
        try:
            builder = await self._load_builder()
            instance = builder(**(cfg or {}))
            if inspect.isawaitable(instance):
                instance = await instance
            return instance
        except asyncio.CancelledError:
            raise
        except InnertubeCreationError:
            raise
        except Exception as e:
            raise InnertubeCreationError(f"Innertube creation failed: {e}") from e

    async def create_with_timeout(
        self,
        timeout_ms: float,
        cfg: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Build an instance, giving up after `timeout_ms`.

        On timeout the construction keeps running in the background; a
        failure is logged and a late instance is closed.
        """
        task = asyncio.ensure_future(self.create_with_config(cfg))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            task.add_done_callback(_discard_result)
            raise InnertubeCreationError(
                f"Innertube creation timeout ({int(timeout_ms)}ms)"
            ) from None

    def create_lazy_reference(self, cfg: Optional[Dict[str, Any]] = None) -> "LazyInnertubeReference":
        return LazyInnertubeReference(self, cfg)


_abandoned_closes: Set[asyncio.Task] = set()


def _discard_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    if task.exception() is not None:
        log.debug(f"[youtube] Abandoned Innertube construction failed: {task.exception()}")
        return

    # late success: nobody owns this instance
    log.debug("[youtube] Abandoned Innertube construction finished late; closing it")
    closer = asyncio.ensure_future(_close_quietly(task.result()))
    _abandoned_closes.add(closer)
    closer.add_done_callback(_abandoned_closes.discard)


class LazyInnertubeReference:
    """
    Deferred handle: nothing is constructed until `get()` is awaited.
    """

    def __init__(self, factory: InnertubeFactory, cfg: Optional[Dict[str, Any]] = None):
        self._factory = factory
        self._cfg = dict(cfg or {})
        self._instance: Any = None
        self._lock = asyncio.Lock()

    @property
    def is_resolved(self) -> bool:
        return self._instance is not None

    async def get(self) -> Any:
        if self._instance is not None:
            return self._instance
        async with self._lock:
            if self._instance is None:
                self._instance = await self._factory.create_with_config(self._cfg)
        return self._instance


# ----------------------------------------------------------------------
# Instance manager
# ----------------------------------------------------------------------

@dataclass
class _CachedInstance:
    instance: Any
    created: float
    last_accessed: float
    healthy: bool = True
    error: Optional[str] = None


class InnertubeInstanceManager:
    """
    Small keyed cache of Innertube clients.

    At most `max_instances` clients live at once; the least recently used
    one is disposed to make room. Instances older than `instance_ttl_s` or
    marked unhealthy are rebuilt on next access.
    """

    def __init__(
        self,
        *,
        factory: InnertubeFactory,
        max_instances: int = 2,
        instance_ttl_s: float = 300.0,
        timeout_ms: float = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if factory is None:
            raise RuntimeError("InnertubeInstanceManager requires an InnertubeFactory")

        self.factory = factory
        self.max_instances = max(1, int(max_instances))
        self.instance_ttl_s = instance_ttl_s
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._instances: Dict[str, _CachedInstance] = {}
        self._lock = asyncio.Lock()
        self.disposed = False

    # ------------------------------------------------------------

    def _is_healthy(self, cached: _CachedInstance) -> bool:
        if not cached.healthy:
            return False
        return (self._clock() - cached.created) <= self.instance_ttl_s

    async def get_instance(
        self,
        identifier: str = "default",
        create_fn: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Any:
        if self.disposed:
            raise RuntimeError("InnertubeInstanceManager has been disposed")

        async with self._lock:
            cached = self._instances.get(identifier)
            if cached and self._is_healthy(cached):
                cached.last_accessed = self._clock()
                return cached.instance

            if cached:
                await self._dispose_locked(identifier)

            if len(self._instances) >= self.max_instances:
                log.warning(
                    f"[youtube] Innertube instance limit reached ({self.max_instances}); "
                    "disposing least recently used"
                )
                oldest = min(self._instances.items(), key=lambda kv: kv[1].last_accessed)[0]
                await self._dispose_locked(oldest)

            if create_fn is not None:
                instance = await create_fn()
            else:
                instance = await self.factory.create_with_timeout(self.timeout_ms)

            now = self._clock()
            self._instances[identifier] = _CachedInstance(
                instance=instance, created=now, last_accessed=now
            )
            log.debug(f"[youtube] Cached Innertube instance '{identifier}'")
            return instance

    def mark_instance_unhealthy(self, identifier: str, error: Any = None) -> None:
        cached = self._instances.get(identifier)
        if cached:
            cached.healthy = False
            cached.error = str(error) if error is not None else None
            log.warning(f"[youtube] Innertube instance '{identifier}' marked unhealthy: {error}")

    async def dispose_instance(self, identifier: str) -> None:
        async with self._lock:
            await self._dispose_locked(identifier)

    async def _dispose_locked(self, identifier: str) -> None:
        cached = self._instances.pop(identifier, None)
        if cached is None:
            return
        await _close_quietly(cached.instance)
        log.debug(f"[youtube] Disposed Innertube instance '{identifier}'")

    async def cleanup(self) -> None:
        if self.disposed:
            return
        async with self._lock:
            for identifier in list(self._instances):
                await self._dispose_locked(identifier)
            self.disposed = True
        log.info("[youtube] Innertube instances cleaned up")

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        details: List[Dict[str, Any]] = [
            {
                "identifier": identifier,
                "healthy": cached.healthy,
                "age_s": round(now - cached.created, 3),
                "error": cached.error,
            }
            for identifier, cached in self._instances.items()
        ]
        return {
            "active_instances": len(self._instances),
            "max_instances": self.max_instances,
            "instances": details,
        }


async def _close_quietly(instance: Any) -> None:
    for name in ("close", "dispose"):
        fn = getattr(instance, name, None)
        if not callable(fn):
            continue
        try:
            result = fn()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning(f"[youtube] Innertube instance close error ignored: {e}")
        return


__all__ = [
    "InnertubeCreationError",
    "InnertubeFactory",
    "InnertubeInfoClient",
    "InnertubeInstanceManager",
    "LazyInnertubeReference",
    "default_importer",
    "map_video_info",
]
