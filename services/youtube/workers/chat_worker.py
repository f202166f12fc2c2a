import asyncio
from typing import Any, Awaitable, Callable, Optional

from services.youtube.api.chat import YouTubeChatClient, YouTubeChatError
from services.youtube.models.message import YouTubeChatMessage
from shared.logging.logger import get_logger

log = get_logger("youtube.chat_worker")

DropCallback = Callable[[str, Exception], Awaitable[Any]]

# normalized event kind -> handler name
HANDLER_FOR_KIND = {
    "chat": "on_chat",
    "gift": "on_gift",
    "paypiggy": "on_paypiggy",
    "giftpaypiggy": "on_giftpaypiggy",
}


class YouTubeChatWorker:
    """
    One live chat connection for one YouTube stream.

    Responsibilities:
    - Own the YouTubeChatClient lifecycle (poll loop, shutdown)
    - Turn chat messages into normalized events for the platform handlers
    - Report a dropped chat to the owner so it can schedule a reconnect
    - Remain cancellation-safe; handler errors never stop the poll loop
    """

    def __init__(
        self,
        *,
        video_id: str,
        client: YouTubeChatClient,
        handlers,
        on_drop: Optional[DropCallback] = None,
    ):
        if client is None:
            raise RuntimeError("YouTubeChatWorker requires a chat client")
        if handlers is None:
            raise RuntimeError("YouTubeChatWorker requires platform handlers")

        self.video_id = video_id
        self._client = client
        self._handlers = handlers
        self._on_drop = on_drop
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    # ------------------------------------------------------------------ #

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    @property
    def is_running(self) -> bool:
        return bool(self._task and not self._task.done())

    async def run(self) -> None:
        log.info(f"[youtube][{self.video_id}] Chat worker starting")

        try:
            async for message in self._client.iter_messages():
                await self._handle_message(message)

        except asyncio.CancelledError:
            raise

        except YouTubeChatError as e:
            if not self._stopping:
                log.warning(f"[youtube][{self.video_id}] Live chat dropped: {e}")
                await self._report_drop(e)

        except Exception as e:
            if not self._stopping:
                log.error(f"[youtube][{self.video_id}] Chat worker error: {e}")
                await self._report_drop(e)

        finally:
            await self._client.close()
            log.info(f"[youtube][{self.video_id}] Chat worker stopped")

    async def stop(self) -> None:
        self._stopping = True
        await self._client.close()

        task = self._task
        # A drop handler may stop the worker from inside its own task
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def disconnect(self) -> None:
        await self.stop()

    # ------------------------------------------------------------------ #

    async def _report_drop(self, error: Exception) -> None:
        if self._on_drop is None:
            return
        try:
            await self._on_drop(self.video_id, error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[youtube][{self.video_id}] Drop handler error ignored: {e}")

    async def _handle_message(self, message: YouTubeChatMessage) -> None:
        try:
            event = message.to_platform_event()
        except ValueError as e:
            log.debug(f"[youtube][{self.video_id}] Malformed {message.message_type} ignored: {e}")
            return
        if event is None:
            return

        handler_name = HANDLER_FOR_KIND.get(event.kind)
        if handler_name is None:
            return

        log.debug(f"[youtube][{self.video_id}] {event.kind} from {event.username}")
        try:
            await self._handlers.dispatch(handler_name, event.to_payload())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[youtube][{self.video_id}] {handler_name} handler error ignored: {e}")


__all__ = ["YouTubeChatWorker"]
