import asyncio
from typing import Any, Awaitable, Callable, Optional

from services.twitch.api.chat import TwitchChatClient, TwitchChatError
from services.twitch.models.message import TwitchChatMessage
from shared.logging.logger import get_logger

log = get_logger("twitch.chat_worker")

DropCallback = Callable[[Exception], Awaitable[Any]]

HANDLER_FOR_KIND = {
    "chat": "on_chat",
    "gift": "on_gift",
    "paypiggy": "on_paypiggy",
    "giftpaypiggy": "on_giftpaypiggy",
    "raid": "on_raid",
}


class TwitchChatWorker:
    """
    Platform-owned Twitch chat worker (IRC over TLS).

    Responsibilities:
    - Own the TwitchChatClient lifecycle (connect, read, shutdown)
    - Turn chat lines and channel notices into normalized events
    - Report a dropped session so the owner can schedule a reconnect
    """

    def __init__(
        self,
        *,
        client: TwitchChatClient,
        handlers,
        on_connected: Optional[Callable[[], Any]] = None,
        on_drop: Optional[DropCallback] = None,
    ):
        if client is None:
            raise RuntimeError("TwitchChatWorker requires a chat client")
        if handlers is None:
            raise RuntimeError("TwitchChatWorker requires platform handlers")

        self._client = client
        self._handlers = handlers
        self._on_connected = on_connected
        self._on_drop = on_drop
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    # ------------------------------------------------------------------ #

    async def start(self) -> asyncio.Task:
        """
        Connect (errors surface to the caller), then read in the background.
        """
        self._stop_event.clear()
        await self._client.connect()
        if self._on_connected:
            self._on_connected()
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def run(self) -> None:
        log.info(f"[twitch] Chat worker reading #{self._client.channel}")

        try:
            async for message in self._client.iter_messages():
                await self._handle_message(message)

                if self._stop_event.is_set():
                    break

        except asyncio.CancelledError:
            log.debug("[twitch] Chat worker cancelled")
            raise
        except (TwitchChatError, OSError) as e:
            if not self._stop_event.is_set():
                log.warning(f"[twitch] Chat session dropped: {e}")
                await self._client.close()
                await self._report_drop(e)
        except Exception as e:
            if not self._stop_event.is_set():
                log.error(f"[twitch] Chat worker error: {e}")
                await self._client.close()
                await self._report_drop(e)

    async def shutdown(self) -> None:
        if self._stop_event.is_set():
            return

        self._stop_event.set()
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._client.close()
        log.info("[twitch] Chat worker stopped")

    # ------------------------------------------------------------------ #

    async def _report_drop(self, error: Exception) -> None:
        if self._on_drop is None:
            return
        try:
            await self._on_drop(error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[twitch] Drop handler error ignored: {e}")

    async def _handle_message(self, message: TwitchChatMessage) -> None:
        try:
            event = message.to_platform_event()
        except ValueError as e:
            log.debug(f"[twitch] Malformed {message.command} ignored: {e}")
            return
        if event is None:
            return

        handler_name = HANDLER_FOR_KIND.get(event.kind)
        if handler_name is None:
            return

        try:
            await self._handlers.dispatch(handler_name, event.to_payload())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[twitch] {handler_name} handler error ignored: {e}")


__all__ = ["TwitchChatWorker"]
