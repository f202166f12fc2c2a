import asyncio
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Optional, Tuple

from services.twitch.models.message import TwitchChatMessage
from shared.logging.logger import get_logger

log = get_logger("twitch.chat")


class TwitchChatError(RuntimeError):
    """The IRC session ended or was refused."""


class TwitchChatClient:
    """
    Minimal Twitch IRC-over-TLS client for chat and channel notices.

    - No event loop creation on import.
    - Connection lifecycle is owned by callers (the chat worker).
    - Yields PRIVMSG (chat, cheers) and USERNOTICE (subs, gifted subs,
      raids); every other command is handled or ignored internally.
    """

    HOST = "irc.chat.twitch.tv"
    PORT = 6697

    YIELDED_COMMANDS = ("PRIVMSG", "USERNOTICE")

    def __init__(
        self,
        token: str,
        nickname: str,
        channel: str,
        *,
        request_tags: bool = True,
    ):
        if not token:
            raise RuntimeError("Twitch OAuth token is required")
        if not channel:
            raise RuntimeError("Twitch channel is required")

        self.token = self._normalize_token(token)
        self.nickname = nickname or self._normalize_channel(channel)
        self.channel = self._normalize_channel(channel)
        self.request_tags = request_tags

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None

        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Establish TLS IRC connection and join the configured channel.
        """
        if self._connected:
            log.debug("[twitch] Chat client already connected")
            return

        log.info(
            f"[twitch] Connecting to IRC ({self.HOST}:{self.PORT}) "
            f"as nick={self.nickname} channel=#{self.channel}"
        )
        self.reader, self.writer = await asyncio.open_connection(
            self.HOST, self.PORT, ssl=True
        )

        await self._send_raw(f"PASS {self.token}")
        await self._send_raw(f"NICK {self.nickname}")

        if self.request_tags:
            await self._send_raw("CAP REQ :twitch.tv/tags twitch.tv/commands")

        await self._send_raw(f"JOIN #{self.channel}")
        self._connected = True
        log.info(f"[twitch] Joined channel #{self.channel}")

    async def close(self) -> None:
        if not self.writer:
            return

        log.info("[twitch] Closing IRC connection")
        try:
            await self._send_raw("PART #" + self.channel)
        except (OSError, RuntimeError) as e:
            log.debug(f"[twitch] PART before close failed; ignored: {e}")

        try:
            self.writer.close()
            await self.writer.wait_closed()
        except OSError as e:
            log.debug(f"[twitch] Error during IRC close ignored: {e}")
        finally:
            self.reader = None
            self.writer = None
            self._connected = False

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def iter_messages(self) -> AsyncGenerator[TwitchChatMessage, None]:
        """
        Read IRC lines and yield parsed messages.

        Raises TwitchChatError when the server closes the session, asks
        for a reconnect, or rejects the credentials.
        """
        if not self.reader:
            raise RuntimeError("iter_messages called before connect()")

        while True:
            line = await self.reader.readline()

            if line == b"":
                self._connected = False
                raise TwitchChatError("IRC connection closed by remote")

            decoded = line.decode("utf-8", errors="ignore").strip()
            if not decoded:
                continue

            if decoded.startswith("PING"):
                await self._handle_ping(decoded)
                continue

            msg = self.parse_line(decoded)
            if msg:
                yield msg

    # ------------------------------------------------------------------ #
    # Parsing
    # ------------------------------------------------------------------ #

    def parse_line(self, raw: str) -> Optional[TwitchChatMessage]:
        """
        Parse a PRIVMSG or USERNOTICE line. Session-level commands raise
        TwitchChatError; anything else returns None.
        """
        tags, remainder = self._split_tags(raw)
        prefix, command, params = self._split_prefix_and_command(remainder)

        if command == "RECONNECT":
            raise TwitchChatError("Server requested reconnect")

        if command == "NOTICE" and params and "authentication failed" in params[-1].lower():
            raise TwitchChatError(f"401 Unauthorized: {params[-1]}")

        if command not in self.YIELDED_COMMANDS or not params:
            return None
        if command == "PRIVMSG" and len(params) < 2:
            return None

        channel = params[0].lstrip("#")
        text = params[1] if len(params) > 1 else ""

        username = tags.get("login") or self._parse_username(prefix)
        if not username:
            username = tags.get("display-name") or "unknown"

        message = TwitchChatMessage(
            raw=raw,
            username=username,
            channel=channel,
            text=text,
            command=command,
            message_id=tags.get("id"),
            user_id=tags.get("user-id"),
            room_id=tags.get("room-id"),
            display_name=tags.get("display-name") or None,
            badges=self._parse_badges(tags.get("badges")),
            timestamp=self._parse_timestamp(tags.get("tmi-sent-ts")),
            notice_type=tags.get("msg-id") if command == "USERNOTICE" else None,
            tags=tags,
        )

        log.debug(
            f"[twitch][#{channel}] {command} {username}: {text} "
            f"(id={message.message_id}, ts={message.timestamp})"
        )

        return message

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _send_raw(self, data: str) -> None:
        if not self.writer:
            raise RuntimeError("IRC writer is not initialized")

        payload = (data + "\r\n").encode("utf-8")
        self.writer.write(payload)
        await self.writer.drain()

    async def _handle_ping(self, raw: str) -> None:
        # Twitch IRC sends: PING :tmi.twitch.tv
        payload = raw.split(" ", 1)[-1]
        await self._send_raw(f"PONG {payload}")
        log.debug("[twitch] Responded to PING")

    @staticmethod
    def _split_tags(raw: str) -> Tuple[Dict[str, str], str]:
        if raw.startswith("@"):
            tags_part, remainder = raw.split(" ", 1)
            tags = {}
            for pair in tags_part[1:].split(";"):
                if "=" in pair:
                    k, v = pair.split("=", 1)
                    tags[k] = v.replace("\\s", " ")
            return tags, remainder

        return {}, raw

    @staticmethod
    def _split_prefix_and_command(raw: str) -> Tuple[str, str, Tuple[str, ...]]:
        prefix = ""
        rest = raw
        if raw.startswith(":"):
            if " " in raw:
                prefix, rest = raw[1:].split(" ", 1)
            else:
                prefix = raw[1:]
                rest = ""

        if " :" in rest:
            middle, trailing = rest.split(" :", 1)
            parts = middle.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:] + [trailing])
        else:
            parts = rest.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:])

        return prefix, command, params

    @staticmethod
    def _parse_username(prefix: str) -> str:
        # Prefix example: nickname!nickname@nickname.tmi.twitch.tv
        if "!" in prefix:
            return prefix.split("!", 1)[0]
        return ""

    @staticmethod
    def _parse_timestamp(raw_ts: Optional[str]) -> Optional[datetime]:
        if not raw_ts:
            return None
        try:
            millis = int(raw_ts)
        except ValueError:
            return None
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)

    @staticmethod
    def _parse_badges(raw_badges: Optional[str]) -> list[str]:
        if not raw_badges:
            return []
        return [badge for badge in raw_badges.split(",") if badge]

    @staticmethod
    def _normalize_token(token: str) -> str:
        token = token.strip()
        if not token.startswith("oauth:"):
            return f"oauth:{token}"
        return token

    @staticmethod
    def _normalize_channel(channel: str) -> str:
        return channel.lstrip("#").strip().lower()
