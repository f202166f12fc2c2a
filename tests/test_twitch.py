"""Tests for Twitch IRC parsing, the chat worker and the platform adapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.lifecycle import PlatformHandlers
from core.retry import RetryEngine, RetryPolicy, is_auth_error
from services.twitch.api.chat import TwitchChatClient, TwitchChatError
from services.twitch.platform import RETRY_KEY, TwitchPlatform
from services.twitch.workers.chat_worker import TwitchChatWorker

TS = "tmi-sent-ts=1700000000000"
PRIVMSG = (
    f"@badges=subscriber/12,premium/1;display-name=Alice;id=abc;{TS};user-id=42 "
    ":alice!alice@alice.tmi.twitch.tv PRIVMSG #chan :hello world"
)


@pytest.fixture
def client():
    return TwitchChatClient(token="abc", nickname="bot", channel="#Chan")


class FakeChatClient:
    """Scripted stand-in for TwitchChatClient."""

    def __init__(self, lines=(), *, error=None, connect_error=None):
        self.channel = "chan"
        self.parser = TwitchChatClient(token="t", nickname="n", channel="chan")
        self.lines = list(lines)
        self.error = error
        self.connect_error = connect_error
        self.connected = False
        self.closed = 0
        self._hold = asyncio.Event()

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self):
        self.connected = False
        self.closed += 1

    async def iter_messages(self):
        for line in self.lines:
            yield self.parser.parse_line(line)
        if self.error is not None:
            raise self.error
        await self._hold.wait()


def collecting_handlers():
    received = {}

    def collector(name):
        return lambda payload: received.setdefault(name, []).append(payload)

    handlers = PlatformHandlers(
        on_chat=collector("chat"),
        on_gift=collector("gift"),
        on_paypiggy=collector("paypiggy"),
        on_giftpaypiggy=collector("giftpaypiggy"),
        on_raid=collector("raid"),
    )
    return handlers, received


class TestParsing:
    def test_client_normalizes_credentials(self, client):
        assert client.token == "oauth:abc"
        assert client.channel == "chan"
        assert TwitchChatClient(token="oauth:x", nickname="", channel="Chan").nickname == "chan"

    def test_client_requires_token_and_channel(self):
        with pytest.raises(RuntimeError):
            TwitchChatClient(token="", nickname="n", channel="c")
        with pytest.raises(RuntimeError):
            TwitchChatClient(token="t", nickname="n", channel="")

    def test_privmsg_to_chat_event(self, client):
        message = client.parse_line(PRIVMSG)

        assert message.username == "alice"
        assert message.badges == ["subscriber/12", "premium/1"]
        payload = message.to_platform_event().to_payload()
        assert payload["type"] == "platform:chat"
        assert payload["platform"] == "twitch"
        assert payload["username"] == "Alice"
        assert payload["userId"] == "42"
        assert payload["id"] == "abc"
        assert payload["message"] == "hello world"
        assert payload["timestamp"] == "2023-11-14T22:13:20Z"

    def test_cheer_becomes_bits_gift(self, client):
        line = f"@bits=100;display-name=Bob;user-id=7;{TS} :bob!bob@bob.tmi.twitch.tv PRIVMSG #chan :Cheer100 nice"

        payload = client.parse_line(line).to_platform_event().to_payload()

        assert payload["type"] == "platform:gift"
        assert payload["amount"] == 100
        assert payload["currency"] == "bits"
        assert payload["giftType"] == "bits"

    def test_resub_notice(self, client):
        line = (
            f"@msg-id=resub;login=carol;display-name=Carol;msg-param-cumulative-months=6;"
            f"msg-param-sub-plan=1000;user-id=9;{TS} :tmi.twitch.tv USERNOTICE #chan :Great\\sstream"
        )

        payload = client.parse_line(line).to_platform_event().to_payload()

        assert payload["type"] == "platform:paypiggy"
        assert payload["months"] == 6
        assert payload["tier"] == "1000"
        assert payload["isRenewal"] is True

    def test_mystery_gift_count(self, client):
        line = f"@msg-id=submysterygift;login=dan;msg-param-mass-gift-count=5;{TS} :tmi.twitch.tv USERNOTICE #chan"

        payload = client.parse_line(line).to_platform_event().to_payload()

        assert payload["type"] == "platform:giftpaypiggy"
        assert payload["giftCount"] == 5
        assert payload["username"] == "dan"

    def test_raid_notice(self, client):
        line = (
            f"@msg-id=raid;login=erin;msg-param-displayName=Erin;msg-param-viewerCount=25;{TS} "
            ":tmi.twitch.tv USERNOTICE #chan"
        )

        payload = client.parse_line(line).to_platform_event().to_payload()

        assert payload["type"] == "platform:raid"
        assert payload["username"] == "Erin"
        assert payload["viewerCount"] == 25

    def test_ignored_lines(self, client):
        assert client.parse_line(":alice!alice@alice.tmi.twitch.tv JOIN #chan") is None
        notice = client.parse_line(f"@msg-id=announcement;login=x;{TS} :tmi.twitch.tv USERNOTICE #chan :hey")
        assert notice.to_platform_event() is None

    def test_session_commands_raise(self, client):
        with pytest.raises(TwitchChatError):
            client.parse_line(":tmi.twitch.tv RECONNECT")
        with pytest.raises(TwitchChatError) as excinfo:
            client.parse_line(":tmi.twitch.tv NOTICE * :Login authentication failed")
        assert is_auth_error(excinfo.value)


@pytest.mark.asyncio
class TestClientReading:
    async def test_ping_answered_and_eof_raises(self, client):
        client.reader = asyncio.StreamReader()
        client.writer = MagicMock()
        client.writer.drain = AsyncMock()
        client.reader.feed_data(b"PING :tmi.twitch.tv\r\n" + PRIVMSG.encode() + b"\r\n")
        client.reader.feed_eof()

        received = []
        with pytest.raises(TwitchChatError):
            async for message in client.iter_messages():
                received.append(message)

        assert [m.text for m in received] == ["hello world"]
        client.writer.write.assert_called_once_with(b"PONG :tmi.twitch.tv\r\n")


@pytest.mark.asyncio
class TestChatWorker:
    async def test_events_dispatched_then_drop_reported(self):
        fake = FakeChatClient(
            [PRIVMSG, ":alice!alice@alice.tmi.twitch.tv PRIVMSG #chan :second"],
            error=TwitchChatError("IRC connection closed by remote"),
        )
        handlers, received = collecting_handlers()
        on_drop = AsyncMock()
        worker = TwitchChatWorker(client=fake, handlers=handlers, on_drop=on_drop)

        task = await worker.start()
        await asyncio.wait_for(task, timeout=1)

        assert [p["message"] for p in received["chat"]] == ["hello world", "second"]
        on_drop.assert_awaited_once()
        assert isinstance(on_drop.await_args.args[0], TwitchChatError)
        assert fake.closed == 1

    async def test_handler_errors_isolated(self):
        fake = FakeChatClient([PRIVMSG, PRIVMSG])
        calls = []

        def failing(payload):
            calls.append(payload)
            raise RuntimeError("router down")

        worker = TwitchChatWorker(client=fake, handlers=PlatformHandlers(on_chat=failing))
        await worker.start()
        await asyncio.sleep(0.05)

        assert len(calls) == 2
        await worker.shutdown()

    async def test_shutdown_does_not_report_drop(self):
        fake = FakeChatClient()
        on_drop = AsyncMock()
        on_connected = MagicMock()
        worker = TwitchChatWorker(
            client=fake, handlers=PlatformHandlers(), on_connected=on_connected, on_drop=on_drop
        )

        await worker.start()
        assert worker.is_connected
        await worker.shutdown()

        on_connected.assert_called_once()
        on_drop.assert_not_awaited()
        assert not worker.is_connected

    async def test_requires_collaborators(self):
        with pytest.raises(RuntimeError):
            TwitchChatWorker(client=None, handlers=PlatformHandlers())
        with pytest.raises(RuntimeError):
            TwitchChatWorker(client=FakeChatClient(), handlers=None)


@pytest.mark.asyncio
class TestTwitchPlatform:
    async def test_failed_connect_retried_in_background(self):
        attempts = []

        def factory():
            attempts.append(1)
            if len(attempts) == 1:
                return FakeChatClient(connect_error=ConnectionError("refused"))
            return FakeChatClient()

        engine = RetryEngine(RetryPolicy(base_delay_ms=10))
        platform = TwitchPlatform({"username": "chan"}, oauth_token="", client_factory=factory, retry_engine=engine)

        await platform.initialize(PlatformHandlers())
        assert engine.has_pending_retry(RETRY_KEY)

        await asyncio.sleep(0.1)

        assert len(attempts) == 2
        assert platform.get_status()["connected"] is True
        assert engine.get_retry_count(RETRY_KEY) == 0
        await platform.cleanup()
        assert platform.worker is None

    async def test_auth_failure_not_retried(self):
        engine = RetryEngine(RetryPolicy(base_delay_ms=10))
        platform = TwitchPlatform(
            {"username": "chan"},
            oauth_token="",
            client_factory=lambda: FakeChatClient(connect_error=TwitchChatError("401 Unauthorized")),
            retry_engine=engine,
        )

        await platform.initialize(PlatformHandlers())

        assert not engine.has_pending_retry(RETRY_KEY)
        assert engine.get_retry_statistics()[RETRY_KEY]["gave_up"] is True
        await platform.cleanup()

    async def test_no_viewer_count_without_helix(self):
        platform = TwitchPlatform({"username": "chan"}, oauth_token="tok")

        assert await platform.get_viewer_count() is None

    async def test_from_config_uses_secrets(self, make_config):
        config = make_config(retry={"baseDelayMs": 50})

        platform = TwitchPlatform.from_config(
            {"username": "chan"},
            {"secrets": {"twitch_oauth_token": "tok", "twitch_bot_nick": "bot"}, "config_manager": config},
        )

        assert platform.nickname == "bot"
        assert platform.retry_engine.policy.base_delay_ms == 50

    async def test_requires_channel_and_token(self):
        with pytest.raises(RuntimeError):
            TwitchPlatform({}, oauth_token="tok")
        with pytest.raises(RuntimeError):
            TwitchPlatform({"username": "chan"}, oauth_token="")

    async def test_initialize_requires_handlers(self):
        platform = TwitchPlatform({"username": "chan"}, oauth_token="tok")

        with pytest.raises(RuntimeError):
            await platform.initialize(None)
