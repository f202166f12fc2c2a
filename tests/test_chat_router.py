"""Tests for chat routing, greetings and command dispatch."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.event_bus import VFX_COMMAND_REQUESTED
from services.chat.cooldowns import CommandCooldownService
from services.chat.router import (
    GREETING_WITH_COMMAND_PRIORITY,
    ChatNotificationRouter,
    FirstMessageTracker,
    sanitize_chat_message,
)


@pytest.fixture
def chat_config(make_config):
    return make_config(
        twitch={"enabled": True, "username": "channel"},
        commands={"hello": {"trigger": "!hello", "vfx": "wave"}, "hype": "hype"},
    )


@pytest.fixture
def vfx():
    service = MagicMock()
    service.execute_command = AsyncMock()
    return service


@pytest.fixture
def router(chat_config, display_queue, recording_bus, clock, vfx):
    cooldowns = CommandCooldownService(cooldowns=chat_config.get("cooldowns"), clock=clock)
    return ChatNotificationRouter(
        config_manager=chat_config,
        display_queue=display_queue,
        cooldowns=cooldowns,
        vfx_service=vfx,
        event_bus=recording_bus,
    )


def _types(queue):
    return [item["type"] for item in queue.snapshot()]


@pytest.mark.asyncio
class TestChatRouting:
    async def test_first_message_greets_once(self, router, display_queue):
        first = await router.handle_chat_message("twitch", {"username": "alice", "message": "hi all"})
        second = await router.handle_chat_message("twitch", {"username": "alice", "message": "again"})

        assert first == {"routed": True, "command": None, "greeted": True}
        assert second["greeted"] is False
        assert _types(display_queue) == ["greeting", "chat", "chat"]
        assert display_queue.peek()["data"]["displayMessage"] == "Welcome, alice!"

    async def test_reset_session_greets_again(self, router):
        await router.handle_chat_message("twitch", {"username": "alice", "message": "hi"})

        router.reset_session()

        result = await router.handle_chat_message("twitch", {"username": "alice", "message": "back"})
        assert result["greeted"] is True

    async def test_empty_and_disabled_messages_skipped(self, router, make_config, display_queue):
        assert (await router.handle_chat_message("twitch", {"username": "a", "message": "   "}))["routed"] is False

        router.config_manager = make_config(general={"messagesEnabled": False})
        result = await router.handle_chat_message("twitch", {"username": "a", "message": "hello"})

        assert result == {"routed": False, "reason": "messages disabled"}
        assert display_queue.get_queue_length() == 0

    async def test_greetings_disabled_per_platform(self, router, make_config, display_queue):
        router.config_manager = make_config(twitch={"enabled": True, "greetingsEnabled": False})

        result = await router.handle_chat_message("twitch", {"username": "a", "message": "hello"})

        assert result["greeted"] is False
        assert _types(display_queue) == ["chat"]

    async def test_message_sanitized_and_truncated(self, router, make_config, display_queue):
        router.config_manager = make_config(general={"maxMessageLength": 10})

        await router.handle_chat_message("twitch", {"username": "a", "message": "<b>hello</b>​world and more"})

        chat = [i for i in display_queue.snapshot() if i["type"] == "chat"][0]
        assert chat["data"]["message"] == "hello worl"


@pytest.mark.asyncio
class TestOldMessageFilter:
    async def test_messages_before_connection_dropped(self, router, display_queue):
        lifecycle = MagicMock()
        lifecycle.get_platform_connection_time.return_value = 1_700_000_000.0
        router.lifecycle = lifecycle

        old = await router.handle_chat_message(
            "twitch", {"username": "a", "message": "backlog", "timestamp": "2020-01-01T00:00:00Z"}
        )
        new = await router.handle_chat_message(
            "twitch", {"username": "a", "message": "fresh", "timestamp": "2030-01-01T00:00:00Z"}
        )

        assert old["reason"] == "old message (sent before connection)"
        assert new["routed"] is True

    async def test_unconnected_platform_not_filtered(self, router):
        lifecycle = MagicMock()
        lifecycle.get_platform_connection_time.return_value = None
        router.lifecycle = lifecycle

        result = await router.handle_chat_message(
            "twitch", {"username": "a", "message": "hi", "timestamp": "2020-01-01T00:00:00Z"}
        )

        assert result["routed"] is True


@pytest.mark.asyncio
class TestCommands:
    async def test_command_with_greeting_and_vfx(self, router, display_queue, recording_bus, vfx):
        result = await router.handle_chat_message("twitch", {"username": "alice", "userId": "42", "message": "!hello there"})

        assert result == {"routed": True, "command": "!hello", "greeted": True}
        items = display_queue.snapshot()
        assert [i["type"] for i in items] == ["greeting", "command", "chat"]
        assert items[0]["priority"] == GREETING_WITH_COMMAND_PRIORITY
        assert items[1]["vfx_config"]["vfx"] == "wave"
        assert items[1]["data"]["commandName"] == "hello"
        assert recording_bus.of(VFX_COMMAND_REQUESTED)[0]["command_key"] == "hello"
        vfx.execute_command.assert_awaited_once()

    async def test_user_cooldown_blocks_repeat(self, router, display_queue):
        await router.handle_chat_message("twitch", {"username": "a", "message": "!hello"})
        again = await router.handle_chat_message("twitch", {"username": "a", "message": "!hello"})

        assert again["command"] is None
        assert _types(display_queue).count("command") == 1

    async def test_global_cooldown_blocks_other_users(self, router, display_queue, clock):
        await router.handle_chat_message("twitch", {"username": "a", "message": "!hype"})
        clock.advance(10)
        other = await router.handle_chat_message("twitch", {"username": "b", "message": "!hype"})

        assert other["command"] is None
        assert _types(display_queue).count("command") == 1

    async def test_vfx_failure_does_not_block_command(self, router, vfx, display_queue):
        vfx.execute_command.side_effect = RuntimeError("obs offline")

        result = await router.handle_chat_message("twitch", {"username": "a", "message": "!hello"})

        assert result["command"] == "!hello"

    async def test_commands_disabled(self, router, make_config, display_queue):
        router.config_manager = make_config(general={"commandsEnabled": False}, commands={"hello": "!hello"})

        result = await router.handle_chat_message("twitch", {"username": "a", "message": "!hello"})

        assert result["command"] is None
        assert "command" not in _types(display_queue)


class TestHelpers:
    def test_detect_command(self, router):
        assert router.detect_command("!HYPE now")["command"] == "!hype"
        assert router.detect_command("!hello")["vfx"] == "wave"
        assert router.detect_command("!unknown") is None
        assert router.detect_command("hello") is None

    def test_sanitize_chat_message(self):
        assert sanitize_chat_message("a\x00b  <i>c</i>") == "ab c"
        assert sanitize_chat_message(None) == ""

    def test_first_message_tracker(self):
        tracker = FirstMessageTracker()

        assert tracker.is_first_message("twitch", "a")
        assert not tracker.is_first_message("twitch", "a")
        assert tracker.is_first_message("youtube", "a")

    def test_router_requires_collaborators(self, chat_config, display_queue):
        with pytest.raises(RuntimeError):
            ChatNotificationRouter(config_manager=chat_config, display_queue=display_queue, cooldowns=None)
