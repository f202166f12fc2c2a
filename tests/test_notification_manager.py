"""Tests for typed notification dispatch into the display queue."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.event_bus import NOTIFICATION_ENQUEUED, TTS_SPEECH_REQUESTED, VFX_COMMAND_REQUESTED
from services.notifications.builder import PRIORITY_LEVELS
from services.notifications.manager import NotificationManager, sanitize_tts_text
from shared.display.queue import DisplayQueue


@pytest.fixture
def build_manager(make_config, display_queue, recording_bus):
    """Factory for a manager over config section overrides."""

    def _build(*, queue=None, tts_service=None, vfx_service=None, clock=None, **sections):
        sections.setdefault("tiktok", {"enabled": True, "username": "creator"})
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return NotificationManager(
            config_manager=make_config(**sections),
            display_queue=queue or display_queue,
            event_bus=recording_bus,
            tts_service=tts_service,
            vfx_service=vfx_service,
            **kwargs,
        )

    return _build


@pytest.fixture
def manager(build_manager):
    return build_manager()


def gift(username="bob", **overrides):
    payload = {"username": username, "giftType": "Rose", "giftCount": 1, "amount": 1, "currency": "coins"}
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
class TestTypeHandling:
    async def test_follow_enqueued_with_priority_and_no_duration(self, manager, display_queue, recording_bus):
        result = await manager.handle_notification(
            "platform:follow", "tiktok", {"username": "alice", "type": "platform:follow"}
        )

        assert result["success"] is True
        assert result["priority"] == PRIORITY_LEVELS["FOLLOW"]
        assert display_queue.get_queue_length() == 1
        item = display_queue.peek()
        assert item["type"] == "platform:follow"
        assert item["priority"] == PRIORITY_LEVELS["FOLLOW"]
        assert "duration" not in item
        assert "duration" not in item["data"]
        assert item["data"]["displayMessage"] == "alice just followed!"
        assert recording_bus.of(NOTIFICATION_ENQUEUED) == [item]

    async def test_embedded_type_mismatch_rejected(self, manager, display_queue):
        result = await manager.handle_notification(
            "platform:follow", "tiktok", {"username": "alice", "type": "platform:gift"}
        )

        assert result == {"success": False, "error": "Unknown notification type"}
        assert display_queue.get_queue_length() == 0

    async def test_unknown_type_rejected(self, manager, display_queue):
        result = await manager.handle_notification("platform:hug", "tiktok", {"username": "alice"})

        assert result == {"success": False, "error": "Unknown notification type"}
        assert display_queue.get_queue_length() == 0

    async def test_paid_alias_rejected(self, manager):
        result = await manager.handle_notification("membership", "youtube", {"username": "alice"})

        assert result["success"] is False
        assert result["error"] == "Unsupported paid alias"

    async def test_invalid_platform_and_payload(self, manager):
        assert (await manager.handle_notification("platform:follow", "", {"username": "a"}))["error"] == (
            "Invalid platform type"
        )
        assert (await manager.handle_notification("platform:follow", "tiktok", None))["error"] == (
            "Invalid notification data"
        )

    async def test_missing_required_field(self, manager, display_queue):
        result = await manager.handle_notification("platform:raid", "twitch", {"username": "raider"})

        assert result["success"] is False
        assert result["error"] == "Invalid notification data"
        assert "viewerCount must be a finite number >= 0" in result["problems"]
        assert display_queue.get_queue_length() == 0

    async def test_priority_order_in_queue(self, manager, display_queue):
        await manager.handle_notification("platform:follow", "twitch", {"username": "f"})
        await manager.handle_notification("platform:raid", "twitch", {"username": "r", "viewerCount": 20})

        assert [item["type"] for item in display_queue.snapshot()] == ["platform:raid", "platform:follow"]

    async def test_priority_lookup(self, manager):
        assert manager.get_priority_for_type("platform:raid") == PRIORITY_LEVELS["RAID"]
        assert manager.get_priority_for_type("chat") == PRIORITY_LEVELS["CHAT"]
        with pytest.raises(KeyError):
            manager.get_priority_for_type("platform:unknown")


@pytest.mark.asyncio
class TestGating:
    async def test_general_flag_disables_type(self, build_manager, display_queue):
        manager = build_manager(general={"followsEnabled": False})

        result = await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        assert result == {"success": True, "skipped": "disabled"}
        assert display_queue.get_queue_length() == 0

    async def test_platform_mute(self, build_manager, display_queue):
        manager = build_manager(tiktok={"enabled": True, "notificationsEnabled": False})

        await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        assert display_queue.get_queue_length() == 0

    async def test_zero_amount_fiat_gift_filtered(self, manager, display_queue):
        result = await manager.handle_notification(
            "platform:gift", "youtube", gift(giftType="Super Chat", amount=0, currency="USD")
        )

        assert result["filtered"] is True
        assert display_queue.get_queue_length() == 0

    async def test_error_gift_skips_validation(self, manager, display_queue):
        result = await manager.handle_notification(
            "platform:gift", "tiktok", {"username": "bob", "isError": True, "giftType": "Rose", "giftCount": 1, "amount": 0, "currency": "coins"}
        )

        assert result["success"] is True

    async def test_user_suppression(self, build_manager, display_queue):
        manager = build_manager(general={"maxNotificationsPerUser": 2})

        results = [
            await manager.handle_notification("platform:follow", "tiktok", {"username": "spammy"})
            for _ in range(3)
        ]

        assert [r["success"] for r in results] == [True, True, False]
        assert results[2]["reason"] == "user_suppression"
        assert display_queue.get_queue_length() == 2

    async def test_suppression_keyed_by_user_id(self, build_manager):
        manager = build_manager(general={"maxNotificationsPerUser": 1})

        await manager.handle_notification("platform:follow", "tiktok", {"username": "a", "userId": 1})
        renamed = await manager.handle_notification("platform:follow", "tiktok", {"username": "b", "userId": 1})

        assert renamed["reason"] == "user_suppression"

    async def test_dedupe(self, build_manager, display_queue):
        manager = build_manager(spam={"dedupeEnabled": True, "dedupeWindowMs": 5000})

        await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})
        duplicate = await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        assert duplicate["reason"] == "duplicate"
        assert display_queue.get_queue_length() == 1

    async def test_queue_full(self, build_manager):
        manager = build_manager(queue=DisplayQueue(max_queue_size=1))

        await manager.handle_notification("platform:follow", "tiktok", {"username": "a"})
        result = await manager.handle_notification("platform:follow", "tiktok", {"username": "b"})

        assert result == {"success": False, "error": "Display queue error"}


@pytest.mark.asyncio
class TestSpamAggregation:
    async def test_low_value_gifts_aggregated(self, build_manager, display_queue):
        manager = build_manager(
            spam={"detectionWindow": 0.05, "maxIndividualNotifications": 2},
            general={"maxNotificationsPerUser": 50},
        )

        results = [
            await manager.handle_notification("platform:gift", "tiktok", gift(userId="u1"))
            for _ in range(4)
        ]

        assert [r["success"] for r in results] == [True, True, False, False]
        assert results[2]["reason"] == "spam_detection"
        assert display_queue.get_queue_length() == 2

        await asyncio.sleep(0.15)

        assert display_queue.get_queue_length() == 3
        aggregated = display_queue.snapshot()[-1]["data"]
        assert aggregated["isAggregated"] is True
        assert aggregated["displayMessage"].startswith("bob sent 4 gifts worth 4 coins")
        await manager.shutdown()

    async def test_youtube_gifts_never_aggregated(self, build_manager, display_queue):
        manager = build_manager(general={"maxNotificationsPerUser": 50})

        for _ in range(4):
            await manager.handle_notification(
                "platform:gift", "youtube", gift(giftType="Super Chat", amount=1, currency="USD")
            )

        assert display_queue.get_queue_length() == 4

    async def test_spam_disabled(self, build_manager):
        manager = build_manager(spam={"enabled": False})

        assert manager.spam_detector is None


@pytest.mark.asyncio
class TestSideEffects:
    async def test_tts_requested(self, build_manager, recording_bus):
        tts = MagicMock()
        tts.speak = AsyncMock()
        manager = build_manager(tts={"enabled": True}, tts_service=tts)

        await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        speech = recording_bus.of(TTS_SPEECH_REQUESTED)[0]
        assert speech["text"] == "alice just followed"
        tts.speak.assert_awaited_once()

    async def test_tts_only_for_gifts(self, build_manager, recording_bus):
        manager = build_manager(tts={"enabled": True, "onlyForGifts": True})

        await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        assert recording_bus.of(TTS_SPEECH_REQUESTED) == []

    async def test_vfx_command_and_failures_isolated(self, build_manager, recording_bus, display_queue):
        vfx = MagicMock()
        vfx.execute_command = AsyncMock(side_effect=RuntimeError("obs offline"))
        manager = build_manager(commands={"follows": "!confetti"}, vfx_service=vfx)

        result = await manager.handle_notification("platform:follow", "tiktok", {"username": "alice"})

        assert result["success"] is True
        assert recording_bus.of(VFX_COMMAND_REQUESTED)[0]["command"] == "!confetti"
        vfx.execute_command.assert_awaited_once()
        assert manager.get_stats()["side_effect_errors"] == 1


@pytest.mark.asyncio
class TestLifecycle:
    async def test_requires_collaborators(self, make_config, display_queue, recording_bus):
        with pytest.raises(RuntimeError):
            NotificationManager(config_manager=None, display_queue=display_queue, event_bus=recording_bus)
        with pytest.raises(RuntimeError):
            NotificationManager(config_manager=make_config(), display_queue=None, event_bus=recording_bus)
        with pytest.raises(RuntimeError):
            NotificationManager(config_manager=make_config(), display_queue=display_queue, event_bus=None)

    async def test_start_and_shutdown(self, manager):
        manager.start()

        await manager.shutdown()


class TestSanitizeTtsText:
    def test_strips_markup_and_links(self):
        assert sanitize_tts_text("hi <b>there</b> https://spam.example now") == "hi there now"
        assert sanitize_tts_text(None) == ""
