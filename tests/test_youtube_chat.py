"""Tests for YouTube live chat polling, message mapping and the chat worker."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from core.lifecycle import PlatformHandlers
from services.youtube.api.chat import YouTubeChatClient, YouTubeChatError
from services.youtube.workers.chat_worker import YouTubeChatWorker
from shared.runtime.quotas import QuotaPolicy, QuotaTracker


def chat_item(msg_id, text="hello", *, message_type="textMessageEvent", **snippet_extra):
    snippet = {
        "type": message_type,
        "liveChatId": "chat-1",
        "publishedAt": "2024-01-01T00:00:00Z",
        "displayMessage": text,
    }
    snippet.update(snippet_extra)
    return {
        "id": msg_id,
        "snippet": snippet,
        "authorDetails": {
            "displayName": "Viewer",
            "channelId": "UCviewer",
            "isChatModerator": True,
            "isChatSponsor": False,
        },
    }


def page(items, *, token=None, offline=False, interval_ms=0):
    response = MagicMock()
    body = {"items": items, "pollingIntervalMillis": interval_ms}
    if token:
        body["nextPageToken"] = token
    if offline:
        body["offlineAt"] = "2024-01-01T01:00:00Z"
    response.json.return_value = body
    return response


def status_error(code):
    response = MagicMock()
    request = httpx.Request("GET", YouTubeChatClient.BASE_URL)
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(code, request=request)
    )
    return response


@pytest.fixture
def http():
    """Patched httpx.AsyncClient; configure `http.get.side_effect` per test."""
    client = MagicMock()
    client.get = AsyncMock()
    with patch("services.youtube.api.chat.httpx.AsyncClient") as factory:
        factory.return_value.__aenter__.return_value = client
        yield client


def make_client(**kwargs):
    kwargs.setdefault("poll_interval", 0)
    return YouTubeChatClient(api_key="key", live_chat_id="chat-1", video_id="vid1", **kwargs)


async def collect(client):
    return [message async for message in client.iter_messages()]


class TestMessageMapping:
    def test_text_message(self):
        message = make_client()._normalize_message(chat_item("m1", "hi there"))

        payload = message.to_platform_event().to_payload()

        assert payload["type"] == "platform:chat"
        assert payload["username"] == "Viewer"
        assert payload["userId"] == "UCviewer"
        assert payload["message"] == "hi there"
        assert payload["isModerator"] is True
        assert payload["badges"] == ["moderator"]
        assert payload["videoId"] == "vid1"
        assert payload["timestamp"] == "2024-01-01T00:00:00Z"

    def test_super_chat_amount_from_micros(self):
        item = chat_item(
            "m2",
            "",
            message_type="superChatEvent",
            superChatDetails={"amountMicros": "5000000", "currency": "EUR", "userComment": "gg"},
        )

        payload = make_client()._normalize_message(item).to_platform_event().to_payload()

        assert payload["type"] == "platform:gift"
        assert payload["giftType"] == "Super Chat"
        assert payload["amount"] == 5.0
        assert payload["currency"] == "EUR"
        assert payload["message"] == "gg"

    def test_membership_milestone(self):
        item = chat_item(
            "m3",
            "",
            message_type="memberMilestoneChatEvent",
            memberMilestoneChatDetails={"memberMonth": 3, "memberLevelName": "Gold", "userComment": "3 months!"},
        )

        payload = make_client()._normalize_message(item).to_platform_event().to_payload()

        assert payload["type"] == "platform:paypiggy"
        assert payload["months"] == 3
        assert payload["tier"] == "Gold"

    def test_gifted_memberships(self):
        item = chat_item(
            "m4",
            "",
            message_type="membershipGiftingEvent",
            membershipGiftingDetails={"giftMembershipsCount": 5, "giftMembershipsLevelName": "Gold"},
        )

        payload = make_client()._normalize_message(item).to_platform_event().to_payload()

        assert payload["type"] == "platform:giftpaypiggy"
        assert payload["giftCount"] == 5

    def test_unhandled_type(self):
        message = make_client()._normalize_message(chat_item("m5", message_type="pollEvent"))

        assert message.to_platform_event() is None

    def test_client_requires_credentials(self):
        with pytest.raises(RuntimeError):
            YouTubeChatClient(api_key="", live_chat_id="c", video_id="v")
        with pytest.raises(RuntimeError):
            YouTubeChatClient(api_key="k", live_chat_id="", video_id="v")


@pytest.mark.asyncio
class TestPolling:
    async def test_history_skipped_and_duplicates_dropped(self, http):
        http.get.side_effect = [
            page([chat_item("old")], token="p2"),
            page([chat_item("old"), chat_item("new", "fresh")], offline=True),
        ]
        first_poll = MagicMock()

        messages = await collect(make_client(on_first_poll=first_poll))

        assert [m.message_id for m in messages] == ["new"]
        first_poll.assert_called_once()
        assert http.get.await_args.kwargs["params"]["pageToken"] == "p2"

    async def test_terminal_status_raises(self, http):
        http.get.side_effect = [status_error(403)]

        with pytest.raises(YouTubeChatError):
            await collect(make_client())

    async def test_transient_errors_tolerated_until_limit(self, http):
        http.get.side_effect = [
            status_error(500),
            page([], offline=True),
        ]

        assert await collect(make_client()) == []

        http.get.side_effect = [status_error(500), status_error(502), status_error(503)]
        with pytest.raises(YouTubeChatError):
            await collect(make_client())

    async def test_quota_exhaustion_halts_polling(self, http):
        tracker = QuotaTracker(channel="c", platform="youtube", policy=QuotaPolicy(max_units=4, buffer_units=0))

        assert await collect(make_client(quota_tracker=tracker)) == []
        http.get.assert_not_awaited()

    async def test_close_stops_polling(self, http):
        http.get.side_effect = lambda *a, **k: page([], interval_ms=10_000)
        client = make_client()

        task = asyncio.create_task(collect(client))
        await asyncio.sleep(0.02)
        await client.close()

        assert await asyncio.wait_for(task, timeout=1) == []


class FakeChat:
    def __init__(self, messages, error=None):
        self.messages = messages
        self.error = error
        self.close = AsyncMock()
        self._hold = asyncio.Event()

    async def iter_messages(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error
        await self._hold.wait()


@pytest.mark.asyncio
class TestChatWorker:
    async def test_dispatch_and_drop(self):
        parser = make_client()
        fake = FakeChat(
            [parser._normalize_message(chat_item("a", "one")), parser._normalize_message(chat_item("b", "two"))],
            error=YouTubeChatError("Live chat unavailable (HTTP 404)"),
        )
        received = []
        on_drop = AsyncMock()
        worker = YouTubeChatWorker(
            video_id="vid1",
            client=fake,
            handlers=PlatformHandlers(on_chat=received.append),
            on_drop=on_drop,
        )

        await asyncio.wait_for(worker.start(), timeout=1)

        assert [p["message"] for p in received] == ["one", "two"]
        assert on_drop.await_args.args[0] == "vid1"
        fake.close.assert_awaited()
        assert not worker.is_running

    async def test_stop_cancels_without_drop(self):
        fake = FakeChat([])
        on_drop = AsyncMock()
        worker = YouTubeChatWorker(video_id="vid1", client=fake, handlers=PlatformHandlers(), on_drop=on_drop)

        worker.start()
        await asyncio.sleep(0)
        assert worker.is_running

        await worker.stop()

        assert not worker.is_running
        on_drop.assert_not_awaited()

    async def test_requires_collaborators(self):
        with pytest.raises(RuntimeError):
            YouTubeChatWorker(video_id="v", client=None, handlers=PlatformHandlers())
        with pytest.raises(RuntimeError):
            YouTubeChatWorker(video_id="v", client=FakeChat([]), handlers=None)
