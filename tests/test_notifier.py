"""Tests for the Discord, Telegram and webhook channels."""
import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import pytest
from pytest_httpx import HTTPXMock

from informarr.config import DiscordConfig, NotificationsConfig, TelegramConfig, WebhookConfig
from informarr.core.models import DerivedStatus, MediaRequest, MediaType, RequestStatus, TransitionEvent
from informarr.errors import DispatchError
from informarr.services.notifier import (
    GREEN,
    ORANGE,
    DiscordChannel,
    TelegramChannel,
    WebhookChannel,
    build_channels,
    render_title,
)

DISCORD_URL = "https://discord.test/api/webhooks/1/abc"
TELEGRAM_API = "https://telegram.test"
WEBHOOK_URL = "https://hooks.test/informarr"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> NotificationsConfig:
    return NotificationsConfig(max_attempts=1, backoff_initial=0.0, backoff_max=0.0)


@pytest.fixture
def series_event() -> TransitionEvent:
    request = MediaRequest(
        request_id=7,
        media_type=MediaType.SERIES,
        external_ids={"tvdb": "81189"},
        requested_by="Alice",
        created_at=T0,
        current_status=RequestStatus.APPROVED,
        title="Breaking Bad",
        overview="A chemistry teacher <turns> bad.",
        image_url="https://image.test/bb.jpg",
        discord_id="1234",
        seasons=[1, 2],
    )
    return TransitionEvent(7, DerivedStatus.MATCHED_DOWNLOADING, DerivedStatus.MATCHED_AVAILABLE, T0, request)


class TestRendering:
    """Titles shared by every channel."""

    def test_series_title_lists_seasons(self, series_event):
        assert render_title(series_event) == "Breaking Bad - Season 1, 2"

    def test_title_without_request(self):
        event = TransitionEvent(9, None, DerivedStatus.UNMATCHED_STALE, T0)
        assert render_title(event) == "Request #9"


class TestDiscordChannel:
    """Discord webhook embeds."""

    def test_payload(self, series_event, settings):
        channel = DiscordChannel(DiscordConfig(webhook_url=DISCORD_URL, username="Informarr"), settings)

        payload = channel.build_payload(series_event)

        assert payload["content"] == "<@1234>"
        assert payload["username"] == "Informarr"
        [embed] = payload["embeds"]
        assert embed["author"]["name"] == "New Content Available"
        assert embed["color"] == GREEN
        assert embed["title"] == "Breaking Bad"
        assert embed["thumbnail"] == {"url": "https://image.test/bb.jpg"}
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields == {"Requested By": "Alice", "Seasons": "1, 2", "Status": "matched-available"}

    def test_stale_payload(self, settings):
        channel = DiscordChannel(DiscordConfig(webhook_url=DISCORD_URL), settings)
        event = TransitionEvent(9, DerivedStatus.REQUESTED, DerivedStatus.UNMATCHED_STALE, T0)

        payload = channel.build_payload(event)

        assert payload["content"] == ""
        assert "username" not in payload
        embed = payload["embeds"][0]
        assert embed["color"] == ORANGE
        assert "No matching item" in embed["description"]

    @pytest.mark.asyncio
    async def test_send(self, series_event, settings, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=DISCORD_URL, method="POST", status_code=204)
        channel = DiscordChannel(DiscordConfig(webhook_url=DISCORD_URL), settings)

        await channel.send(series_event)

        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body["embeds"][0]["title"] == "Breaking Bad"
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_failure_becomes_dispatch_error(self, series_event, settings, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=DISCORD_URL, method="POST", status_code=500)
        channel = DiscordChannel(DiscordConfig(webhook_url=DISCORD_URL), settings)

        with pytest.raises(DispatchError) as exc_info:
            await channel.send(series_event)

        assert exc_info.value.dedupe_key == series_event.dedupe_key
        await channel.aclose()


class TestTelegramChannel:
    """Telegram bot API messages."""

    @pytest.mark.asyncio
    async def test_sends_photo_with_caption(self, series_event, settings, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=f"{TELEGRAM_API}/botTOKEN/sendPhoto", method="POST", json={"ok": True})
        config = TelegramConfig(bot_token="TOKEN", chat_id="-100", api_url=TELEGRAM_API)
        channel = TelegramChannel(config, settings)

        await channel.send(series_event)

        form = parse_qs(httpx_mock.get_requests()[0].content.decode())
        assert form["chat_id"] == ["-100"]
        assert form["photo"] == ["https://image.test/bb.jpg"]
        assert form["parse_mode"] == ["HTML"]
        assert "&lt;turns&gt;" in form["caption"][0]
        await channel.aclose()

    def test_text_message_without_image(self, settings):
        channel = TelegramChannel(TelegramConfig(bot_token="TOKEN", chat_id="-100"), settings)
        event = TransitionEvent(9, None, DerivedStatus.UNMATCHED_STALE, T0)

        form = channel.build_form(event)

        assert "photo" not in form
        assert form["text"].startswith("<b>Request Needs Attention</b>")


class TestWebhookChannel:
    """Generic JSON webhook."""

    @pytest.mark.asyncio
    async def test_send(self, series_event, settings, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST")
        config = WebhookConfig(url=WEBHOOK_URL, auth_header="Bearer s3cret")
        channel = WebhookChannel(config, settings)

        await channel.send(series_event)

        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer s3cret"
        body = json.loads(request.content)
        assert body["event_type"] == "media-available"
        assert body["dedupe_key"] == series_event.dedupe_key
        assert body["from_status"] == "matched-downloading"
        assert body["to_status"] == "matched-available"
        assert body["media_type"] == "series"
        assert body["external_ids"] == {"tvdb": "81189"}
        await channel.aclose()


class TestBuildChannels:
    """Only configured channels are built."""

    @pytest.mark.asyncio
    async def test_build_channels(self):
        settings = NotificationsConfig(
            discord=DiscordConfig(webhook_url=DISCORD_URL),
            webhook=WebhookConfig(url=WEBHOOK_URL),
        )
        channels = build_channels(settings)
        assert [c.name for c in channels] == ["discord", "webhook"]
        for channel in channels:
            await channel.aclose()

    def test_no_channels(self):
        assert build_channels(NotificationsConfig()) == []
