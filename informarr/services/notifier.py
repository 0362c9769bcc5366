"""Canaux de notification: Discord, Telegram, webhook générique."""
import html
from typing import List, Dict, Any, Optional

import httpx
import structlog

from informarr.config import DiscordConfig, NotificationsConfig, TelegramConfig, WebhookConfig
from informarr.core.models import DerivedStatus, MediaType, TransitionEvent
from informarr.errors import DispatchError, FetchError
from informarr.utils.http_client import RobustHTTPClient

logger = structlog.get_logger(__name__)

# Discord embed colours
GREEN = 3066993
BLUE = 3447003
PURPLE = 10181046
ORANGE = 15105570

HEADLINES = {
    DerivedStatus.MATCHED_AVAILABLE: ("New Content Available", GREEN),
    DerivedStatus.MATCHED_DOWNLOADING: ("Download Started", PURPLE),
    DerivedStatus.REQUESTED: ("New Request", BLUE),
    DerivedStatus.UNMATCHED_STALE: ("Request Needs Attention", ORANGE),
}


def render_title(event: TransitionEvent) -> str:
    request = event.request
    if request is None:
        return f"Request #{event.request_id}"
    title = request.title or f"Request #{request.request_id}"
    if request.media_type == MediaType.SERIES and request.seasons:
        seasons = ", ".join(str(s) for s in request.seasons)
        title = f"{title} - Season {seasons}"
    return title


def render_message(event: TransitionEvent) -> str:
    if event.to_status == DerivedStatus.UNMATCHED_STALE:
        return "No matching item was found in the library. The request may need manual attention."
    if event.request is None:
        return ""
    return event.request.overview


class NotificationChannel:
    """Outbound channel: deliver or raise DispatchError."""

    name = "channel"

    def __init__(self, settings: NotificationsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = RobustHTTPClient(
            service_name=self.name,
            base_url="",
            headers=self._get_headers(),
            default_timeout=settings.timeout,
            max_retries=max(settings.max_attempts - 1, 0),
            backoff_initial=settings.backoff_initial,
            backoff_max=settings.backoff_max,
            transport=transport,
        )

    def _get_headers(self) -> Dict[str, str]:
        return {}

    async def send(self, event: TransitionEvent) -> None:
        try:
            await self._send(event)
        except FetchError as e:
            raise DispatchError(f"{self.name}: {e}", dedupe_key=event.dedupe_key) from e
        logger.info("notification_sent", channel=self.name, request_id=event.request_id, event_type=event.event_type)

    async def _send(self, event: TransitionEvent) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        await self.client.aclose()


class DiscordChannel(NotificationChannel):
    name = "discord"

    def __init__(self, config: DiscordConfig, settings: NotificationsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        super().__init__(settings, transport)

    def build_payload(self, event: TransitionEvent) -> Dict[str, Any]:
        pre_title, color = HEADLINES[event.to_status]
        request = event.request
        fields: List[Dict[str, Any]] = []
        if request is not None:
            fields.append({"name": "Requested By", "value": request.requested_by or "Unknown", "inline": True})
            if request.media_type == MediaType.SERIES and request.seasons:
                fields.append({
                    "name": "Seasons",
                    "value": ", ".join(str(s) for s in request.seasons),
                    "inline": True,
                })
        fields.append({"name": "Status", "value": event.to_status.value, "inline": True})

        embed: Dict[str, Any] = {
            "title": request.title if request and request.title else render_title(event),
            "description": render_message(event),
            "color": color,
            "timestamp": event.timestamp.isoformat(),
            "author": {"name": pre_title},
            "fields": fields,
        }
        if request is not None and request.image_url:
            embed["thumbnail"] = {"url": request.image_url}

        payload: Dict[str, Any] = {
            "content": f"<@{request.discord_id}>" if request and request.discord_id else "",
            "embeds": [embed],
        }
        if self.config.username:
            payload["username"] = self.config.username
        if self.config.avatar_url:
            payload["avatar_url"] = self.config.avatar_url
        return payload

    async def _send(self, event: TransitionEvent) -> None:
        await self.client.post(self.config.webhook_url, json=self.build_payload(event))


class TelegramChannel(NotificationChannel):
    name = "telegram"

    def __init__(self, config: TelegramConfig, settings: NotificationsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        super().__init__(settings, transport)

    def build_form(self, event: TransitionEvent) -> Dict[str, Any]:
        pre_title, _ = HEADLINES[event.to_status]
        text = (
            f"<b>{html.escape(pre_title)}</b>\n\n"
            f"<b>{html.escape(render_title(event))}</b>\n\n"
            f"{html.escape(render_message(event))}"
        ).strip()
        form: Dict[str, Any] = {"chat_id": self.config.chat_id, "parse_mode": "HTML"}
        image_url = event.request.image_url if event.request else None
        if image_url:
            form["photo"] = image_url
            form["caption"] = text
        else:
            form["text"] = text
        return form

    async def _send(self, event: TransitionEvent) -> None:
        form = self.build_form(event)
        method = "sendPhoto" if "photo" in form else "sendMessage"
        url = f"{self.config.api_url.rstrip('/')}/bot{self.config.bot_token}/{method}"
        await self.client.post(url, data=form)


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def __init__(self, config: WebhookConfig, settings: NotificationsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        super().__init__(settings, transport)

    def _get_headers(self) -> Dict[str, str]:
        if self.config.auth_header:
            return {"Authorization": self.config.auth_header}
        return {}

    def build_payload(self, event: TransitionEvent) -> Dict[str, Any]:
        request = event.request
        return {
            "event_type": event.event_type,
            "dedupe_key": event.dedupe_key,
            "request_id": event.request_id,
            "from_status": event.from_status.value if event.from_status else None,
            "to_status": event.to_status.value,
            "timestamp": event.timestamp.isoformat(),
            "title": render_title(event),
            "message": render_message(event),
            "media_type": request.media_type.value if request else None,
            "external_ids": dict(request.external_ids) if request else {},
            "requested_by": request.requested_by if request else None,
        }

    async def _send(self, event: TransitionEvent) -> None:
        await self.client.post(self.config.url, json=self.build_payload(event))


def build_channels(settings: NotificationsConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[NotificationChannel]:
    """Instancie les canaux configurés."""
    channels: List[NotificationChannel] = []
    if settings.discord:
        channels.append(DiscordChannel(settings.discord, settings, transport))
    if settings.telegram:
        channels.append(TelegramChannel(settings.telegram, settings, transport))
    if settings.webhook:
        channels.append(WebhookChannel(settings.webhook, settings, transport))
    if not channels:
        logger.warning("no_notification_channel_configured")
    return channels
