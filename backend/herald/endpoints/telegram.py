"""
Telegram bot endpoint.

    tgram://bot_token/chat_id[/chat_id...]
"""
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.formatting import emoji_for
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL
from herald.models.enums import BodyFormat
from herald.utils.errors import DeliveryError, TransientDeliveryError
from herald.utils.formatting import truncate_body

TELEGRAM_API = "https://api.telegram.org"


class TelegramEndpoint(HTTPEndpoint):
    """Send notifications through a Telegram bot to one or more chats."""

    SERVICE_ID = "telegram"
    MAX_BODY_LENGTH = 4096
    CATEGORY = ServiceCategory.CLOUD

    def configure(self, url: ServiceURL):
        # Bot tokens contain a colon ("123456:ABC..."), so the host is kept whole
        token = f"{url.host}:{url.port}" if url.port else url.host
        self.require(token and ":" in token, "Telegram URL requires a bot token (id:secret)")
        self.require(url.path, "Telegram URL requires at least one chat id")
        self.bot_token = token
        self.chat_ids = list(url.path)

    async def send(self, notification: Notification, ctx: DeliveryContext):
        emoji = emoji_for(notification.notify_type)
        if notification.body_format == BodyFormat.HTML:
            text = f"{emoji} <b>{notification.title}</b>\n{notification.body}"
            parse_mode = "HTML"
        else:
            text = f"{emoji} {notification.title}\n{notification.body}" if notification.title else f"{emoji} {notification.body}"
            parse_mode = None

        payload = {"text": truncate_body(text, self.max_body_length())}
        if parse_mode:
            payload["parse_mode"] = parse_mode

        # One request per chat; the endpoint fails if any chat fails
        failures = []
        for chat_id in self.chat_ids:
            try:
                await self.request(
                    method="POST",
                    url=f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
                    ctx=ctx,
                    json={**payload, "chat_id": chat_id},
                )
            except DeliveryError as e:
                failures.append(e)

        if not failures:
            return
        if len(failures) == 1 or not all(isinstance(f, TransientDeliveryError) for f in failures):
            raise failures[0]
        raise TransientDeliveryError(
            f"telegram: {len(failures)}/{len(self.chat_ids)} chats failed: {failures[0]}"
        )
