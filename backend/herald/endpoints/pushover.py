"""
Pushover endpoint.

    pover://user_key@api_token[?priority=-2..2]
"""
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.formatting import emoji_for, parse_int_option
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL
from herald.models.enums import BodyFormat

PUSHOVER_API = "https://api.pushover.net/1/messages.json"


class PushoverEndpoint(HTTPEndpoint):
    """Send notifications via Pushover."""

    SERVICE_ID = "pushover"
    MAX_BODY_LENGTH = 1024
    CATEGORY = ServiceCategory.CLOUD

    def configure(self, url: ServiceURL):
        self.require(url.user, "Pushover URL requires a user key (user_key@api_token)")
        self.require(url.host, "Pushover URL requires an API token")
        self.user_key = url.user
        self.api_token = url.host
        self.priority = parse_int_option(url.options.get("priority"), "priority", -2, 2, 0)

    async def send(self, notification: Notification, ctx: DeliveryContext):
        emoji = emoji_for(notification.notify_type)
        payload = {
            "token": self.api_token,
            "user": self.user_key,
            "title": f"{emoji} {notification.title}".strip(),
            "message": self.prepare_body(notification),
            "priority": self.priority,
        }
        if notification.body_format == BodyFormat.HTML:
            payload["html"] = 1

        await self.request(
            method="POST",
            url=PUSHOVER_API,
            ctx=ctx,
            data=payload
        )
