"""
Discord webhook endpoint.

    discord://webhook_id/webhook_token[?username=Herald]
"""
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.formatting import emoji_for
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL
from herald.utils.formatting import truncate_body

DISCORD_API = "https://discord.com/api/webhooks"


class DiscordEndpoint(HTTPEndpoint):
    """Send notifications to a Discord channel webhook."""

    SERVICE_ID = "discord"
    MAX_BODY_LENGTH = 2000
    CATEGORY = ServiceCategory.CLOUD

    def configure(self, url: ServiceURL):
        self.require(url.host, "Discord URL requires a webhook id")
        self.require(url.path, "Discord URL requires a webhook token")
        self.webhook_id = url.host
        self.webhook_token = url.path[0]
        self.username = url.options.get("username", "Herald")

    def build_content(self, notification: Notification) -> str:
        emoji = emoji_for(notification.notify_type)
        if notification.title:
            content = f"{emoji} **{notification.title}**\n{notification.body}"
        else:
            content = f"{emoji} {notification.body}"
        # Limit applies to the whole message, title included
        return truncate_body(content, self.max_body_length())

    async def send(self, notification: Notification, ctx: DeliveryContext):
        await self.request(
            method="POST",
            url=f"{DISCORD_API}/{self.webhook_id}/{self.webhook_token}",
            ctx=ctx,
            json={"content": self.build_content(notification), "username": self.username},
            expected_statuses=[200, 204]  # Discord returns 204 on success
        )
