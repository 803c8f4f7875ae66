"""
Gotify endpoint.

    gotify://host[:port][/path]/app_token[?priority=0..10]
    gotifys://...   same over HTTPS
"""
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.formatting import emoji_for, parse_int_option
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL


class GotifyEndpoint(HTTPEndpoint):
    """Send notifications to a self-hosted Gotify server."""

    SERVICE_ID = "gotify"
    DEFAULT_PORT = 80
    CATEGORY = ServiceCategory.WEBHOOK

    def configure(self, url: ServiceURL):
        self.require(url.host, "Gotify URL requires a host")
        self.require(url.path, "Gotify URL requires an application token")
        self.secure = url.scheme == "gotifys"
        self.app_token = url.path[-1]
        self.priority = parse_int_option(url.options.get("priority"), "priority", 0, 10, 5)

        scheme = "https" if self.secure else "http"
        port = f":{url.port}" if url.port else ""
        prefix = "".join(f"/{segment}" for segment in url.path[:-1])
        self.server_url = f"{scheme}://{url.host}{port}{prefix}"

    def default_port(self) -> int:
        return 443 if getattr(self, "secure", False) else self.DEFAULT_PORT

    async def send(self, notification: Notification, ctx: DeliveryContext):
        emoji = emoji_for(notification.notify_type)
        await self.request(
            method="POST",
            url=f"{self.server_url}/message",
            ctx=ctx,
            json={
                "title": f"{emoji} {notification.title}".strip(),
                "message": self.prepare_body(notification),
                "priority": self.priority,
            },
            headers={"X-Gotify-Key": self.app_token}
        )
