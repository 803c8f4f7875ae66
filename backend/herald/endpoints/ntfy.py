"""
ntfy endpoint.

    ntfy://topic                         public ntfy.sh
    ntfy://[user:pass@]host[:port]/topic self-hosted over HTTP
    ntfys://[user:pass@]host[:port]/topic self-hosted over HTTPS
"""
import aiohttp
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.formatting import parse_int_option
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL
from herald.models.enums import BodyFormat, NotifyType

NTFY_PUBLIC_SERVER = "https://ntfy.sh"

# ntfy renders these tag names as emoji in front of the title.
# HTTP headers are latin-1, so the emoji cannot go into the Title header itself.
NTFY_TYPE_TAGS = {
    NotifyType.INFO: "information_source",
    NotifyType.SUCCESS: "white_check_mark",
    NotifyType.WARNING: "warning",
    NotifyType.ERROR: "x",
}


class NtfyEndpoint(HTTPEndpoint):
    """Send notifications via ntfy."""

    SERVICE_ID = "ntfy"
    DEFAULT_PORT = 80
    CATEGORY = ServiceCategory.WEBHOOK

    def configure(self, url: ServiceURL):
        self.require(url.host, "ntfy URL requires a topic or host")
        if url.path:
            scheme = "https" if url.scheme == "ntfys" else "http"
            port = f":{url.port}" if url.port else ""
            self.server_url = f"{scheme}://{url.host}{port}"
            self.topic = url.path[0]
        else:
            self.server_url = NTFY_PUBLIC_SERVER
            self.topic = url.host
        self.auth = aiohttp.BasicAuth(url.user, url.password or "") if url.user else None
        self.priority = parse_int_option(url.options.get("priority"), "priority", 1, 5, 3)

    async def send(self, notification: Notification, ctx: DeliveryContext):
        tags = [NTFY_TYPE_TAGS[NotifyType(notification.notify_type)]]
        tags.extend(sorted(notification.tags))
        headers = {
            "Priority": str(self.priority),
            "Tags": ",".join(tags),
        }
        if notification.title:
            headers["Title"] = notification.title
        if notification.body_format == BodyFormat.MARKDOWN:
            headers["Markdown"] = "yes"

        await self.request(
            method="POST",
            url=f"{self.server_url.rstrip('/')}/{self.topic}",
            ctx=ctx,
            data=self.prepare_body(notification).encode("utf-8"),
            headers=headers,
            auth=self.auth,
        )
