"""
Generic JSON/form webhook endpoint.

    webhook://[user:pass@]host[:port][/path][?method=PUT&format=form&+X-Header=value]
    webhooks://...   same over HTTPS
    json://...       alias of webhook://
"""
import aiohttp
from herald.endpoints.base import HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.http_pool import ServiceCategory
from herald.endpoints.url import ServiceURL
from herald.utils.clock import utcnow, isoformat_utc

ALLOWED_METHODS = ("POST", "PUT", "PATCH")
ALLOWED_FORMATS = ("json", "form")


class WebhookEndpoint(HTTPEndpoint):
    """Send notifications to a custom webhook."""

    SERVICE_ID = "webhook"
    DEFAULT_PORT = 80
    CATEGORY = ServiceCategory.WEBHOOK

    def configure(self, url: ServiceURL):
        self.require(url.host, "Webhook URL requires a host")
        self.secure = url.scheme.endswith("s") and url.scheme != "json"
        options = url.options

        self.method = options.get("method", "POST").upper()
        self.require(self.method in ALLOWED_METHODS, f"Unsupported webhook method: {self.method}")
        self.format = options.get("format", "json").lower()
        self.require(self.format in ALLOWED_FORMATS, f"Unsupported webhook format: {self.format}")

        self.headers = url.headers
        self.auth = aiohttp.BasicAuth(url.user, url.password or "") if url.user else None

        scheme = "https" if self.secure else "http"
        port = f":{url.port}" if url.port else ""
        path = "/" + "/".join(url.path) if url.path else "/"
        self.target = f"{scheme}://{url.host}{port}{path}"

    def default_port(self) -> int:
        return 443 if getattr(self, "secure", False) else self.DEFAULT_PORT

    async def send(self, notification: Notification, ctx: DeliveryContext):
        payload = {
            "title": notification.title,
            "message": self.prepare_body(notification),
            "type": notification.notify_type.value,
            "tags": sorted(notification.tags),
            "timestamp": isoformat_utc(utcnow()),
        }
        if notification.body_format is not None:
            payload["format"] = notification.body_format.value

        await self.request(
            method=self.method,
            url=self.target,
            ctx=ctx,
            json=payload if self.format == "json" else None,
            data=payload if self.format != "json" else None,
            headers=self.headers or None,
            auth=self.auth,
        )
