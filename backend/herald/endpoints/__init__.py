"""
Delivery endpoints and the scheme registry.
"""
from herald.endpoints.base import DeliveryEndpoint, HTTPEndpoint, Notification, DeliveryContext
from herald.endpoints.http_pool import HTTPClientPool, ServiceCategory
from herald.endpoints.registry import EndpointRegistry, EndpointRegistryBuilder
from herald.endpoints.discord import DiscordEndpoint
from herald.endpoints.gotify import GotifyEndpoint
from herald.endpoints.ntfy import NtfyEndpoint
from herald.endpoints.pushover import PushoverEndpoint
from herald.endpoints.telegram import TelegramEndpoint
from herald.endpoints.webhook import WebhookEndpoint

# Endpoint class -> URL schemes it answers to
DEFAULT_ENDPOINTS = (
    (WebhookEndpoint, ("webhook", "webhooks", "json")),
    (DiscordEndpoint, ("discord",)),
    (TelegramEndpoint, ("tgram", "telegram")),
    (PushoverEndpoint, ("pover", "pushover")),
    (GotifyEndpoint, ("gotify", "gotifys")),
    (NtfyEndpoint, ("ntfy", "ntfys")),
)


def build_default_registry(pool: HTTPClientPool) -> EndpointRegistry:
    """Registry with every built-in endpoint sharing one HTTP client pool."""
    builder = EndpointRegistryBuilder()
    for endpoint_cls, schemes in DEFAULT_ENDPOINTS:
        builder.register(schemes, lambda cls=endpoint_cls: cls(pool))
    return builder.build()


__all__ = [
    "DeliveryEndpoint",
    "HTTPEndpoint",
    "Notification",
    "DeliveryContext",
    "HTTPClientPool",
    "ServiceCategory",
    "EndpointRegistry",
    "EndpointRegistryBuilder",
    "build_default_registry",
]
