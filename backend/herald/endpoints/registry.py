"""
Endpoint registry: URL scheme -> endpoint factory.

The table is assembled once at startup with EndpointRegistryBuilder and is
immutable afterwards, so lookups need no locking:

    registry = (
        EndpointRegistryBuilder()
        .register(["discord"], lambda: DiscordEndpoint(pool))
        .build()
    )
    endpoint = registry.resolve("discord://1234/abcd")
"""
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Tuple, Union

from herald.endpoints.base import DeliveryEndpoint
from herald.endpoints.url import extract_scheme
from herald.utils.errors import InvalidEndpointURL, UnknownScheme

EndpointFactory = Callable[[], DeliveryEndpoint]


class EndpointRegistry:
    """Read-only scheme table."""

    def __init__(self, factories: Mapping[str, EndpointFactory]):
        self._factories = MappingProxyType(dict(factories))

    def __contains__(self, scheme: str) -> bool:
        return scheme in self._factories

    def __len__(self) -> int:
        return len(self._factories)

    def supported_schemes(self) -> List[str]:
        return sorted(self._factories)

    def resolve(self, url: str) -> DeliveryEndpoint:
        """
        Build a configured endpoint for a service URL.

        Raises:
            InvalidEndpointURL: URL has no scheme or the endpoint rejects it
            UnknownScheme: no factory registered for the scheme
        """
        scheme = extract_scheme(url)
        if not scheme:
            raise InvalidEndpointURL(f"Invalid service URL (missing scheme): {url!r}")

        factory = self._factories.get(scheme)
        if factory is None:
            raise UnknownScheme(f"Unknown service scheme: {scheme}", {"scheme": scheme})

        endpoint = factory()
        endpoint.parse(url)
        return endpoint

    def validate(self, url: str):
        """Raise if the URL would not resolve; the endpoint is discarded."""
        self.resolve(url)

    def resolve_all(self, urls: Iterable[str]) -> Tuple[List[DeliveryEndpoint], Dict[str, Exception]]:
        """
        Resolve many URLs, collecting failures instead of stopping at the first.

        Returns:
            (endpoints in input order, {url: error} for URLs that failed)
        """
        endpoints: List[DeliveryEndpoint] = []
        errors: Dict[str, Exception] = {}
        for url in urls:
            try:
                endpoints.append(self.resolve(url))
            except (InvalidEndpointURL, UnknownScheme) as e:
                errors[url] = e
        return endpoints, errors


class EndpointRegistryBuilder:
    """Collects scheme registrations and produces an immutable registry."""

    def __init__(self):
        self._factories: Dict[str, EndpointFactory] = {}

    def register(self, schemes: Union[str, Iterable[str]], factory: EndpointFactory) -> "EndpointRegistryBuilder":
        """Register a factory under one or more (case-sensitive) schemes."""
        if isinstance(schemes, str):
            schemes = [schemes]
        for scheme in schemes:
            if not scheme or "://" in scheme:
                raise ValueError(f"Invalid scheme: {scheme!r}")
            self._factories[scheme] = factory
        return self

    def build(self) -> EndpointRegistry:
        return EndpointRegistry(self._factories)
