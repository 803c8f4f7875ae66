"""
Delivery endpoint interface.

A DeliveryEndpoint is built from a service URL by the registry, used for
one dispatch and then discarded. The core never branches on the concrete
endpoint class; it only uses the methods defined here.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, TYPE_CHECKING
import aiohttp
from loguru import logger

from herald.endpoints.http_pool import HTTPClientPool, ServiceCategory
from herald.endpoints.url import ServiceURL, parse_service_url
from herald.models.enums import NotifyType, BodyFormat
from herald.utils.errors import (
    DeliveryCancelled,
    InvalidEndpointURL,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from herald.utils.formatting import truncate_body

if TYPE_CHECKING:
    from herald.services.metrics_recorder import MetricsRecorder


@dataclass(frozen=True)
class Notification:
    """Immutable notification handed to every endpoint of a dispatch."""
    title: str
    body: str
    notify_type: NotifyType = NotifyType.INFO
    tags: FrozenSet[str] = field(default_factory=frozenset)
    body_format: Optional[BodyFormat] = None
    attachment: Optional[Any] = None  # opaque handle, passed by reference
    url: Optional[str] = None

    def with_body(self, body: str) -> "Notification":
        return replace(self, body=body)


class DeliveryContext:
    """
    Cancellation token shared by all deliveries of one dispatch.

    Carries the dispatch deadline (monotonic), an explicit cancel flag and
    an optional metrics recorder for per-request HTTP metrics.
    """

    def __init__(self, deadline: Optional[float] = None, metrics: Optional["MetricsRecorder"] = None):
        self.deadline = deadline
        self.metrics = metrics
        self._cancelled = False

    @classmethod
    def with_timeout(cls, timeout: Optional[float], metrics: Optional["MetricsRecorder"] = None) -> "DeliveryContext":
        deadline = time.monotonic() + timeout if timeout is not None else None
        return cls(deadline=deadline, metrics=metrics)

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (None = no deadline)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled or self.expired

    def cancel(self):
        self._cancelled = True

    def raise_if_cancelled(self):
        if self.cancelled:
            raise DeliveryCancelled()


class DeliveryEndpoint(ABC):
    """Abstract base class for delivery endpoints."""

    #: Short stable identifier, e.g. "discord"
    SERVICE_ID: str = ""
    DEFAULT_PORT: int = 443
    MAX_BODY_LENGTH: int = 0  # 0 = unlimited
    SUPPORTS_ATTACHMENTS: bool = False

    def __init__(self):
        self.service_url: Optional[str] = None

    def service_id(self) -> str:
        return self.SERVICE_ID

    def default_port(self) -> int:
        return self.DEFAULT_PORT

    def max_body_length(self) -> int:
        return self.MAX_BODY_LENGTH

    def supports_attachments(self) -> bool:
        return self.SUPPORTS_ATTACHMENTS

    def parse(self, url: str):
        """
        Configure this endpoint from a service URL.

        Raises:
            InvalidEndpointURL: bad structure or missing credentials
        """
        parsed = parse_service_url(url)
        self.configure(parsed)
        self.service_url = url

    def validate(self, url: str):
        """Pre-flight parse of a URL without touching this instance."""
        self._fresh().parse(url)

    def _fresh(self) -> "DeliveryEndpoint":
        """A new, unconfigured endpoint sharing this one's collaborators."""
        clone = object.__new__(type(self))
        clone.__dict__.update(self.__dict__)
        return clone

    @abstractmethod
    def configure(self, url: ServiceURL):
        """Read endpoint settings from a parsed URL; raise InvalidEndpointURL on errors."""

    @abstractmethod
    async def send(self, notification: Notification, ctx: DeliveryContext):
        """
        Deliver a notification.

        Raises:
            TransientDeliveryError: worth retrying (5xx, 429, timeouts)
            PermanentDeliveryError: rejected by the service (4xx)
        """

    def prepare_body(self, notification: Notification) -> str:
        """Body truncated to this endpoint's limit."""
        return truncate_body(notification.body, self.max_body_length())

    @staticmethod
    def require(condition: Any, message: str):
        if not condition:
            raise InvalidEndpointURL(message)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} service_id={self.service_id()!r}>"


class HTTPEndpoint(DeliveryEndpoint):
    """
    Endpoint that delivers with one HTTP request per target.

    Maps HTTP results to delivery errors: 2xx success, 429/5xx transient,
    other statuses permanent, network errors and timeouts transient.
    """

    CATEGORY: ServiceCategory = ServiceCategory.DEFAULT

    def __init__(self, pool: HTTPClientPool):
        super().__init__()
        self.pool = pool

    def _request_timeout(self, ctx: DeliveryContext) -> aiohttp.ClientTimeout:
        """Pool timeouts for the category, with total capped by the dispatch deadline."""
        cfg = self.pool.category_config(self.CATEGORY)
        total = cfg.timeout
        remaining = ctx.remaining()
        if remaining is not None:
            total = min(total, remaining)
        return aiohttp.ClientTimeout(total=total, connect=cfg.connect_timeout)

    async def request(
        self,
        method: str,
        url: str,
        ctx: DeliveryContext,
        json: Optional[Dict] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
        expected_statuses: Optional[List[int]] = None
    ) -> int:
        """
        Make a single HTTP request bounded by the dispatch deadline.

        Returns:
            The HTTP status code on success
        """
        ctx.raise_if_cancelled()
        session = await self.pool.session(self.CATEGORY)
        start = time.monotonic()
        status_code: Optional[int] = None
        try:
            async with session.request(
                method,
                url,
                json=json,
                data=data,
                headers=headers,
                auth=auth,
                timeout=self._request_timeout(ctx)
            ) as response:
                status_code = response.status
                if expected_statuses is not None:
                    ok = status_code in expected_statuses
                else:
                    ok = 200 <= status_code < 300
                if ok:
                    logger.debug(f"{self.service_id()} delivery accepted (HTTP {status_code})")
                    return status_code

                response_text = await response.text()
                message = f"{self.service_id()}: HTTP {status_code}: {response_text[:200]}"
                if status_code == 429 or status_code >= 500:
                    raise TransientDeliveryError(message, {"status_code": status_code})
                raise PermanentDeliveryError(message, {"status_code": status_code})
        except asyncio.TimeoutError as e:
            if ctx.cancelled:
                raise DeliveryCancelled() from e
            raise TransientDeliveryError(f"{self.service_id()}: request timed out") from e
        except aiohttp.ClientError as e:
            raise TransientDeliveryError(f"{self.service_id()}: {type(e).__name__}: {e}") from e
        finally:
            if ctx.metrics is not None:
                ctx.metrics.record_http_request(
                    method=method,
                    endpoint=self.service_id(),
                    status_code=status_code,
                    duration=time.monotonic() - start,
                )
