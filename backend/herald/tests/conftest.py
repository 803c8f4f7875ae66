"""
Shared fixtures: a throwaway SQLite database per test, a controllable
clock and an in-memory "fake://" endpoint.
"""
import asyncio
from datetime import datetime, timedelta
from typing import List, Tuple

import pytest
from prometheus_client import CollectorRegistry

from herald.config import DispatchConfig, QueueConfig, TemplatesConfig
from herald.database import create_engine, create_session_factory, init_db
from herald.endpoints.base import DeliveryContext, DeliveryEndpoint, Notification
from herald.endpoints.registry import EndpointRegistryBuilder
from herald.endpoints.url import ServiceURL
from herald.services.dispatcher import DeliveryDispatcher
from herald.services.metrics_recorder import MetricsRecorder
from herald.services.queue import NotificationQueue
from herald.services.scheduler import CronScheduler
from herald.services.template_engine import TemplateEngine
from herald.utils.errors import PermanentDeliveryError, TransientDeliveryError

START = datetime(2024, 1, 1, 10, 0, 0)


class FakeClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class FakeEndpoint(DeliveryEndpoint):
    """
    fake://name[?fail=transient|permanent&delay=0.5&limit=10]

    Records every notification it is asked to send.
    """

    SERVICE_ID = "fake"

    def __init__(self, sent: List[Tuple[str, Notification]]):
        super().__init__()
        self.sent = sent

    def configure(self, url: ServiceURL):
        self.require(url.host, "fake URL requires a name")
        self.name = url.host
        options = url.options
        self.fail = options.get("fail", "")
        self.delay = float(options.get("delay", "0"))
        self.limit = int(options.get("limit", "0"))

    def max_body_length(self) -> int:
        return self.limit

    async def send(self, notification: Notification, ctx: DeliveryContext):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail == "transient":
            raise TransientDeliveryError(f"{self.name} unavailable")
        if self.fail == "permanent":
            raise PermanentDeliveryError(f"{self.name} rejected")
        self.sent.append((self.name, notification))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'herald.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def sent():
    return []


@pytest.fixture
def registry(sent):
    return EndpointRegistryBuilder().register("fake", lambda: FakeEndpoint(sent)).build()


@pytest.fixture
def queue_config():
    return QueueConfig(default_retry_delay=60, poll_interval=0.01)


@pytest.fixture
def queue(session_factory, queue_config, registry, clock):
    return NotificationQueue(session_factory, queue_config, registry=registry, clock=clock)


@pytest.fixture
def metrics(session_factory, clock):
    return MetricsRecorder(session_factory, registry=CollectorRegistry(), clock=clock)


@pytest.fixture
def dispatcher(metrics):
    return DeliveryDispatcher(DispatchConfig(deadline=2, max_workers=4), metrics=metrics)


@pytest.fixture
def templates(session_factory, clock):
    return TemplateEngine(session_factory, TemplatesConfig(cache_size=4), clock=clock)


@pytest.fixture
def scheduler(session_factory, queue, registry, clock):
    return CronScheduler(session_factory, queue, registry=registry, clock=clock)
