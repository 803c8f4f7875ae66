import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from prometheus_client import CollectorRegistry

from herald.endpoints import HTTPClientPool, build_default_registry
from herald.endpoints.base import DeliveryContext, Notification
from herald.models.enums import NotifyType
from herald.services.metrics_recorder import MetricsRecorder
from herald.utils.errors import DeliveryCancelled, PermanentDeliveryError, TransientDeliveryError


@pytest.fixture
async def hook_server():
    received = []

    async def handler(request):
        status = int(request.match_info["status"])
        if status == 299:
            await asyncio.sleep(1)
            status = 200
        received.append({
            "method": request.method,
            "headers": dict(request.headers),
            "json": await request.json() if request.content_type == "application/json" else None,
        })
        return web.Response(status=status, text=f"status {status}")

    app = web.Application()
    app.router.add_route("*", "/{status}", handler)
    server = TestServer(app)
    await server.start_server()
    yield server, received
    await server.close()


@pytest.fixture
async def pool():
    pool = HTTPClientPool()
    yield pool
    await pool.close()


def webhook_url(server, status, query=""):
    return f"webhook://{server.host}:{server.port}/{status}{query}"


async def test_webhook_success_posts_json(hook_server, pool):
    server, received = hook_server
    registry = build_default_registry(pool)
    endpoint = registry.resolve(webhook_url(server, 200, "?+X-Api-Key=abc"))

    notification = Notification(title="Disk", body="90% used", notify_type=NotifyType.WARNING, tags=frozenset({"ops"}))
    await endpoint.send(notification, DeliveryContext.with_timeout(5))

    assert len(received) == 1
    assert received[0]["method"] == "POST"
    assert received[0]["headers"]["X-Api-Key"] == "abc"
    payload = received[0]["json"]
    assert payload["title"] == "Disk"
    assert payload["message"] == "90% used"
    assert payload["type"] == "warning"
    assert payload["tags"] == ["ops"]


@pytest.mark.parametrize("status,error", [
    (500, TransientDeliveryError),
    (503, TransientDeliveryError),
    (429, TransientDeliveryError),
    (404, PermanentDeliveryError),
    (400, PermanentDeliveryError),
])
async def test_webhook_status_mapping(hook_server, pool, status, error):
    server, _ = hook_server
    endpoint = build_default_registry(pool).resolve(webhook_url(server, status))

    with pytest.raises(error) as exc_info:
        await endpoint.send(Notification(title="t", body="b"), DeliveryContext.with_timeout(5))
    assert exc_info.value.details["status_code"] == status
    if error is PermanentDeliveryError:
        assert not isinstance(exc_info.value, TransientDeliveryError)


async def test_request_bounded_by_deadline(hook_server, pool):
    server, _ = hook_server
    endpoint = build_default_registry(pool).resolve(webhook_url(server, 299))

    with pytest.raises(TransientDeliveryError):
        await endpoint.send(Notification(title="t", body="b"), DeliveryContext.with_timeout(0.2))


async def test_cancelled_context_sends_nothing(hook_server, pool):
    server, received = hook_server
    endpoint = build_default_registry(pool).resolve(webhook_url(server, 200))
    ctx = DeliveryContext.with_timeout(5)
    ctx.cancel()

    with pytest.raises(DeliveryCancelled):
        await endpoint.send(Notification(title="t", body="b"), ctx)
    assert received == []


async def test_http_requests_are_counted(hook_server, pool):
    server, _ = hook_server
    metrics = MetricsRecorder(registry=CollectorRegistry())
    registry = build_default_registry(pool)
    ctx = DeliveryContext.with_timeout(5, metrics=metrics)

    await registry.resolve(webhook_url(server, 200)).send(Notification(title="t", body="b"), ctx)
    with pytest.raises(PermanentDeliveryError):
        await registry.resolve(webhook_url(server, 404)).send(Notification(title="t", body="b"), ctx)

    labels = {"method": "POST", "endpoint": "webhook"}
    assert metrics.registry.get_sample_value("herald_http_requests_total", {**labels, "status_code": "200"}) == 1
    assert metrics.registry.get_sample_value("herald_http_requests_total", {**labels, "status_code": "404"}) == 1
    assert metrics.registry.get_sample_value("herald_http_request_duration_seconds_count", labels) == 2


async def test_unreachable_host_is_transient(pool):
    endpoint = build_default_registry(pool).resolve("webhook://127.0.0.1:1/hook")
    with pytest.raises(TransientDeliveryError):
        await endpoint.send(Notification(title="t", body="b"), DeliveryContext.with_timeout(5))


async def test_discord_truncates_whole_message(pool):
    endpoint = build_default_registry(pool).resolve("discord://1234/token")
    content = endpoint.build_content(Notification(title="Title", body="x" * 5000))
    assert len(content) == 2000
    assert content.endswith(" [...]")
    assert "**Title**" in content


def test_request_timeout_keeps_pool_connect_timeout():
    pool = HTTPClientPool()
    endpoint = build_default_registry(pool).resolve("webhook://example.com/hook")
    webhook_config = pool.category_config(endpoint.CATEGORY)

    timeout = endpoint._request_timeout(DeliveryContext.with_timeout(5))
    assert timeout.connect == webhook_config.connect_timeout
    assert 0 < timeout.total <= 5

    timeout = endpoint._request_timeout(DeliveryContext.with_timeout(600))
    assert timeout.total == webhook_config.timeout
