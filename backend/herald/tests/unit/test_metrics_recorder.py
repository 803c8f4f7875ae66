from datetime import datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from herald.services.metrics_recorder import (
    MetricsRecorder,
    last_24_hours,
    last_30_days,
    last_7_days,
    percentile,
    this_month,
)


async def record(metrics, service_id="discord", success=True, duration_ms=100, error="", notification_type="info"):
    return await metrics.record_delivery(
        service_id=service_id,
        service_url=f"{service_id}://target",
        notification_type=notification_type,
        success=success,
        duration_ms=duration_ms,
        error_message=error,
    )


def test_percentile_nearest_rank():
    values = [float(v) for v in range(1, 101)]
    assert percentile(values, 50) == 50
    assert percentile(values, 95) == 95
    assert percentile(values, 99) == 99
    assert percentile([7.0], 99) == 7
    assert percentile([], 50) == 0.0


async def test_report_aggregates_window(metrics, clock):
    await record(metrics, "discord", True, 100)
    await record(metrics, "discord", False, 300, error="HTTP 500")
    clock.advance(minutes=30)
    await record(metrics, "telegram", True, 200, notification_type="warning")
    clock.advance(hours=1)
    await record(metrics, "discord", False, 400, error="HTTP 500")
    await record(metrics, "telegram", False, 50, error="timeout")

    # Outside the window
    clock.advance(days=3)
    await record(metrics, "discord", True, 10)

    start = datetime(2024, 1, 1, 10, 0)
    report = await metrics.report(start, start + timedelta(hours=2))

    assert report.total == 5
    assert report.successful == 2
    assert report.failed == 3
    assert report.success_rate == 40.0
    assert report.average_duration_ms == 210.0
    assert report.latency_ms.p50 == 200
    assert report.latency_ms.p99 == 400

    discord = report.services["discord"]
    assert (discord.total, discord.successful, discord.failed) == (3, 1, 2)
    assert discord.success_rate == 33.33
    assert discord.average_duration_ms == pytest.approx(266.67, abs=0.01)
    assert report.services["telegram"].total == 2
    assert report.notification_types == {"info": 4, "warning": 1}

    assert [bucket.hour for bucket in report.hourly] == ["2024-01-01 10:00", "2024-01-01 11:00"]
    assert [bucket.total for bucket in report.hourly] == [3, 2]

    assert report.top_errors[0].error_message == "HTTP 500"
    assert report.top_errors[0].count == 2
    assert report.top_errors[0].last_occurred == datetime(2024, 1, 1, 11, 30)
    assert report.top_errors[1].error_message == "timeout"


async def test_empty_report(metrics):
    start = datetime(2024, 1, 1)
    report = await metrics.report(start, start + timedelta(days=1))
    assert report.total == 0
    assert report.success_rate == 0.0
    assert report.services == {}
    assert report.latency_ms.p95 == 0.0


async def test_prometheus_series(metrics):
    await record(metrics, "ntfy", True, 250)
    await record(metrics, "ntfy", False, 1500, error="HTTP 503")
    metrics.record_http_request("POST", "ntfy", None, 0.1)
    metrics.update_gauge("queue_pending", 4)

    assert metrics.counter_value("ntfy", "info", "success") == 1
    assert metrics.counter_value("ntfy", "info", "failed") == 1
    assert metrics.counter_value("ntfy", "error", "failed") == 0
    assert metrics.gauge_value("queue_pending") == 4
    assert metrics.registry.get_sample_value(
        "herald_notification_duration_seconds_count", {"service_id": "ntfy", "type": "info"}
    ) == 2

    exported = metrics.export().decode()
    assert "herald_notifications_total{" in exported
    assert "herald_http_requests_total{" in exported
    assert metrics.registry.get_sample_value(
        "herald_http_requests_total", {"method": "POST", "endpoint": "ntfy", "status_code": "error"}
    ) == 1
    assert "herald_queue_pending 4.0" in exported


async def test_recorders_do_not_share_series():
    first = MetricsRecorder(registry=CollectorRegistry())
    second = MetricsRecorder(registry=CollectorRegistry())
    assert await record(first) is None  # no database attached
    assert first.counter_value("discord", "info", "success") == 1
    assert second.counter_value("discord", "info", "success") == 0


async def test_purge_old_samples(metrics, clock):
    await record(metrics)
    clock.advance(days=40)
    await record(metrics)

    assert await metrics.purge(timedelta(days=30)) == 1
    report = await metrics.report(datetime(2024, 1, 1), clock() + timedelta(seconds=1))
    assert report.total == 1


def test_report_windows():
    now = datetime(2024, 3, 15, 12, 30)
    assert last_24_hours(now) == (datetime(2024, 3, 14, 12, 30), now)
    assert last_7_days(now) == (datetime(2024, 3, 8, 12, 30), now)
    assert last_30_days(now) == (datetime(2024, 2, 14, 12, 30), now)
    assert this_month(now) == (datetime(2024, 3, 1), now)
