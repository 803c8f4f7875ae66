"""
Delivery metrics.

Two layers:
- Prometheus counters, histograms and gauges kept in process memory and
  exposed through export() for scraping.
- An append-only notification_metrics table with one row per delivery.
  Reports are computed from these rows so a restart keeps history.
"""
import math
from collections import Counter as TallyCounter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy import select, delete, func, case
from sqlalchemy.ext.asyncio import async_sessionmaker

from herald.constants import METRICS_TOP_ERRORS_LIMIT
from herald.database import session_scope
from herald.models import NotificationMetric, DeliveryStatus
from herald.utils.clock import utcnow

# Latency buckets in seconds: fast webhooks up to slow cloud APIs
LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class ServiceBreakdown(BaseModel):
    service_id: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0


class HourlyBreakdown(BaseModel):
    hour: str  # "YYYY-MM-DD HH:00"
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0


class ErrorCount(BaseModel):
    error_message: str
    count: int
    last_occurred: datetime


class LatencyPercentiles(BaseModel):
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class AggregatedReport(BaseModel):
    """Delivery statistics for a time window."""
    start: datetime
    end: datetime
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    latency_ms: LatencyPercentiles = Field(default_factory=LatencyPercentiles)
    services: Dict[str, ServiceBreakdown] = Field(default_factory=dict)
    notification_types: Dict[str, int] = Field(default_factory=dict)
    hourly: List[HourlyBreakdown] = Field(default_factory=list)
    top_errors: List[ErrorCount] = Field(default_factory=list)


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return float(sorted_values[min(rank, len(sorted_values)) - 1])


def _rate(successful: int, total: int) -> float:
    return round(successful / total * 100.0, 2) if total else 0.0


class MetricsRecorder:
    """Per-service delivery counters, latencies, gauges and durable samples."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        registry: Optional[CollectorRegistry] = None,
        namespace: str = "herald",
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._clock = clock

        self.notifications_total = Counter(
            f"{namespace}_notifications_total",
            "Notifications delivered by service, type and status",
            labelnames=["service_id", "type", "status"],
            registry=self.registry,
        )
        self.notification_duration = Histogram(
            f"{namespace}_notification_duration_seconds",
            "Delivery latency by service and type",
            labelnames=["service_id", "type"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.http_requests_total = Counter(
            f"{namespace}_http_requests_total",
            "Outbound HTTP requests by method, endpoint and status code",
            labelnames=["method", "endpoint", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            f"{namespace}_http_request_duration_seconds",
            "Outbound HTTP request latency",
            labelnames=["method", "endpoint"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self._gauges: Dict[str, Gauge] = {}

    async def record_delivery(
        self,
        service_id: str,
        service_url: str,
        notification_type: str,
        success: bool,
        duration_ms: int,
        error_message: str = "",
        job_id: Optional[int] = None,
        scheduled_job_id: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Optional[NotificationMetric]:
        """
        Count one delivery and append its sample.

        Returns the stored sample, or None when no database is attached.
        """
        status = DeliveryStatus.SUCCESS.value if success else DeliveryStatus.FAILED.value
        notification_type = str(getattr(notification_type, "value", notification_type))

        self.notifications_total.labels(service_id=service_id, type=notification_type, status=status).inc()
        self.notification_duration.labels(service_id=service_id, type=notification_type).observe(duration_ms / 1000.0)

        if self._session_factory is None:
            return None

        sample = NotificationMetric(
            job_id=job_id,
            scheduled_job_id=scheduled_job_id,
            service_id=service_id,
            service_url=service_url,
            notification_type=notification_type,
            status=status,
            duration_ms=int(duration_ms),
            error_message=error_message or "",
            metadata_=dict(metadata or {}),
            timestamp=self._clock(),
        )
        async with session_scope(self._session_factory, "record_delivery") as db:
            db.add(sample)
            await db.commit()
        return sample

    def record_http_request(self, method: str, endpoint: str, status_code: Optional[int], duration: float):
        """Count one outbound HTTP request; status_code None means no response (network error)."""
        code = str(status_code) if status_code is not None else "error"
        self.http_requests_total.labels(method=method, endpoint=endpoint, status_code=code).inc()
        self.http_request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def update_gauge(self, name: str, value: float):
        """Set a named gauge, registering it on first use (e.g. 'queue_size')."""
        gauge = self._gauges.get(name)
        if gauge is None:
            gauge = Gauge(f"{self.namespace}_{name}", f"Current value of {name}", registry=self.registry)
            self._gauges[name] = gauge
        gauge.set(value)

    def gauge_value(self, name: str) -> Optional[float]:
        return self.registry.get_sample_value(f"{self.namespace}_{name}")

    def counter_value(self, service_id: str, notification_type: str, status: str) -> float:
        """In-memory delivery count for one label set (0 if never recorded)."""
        value = self.registry.get_sample_value(
            f"{self.namespace}_notifications_total",
            {"service_id": service_id, "type": notification_type, "status": status},
        )
        return value or 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of every metric."""
        return generate_latest(self.registry)

    async def report(self, start: datetime, end: datetime) -> AggregatedReport:
        """Aggregate the durable samples with start <= timestamp < end."""
        if self._session_factory is None:
            raise RuntimeError("MetricsRecorder has no database attached")

        in_window = (NotificationMetric.timestamp >= start, NotificationMetric.timestamp < end)
        succeeded = func.sum(case((NotificationMetric.status == DeliveryStatus.SUCCESS.value, 1), else_=0))

        async with session_scope(self._session_factory, "metrics_report") as db:
            per_service = await db.execute(
                select(
                    NotificationMetric.service_id,
                    func.count(NotificationMetric.id),
                    succeeded,
                    func.avg(NotificationMetric.duration_ms),
                )
                .where(*in_window)
                .group_by(NotificationMetric.service_id)
            )
            per_type = await db.execute(
                select(NotificationMetric.notification_type, func.count(NotificationMetric.id))
                .where(*in_window)
                .group_by(NotificationMetric.notification_type)
            )
            samples = await db.execute(
                select(
                    NotificationMetric.timestamp,
                    NotificationMetric.status,
                    NotificationMetric.duration_ms,
                    NotificationMetric.error_message,
                )
                .where(*in_window)
                .order_by(NotificationMetric.timestamp)
            )
            service_rows = per_service.all()
            type_rows = per_type.all()
            sample_rows = samples.all()

        report = AggregatedReport(start=start, end=end)

        for service_id, total, successful, avg_ms in service_rows:
            successful = int(successful or 0)
            report.services[service_id] = ServiceBreakdown(
                service_id=service_id,
                total=total,
                successful=successful,
                failed=total - successful,
                success_rate=_rate(successful, total),
                average_duration_ms=round(float(avg_ms or 0.0), 2),
            )
        report.notification_types = {notification_type: count for notification_type, count in type_rows}

        durations = sorted(row.duration_ms for row in sample_rows)
        report.total = len(sample_rows)
        report.successful = sum(1 for row in sample_rows if row.status == DeliveryStatus.SUCCESS.value)
        report.failed = report.total - report.successful
        report.success_rate = _rate(report.successful, report.total)
        report.average_duration_ms = round(sum(durations) / len(durations), 2) if durations else 0.0
        report.latency_ms = LatencyPercentiles(
            p50=percentile(durations, 50),
            p90=percentile(durations, 90),
            p95=percentile(durations, 95),
            p99=percentile(durations, 99),
        )
        report.hourly = self._hourly(sample_rows)
        report.top_errors = self._top_errors(sample_rows)
        return report

    @staticmethod
    def _hourly(rows) -> List[HourlyBreakdown]:
        buckets: Dict[str, HourlyBreakdown] = {}
        for row in rows:
            hour = row.timestamp.strftime("%Y-%m-%d %H:00")
            bucket = buckets.setdefault(hour, HourlyBreakdown(hour=hour))
            bucket.total += 1
            if row.status == DeliveryStatus.SUCCESS.value:
                bucket.successful += 1
            else:
                bucket.failed += 1
        for bucket in buckets.values():
            bucket.success_rate = _rate(bucket.successful, bucket.total)
        return [buckets[hour] for hour in sorted(buckets)]

    @staticmethod
    def _top_errors(rows, limit: int = METRICS_TOP_ERRORS_LIMIT) -> List[ErrorCount]:
        counts = TallyCounter()
        last_seen: Dict[str, datetime] = {}
        for row in rows:
            if row.status == DeliveryStatus.FAILED.value and row.error_message:
                counts[row.error_message] += 1
                last_seen[row.error_message] = max(row.timestamp, last_seen.get(row.error_message, row.timestamp))
        return [
            ErrorCount(error_message=message, count=count, last_occurred=last_seen[message])
            for message, count in counts.most_common(limit)
        ]

    async def purge(self, older_than: timedelta) -> int:
        """Delete samples older than the cutoff."""
        if self._session_factory is None:
            return 0
        cutoff = self._clock() - older_than
        async with session_scope(self._session_factory, "purge_metrics") as db:
            result = await db.execute(delete(NotificationMetric).where(NotificationMetric.timestamp < cutoff))
            await db.commit()
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(f"Purged {deleted} old record(s) from notification_metrics")
        return deleted


# Report windows, as (start, end) in naive UTC

def last_24_hours(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    return now - timedelta(hours=24), now


def last_7_days(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    return now - timedelta(days=7), now


def last_30_days(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    return now - timedelta(days=30), now


def this_month(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, now
