"""
Service layer for Herald: queue, fan-out, templates, scheduler and metrics.
"""
from herald.services.queue import NotificationQueue
from herald.services.dispatcher import DeliveryDispatcher, Outcome, aggregate_outcomes
from herald.services.template_engine import TemplateEngine
from herald.services.metrics_recorder import MetricsRecorder, AggregatedReport
from herald.services.scheduler import CronScheduler
from herald.services.queue_processor import QueueProcessor
from herald.services.retention_service import RetentionService

__all__ = [
    "NotificationQueue",
    "DeliveryDispatcher",
    "Outcome",
    "aggregate_outcomes",
    "TemplateEngine",
    "MetricsRecorder",
    "AggregatedReport",
    "CronScheduler",
    "QueueProcessor",
    "RetentionService",
]
