"""
Database models for Herald.
"""
from herald.models.enums import NotifyType, BodyFormat, JobStatus, DeliveryStatus
from herald.models.scheduled_job import ScheduledJob
from herald.models.queued_job import QueuedJob
from herald.models.template import NotificationTemplate
from herald.models.metric import NotificationMetric

__all__ = [
    "NotifyType",
    "BodyFormat",
    "JobStatus",
    "DeliveryStatus",
    "ScheduledJob",
    "QueuedJob",
    "NotificationTemplate",
    "NotificationMetric",
]
