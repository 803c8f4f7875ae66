"""
Enumerations shared by models and services.
"""
from enum import Enum


class NotifyType(str, Enum):
    """Notification severity."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class BodyFormat(str, Enum):
    TEXT = "text"
    HTML = "html"
    MARKDOWN = "markdown"


class JobStatus(str, Enum):
    """QueuedJob lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Outcome of a single endpoint delivery."""
    SUCCESS = "success"
    FAILED = "failed"


# States a job can be leased from
LEASABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.RETRYING.value)

# Terminal states (completed_at is set)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
