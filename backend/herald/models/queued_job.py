"""
Queued job model.
"""
from datetime import timedelta
from sqlalchemy import Column, Integer, BigInteger, String, Text, DateTime, JSON, ForeignKey, Index
from herald.database import Base
from herald.models.enums import NotifyType, JobStatus

NANOSECONDS_PER_MICROSECOND = 1000


class QueuedJob(Base):
    """A materialized notification waiting in (or finished with) the durable queue."""

    __tablename__ = "notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scheduled_id = Column(Integer, ForeignKey("scheduled_jobs.id", ondelete="SET NULL"), nullable=True)

    # Payload
    title = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    notify_type = Column(String(20), nullable=False, default=NotifyType.INFO.value)
    services = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    template = Column(String(255), nullable=True)  # rendered by the worker before dispatch

    # Scheduling and retry policy
    priority = Column(Integer, nullable=False, default=1)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_count = Column(Integer, nullable=False, default=0)
    retry_delay_ns = Column(BigInteger, nullable=False, default=300 * 10**9)

    # State
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    error_message = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_queue_status", "status"),
        Index("idx_queue_priority", priority.desc(), created_at),
        Index("idx_queue_next_retry", "next_retry_at"),
    )

    @property
    def retry_delay(self) -> timedelta:
        """Base retry delay (stored as nanoseconds)."""
        if self.retry_delay_ns is None:
            return None
        return timedelta(microseconds=self.retry_delay_ns // NANOSECONDS_PER_MICROSECOND)

    @retry_delay.setter
    def retry_delay(self, value: timedelta):
        if value is None:
            self.retry_delay_ns = None
        else:
            self.retry_delay_ns = (value // timedelta(microseconds=1)) * NANOSECONDS_PER_MICROSECOND

    @property
    def attempts_left(self) -> bool:
        return self.retry_count < self.max_retries

    def __repr__(self) -> str:
        return f"<QueuedJob id={self.id} status={self.status} priority={self.priority} retries={self.retry_count}/{self.max_retries}>"
