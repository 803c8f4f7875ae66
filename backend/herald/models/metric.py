"""
Notification metrics model.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index
from herald.database import Base
from herald.utils.clock import utcnow


class NotificationMetric(Base):
    """Append-only record of one endpoint delivery."""

    __tablename__ = "notification_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("notification_queue.id", ondelete="SET NULL"), nullable=True)
    scheduled_job_id = Column(Integer, ForeignKey("scheduled_jobs.id", ondelete="SET NULL"), nullable=True)

    service_id = Column(String(50), nullable=False)
    service_url = Column(Text, nullable=False)
    notification_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)  # success, failed
    duration_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=False, default="")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_metrics_timestamp", "timestamp"),
        Index("idx_metrics_service", "service_id"),
        Index("idx_metrics_status", "status"),
    )
