"""
Scheduled job model.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Index
from herald.database import Base
from herald.models.enums import NotifyType
from herald.utils.clock import utcnow


class ScheduledJob(Base):
    """A named notification fired by a cron expression."""

    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)

    # Schedule
    cron_expression = Column(String(100), nullable=False)
    next_run = Column(DateTime, nullable=True)
    last_run = Column(DateTime, nullable=True)
    run_count = Column(Integer, nullable=False, default=0)

    # Payload
    title = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    notify_type = Column(String(20), nullable=False, default=NotifyType.INFO.value)
    services = Column(JSON, nullable=False, default=list)  # list of service URLs
    tags = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)  # also template variables
    template = Column(String(255), nullable=True)

    # Lifecycle
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    last_status = Column(Text, nullable=False, default="")

    __table_args__ = (
        Index("idx_scheduled_jobs_enabled", "enabled"),
        Index("idx_scheduled_jobs_next_run", "next_run"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledJob id={self.id} name={self.name!r} cron={self.cron_expression!r}>"
