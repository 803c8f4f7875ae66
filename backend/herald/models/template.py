"""
Notification template model.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from herald.database import Base
from herald.utils.clock import utcnow


class NotificationTemplate(Base):
    """Reusable title/body templates with default variables."""

    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)

    title = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False, default="")
    variables = Column(JSON, nullable=False, default=dict)  # defaults, overridden by caller values
    description = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<NotificationTemplate name={self.name!r}>"
