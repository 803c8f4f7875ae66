"""
Input models for creating and updating jobs and templates.
"""
from datetime import timedelta
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from herald.models.enums import NotifyType


class JobPayload(BaseModel):
    """Notification content shared by scheduled and queued jobs."""
    title: str = ""
    body: str = ""
    notify_type: NotifyType = NotifyType.INFO
    services: List[str] = Field(..., min_length=1, description="Service URLs to deliver to")
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict, description="Free-form values, also used as template variables")
    template: Optional[str] = Field(None, max_length=255, description="Template rendered before delivery")


class QueueJobCreate(JobPayload):
    """A notification to put on the durable queue. Unset retry fields take the queue defaults."""
    scheduled_id: Optional[int] = None
    priority: Optional[int] = Field(None, description="Higher values are leased first")
    max_retries: Optional[int] = Field(None, ge=0)
    retry_delay: Optional[timedelta] = Field(None, description="Base delay, doubled on every retry")


class ScheduledJobCreate(JobPayload):
    name: str = Field(..., min_length=1, max_length=255)
    cron_expression: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True


class ScheduledJobUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    cron_expression: Optional[str] = Field(None, min_length=1, max_length=100)
    title: Optional[str] = None
    body: Optional[str] = None
    notify_type: Optional[NotifyType] = None
    services: Optional[List[str]] = Field(None, min_length=1)
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, str]] = None
    template: Optional[str] = Field(None, max_length=255)
    enabled: Optional[bool] = None


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    title: str = ""
    body: str = ""
    variables: Dict[str, str] = Field(default_factory=dict, description="Default values, overridden by caller variables")
    description: str = ""


class TemplateUpdate(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    variables: Optional[Dict[str, str]] = None
    description: Optional[str] = None
