"""
Error types surfaced by the scheduler core.

Every error carries a stable ErrorCode so callers and logs can classify
failures without parsing messages:

    try:
        endpoint = registry.resolve(url)
    except HeraldError as e:
        logger.error(f"[{e.code.value}] {e}")
"""
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # Endpoint registry
    INVALID_ENDPOINT_URL = "INVALID_ENDPOINT_URL"
    UNKNOWN_SCHEME = "UNKNOWN_SCHEME"

    # Templates
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_SYNTAX_ERROR = "TEMPLATE_SYNTAX_ERROR"
    TEMPLATE_RENDER_ERROR = "TEMPLATE_RENDER_ERROR"
    TEMPLATE_EXISTS = "TEMPLATE_EXISTS"

    # Delivery
    TRANSIENT_DELIVERY_ERROR = "TRANSIENT_DELIVERY_ERROR"
    PERMANENT_DELIVERY_ERROR = "PERMANENT_DELIVERY_ERROR"
    CANCELLED = "CANCELLED"

    # Queue
    QUEUE_BACKEND_ERROR = "QUEUE_BACKEND_ERROR"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Scheduler
    SCHEDULED_JOB_NOT_FOUND = "SCHEDULED_JOB_NOT_FOUND"
    DUPLICATE_JOB_NAME = "DUPLICATE_JOB_NAME"
    INVALID_CRON_EXPRESSION = "INVALID_CRON_EXPRESSION"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class HeraldError(Exception):
    """Base class for all scheduler errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Standard error payload: {"code": ..., "message": ..., "details": ...}."""
        response = {
            "code": self.code.value,
            "message": self.message
        }
        if self.details:
            response["details"] = self.details
        return response


# Endpoint registry

class InvalidEndpointURL(HeraldError):
    """Service URL is malformed or missing a required part."""
    code = ErrorCode.INVALID_ENDPOINT_URL


class UnknownScheme(HeraldError):
    """No endpoint factory is registered for the URL scheme."""
    code = ErrorCode.UNKNOWN_SCHEME


# Templates

class TemplateError(HeraldError):
    code = ErrorCode.TEMPLATE_RENDER_ERROR


class TemplateNotFound(TemplateError):
    code = ErrorCode.TEMPLATE_NOT_FOUND


class TemplateSyntaxError(TemplateError):
    code = ErrorCode.TEMPLATE_SYNTAX_ERROR


class TemplateRenderError(TemplateError):
    code = ErrorCode.TEMPLATE_RENDER_ERROR


class TemplateExists(TemplateError):
    code = ErrorCode.TEMPLATE_EXISTS


# Delivery

class DeliveryError(HeraldError):
    """Base class for errors raised by DeliveryEndpoint.send()."""
    code = ErrorCode.TRANSIENT_DELIVERY_ERROR


class TransientDeliveryError(DeliveryError):
    """HTTP 5xx, 429, timeouts, connection resets."""
    code = ErrorCode.TRANSIENT_DELIVERY_ERROR


class PermanentDeliveryError(DeliveryError):
    """HTTP 4xx (except 429), malformed credentials."""
    code = ErrorCode.PERMANENT_DELIVERY_ERROR


class DeliveryCancelled(TransientDeliveryError):
    """Dispatch deadline exceeded before the delivery finished."""
    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "cancelled", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


# Queue

class QueueBackendError(HeraldError):
    """SQL failure inside the queue, scheduler or metrics store."""
    code = ErrorCode.QUEUE_BACKEND_ERROR


class JobNotFound(HeraldError):
    code = ErrorCode.JOB_NOT_FOUND


class InvalidJobTransition(HeraldError):
    code = ErrorCode.INVALID_TRANSITION


# Scheduler

class ScheduledJobNotFound(HeraldError):
    code = ErrorCode.SCHEDULED_JOB_NOT_FOUND


class DuplicateJobName(HeraldError):
    code = ErrorCode.DUPLICATE_JOB_NAME


class InvalidCronExpression(HeraldError):
    code = ErrorCode.INVALID_CRON_EXPRESSION


class JobValidationError(HeraldError):
    code = ErrorCode.VALIDATION_ERROR
