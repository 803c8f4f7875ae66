"""
Correlation IDs for request and job tracing.
"""
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# Correlation ID for the current request, job attempt or cron tick
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the correlation ID for the current context."""
    return correlation_id_var.get()


@contextmanager
def bind_correlation_id(correlation_id: str) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of a block.

    Used by background loops so every log line of one job attempt
    carries the same ID (e.g. "job-42", "cron-7").
    """
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a correlation ID to each request.

    The correlation ID is read from X-Correlation-ID if present,
    otherwise generated, stored in context for logging and echoed
    in the response headers.
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(self.HEADER_NAME)
        if not correlation_id:
            correlation_id = str(uuid.uuid4())[:8]  # Short 8-char ID for readability

        with bind_correlation_id(correlation_id):
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = correlation_id
            return response


def correlation_id_filter(record):
    """
    Loguru filter that adds correlation_id to log records.
    """
    record["extra"]["correlation_id"] = get_correlation_id() or "-"
    return True
