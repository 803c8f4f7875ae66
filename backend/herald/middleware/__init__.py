"""
Middleware for Herald.
"""
from herald.middleware.correlation import CorrelationIdMiddleware, bind_correlation_id

__all__ = ["CorrelationIdMiddleware", "bind_correlation_id"]
