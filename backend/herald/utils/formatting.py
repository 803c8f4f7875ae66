"""
Text formatting utilities.
"""
from typing import Optional

from herald.constants import TRUNCATION_MARKER


def truncate_body(body: str, max_length: int, marker: str = TRUNCATION_MARKER) -> str:
    """
    Truncate a message body so that it fits an endpoint limit.

    Args:
        body: Message body
        max_length: Maximum allowed length (0 = unlimited)
        marker: Text appended to truncated bodies

    Returns:
        The body unchanged if it fits, otherwise a prefix ending with marker
    """
    if max_length <= 0 or len(body) <= max_length:
        return body
    if max_length <= len(marker):
        return body[:max_length]
    return body[:max_length - len(marker)] + marker


def summarize_errors(errors: list, limit: Optional[int] = 3) -> str:
    """Join error strings for a job's error_message, keeping it short."""
    shown = errors if limit is None else errors[:limit]
    summary = "; ".join(shown)
    if limit is not None and len(errors) > limit:
        summary += f"; (+{len(errors) - limit} more)"
    return summary
