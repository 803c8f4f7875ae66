"""
Shared presentation helpers for endpoints.
"""
from herald.models.enums import NotifyType
from herald.utils.errors import InvalidEndpointURL

NOTIFY_TYPE_EMOJI = {
    NotifyType.INFO: "ℹ️",
    NotifyType.SUCCESS: "✅",
    NotifyType.WARNING: "⚠️",
    NotifyType.ERROR: "❌",
}


def emoji_for(notify_type: NotifyType) -> str:
    """Get emoji for a notification type."""
    return NOTIFY_TYPE_EMOJI.get(NotifyType(notify_type), NOTIFY_TYPE_EMOJI[NotifyType.INFO])


def parse_int_option(value, name: str, low: int, high: int, default: int) -> int:
    """Parse an integer URL option, clamped to [low, high]."""
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise InvalidEndpointURL(f"Option '{name}' must be an integer, got {value!r}") from e
    return max(low, min(high, number))
