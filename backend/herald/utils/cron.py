"""
Cron expression parsing and builders.

Only the standard 5-field form (minute hour day-of-month month day-of-week)
is accepted. Schedules are evaluated in UTC on naive datetimes.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from croniter import croniter, CroniterError

from herald.utils.clock import utcnow
from herald.utils.errors import InvalidCronExpression

CRON_FIELD_COUNT = 5


class CronSchedule:
    """A parsed cron expression that can compute its next fire time."""

    def __init__(self, expression: str):
        self.expression = expression

    def next(self, after: datetime) -> datetime:
        """First fire time strictly after `after`."""
        return croniter(self.expression, after).get_next(datetime)

    def upcoming(self, count: int, start: Optional[datetime] = None) -> List[datetime]:
        """The next `count` fire times after start (default: now)."""
        itr = croniter(self.expression, start or utcnow())
        return [itr.get_next(datetime) for _ in range(count)]

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


def parse_cron(expression: str) -> CronSchedule:
    """
    Parse a standard 5-field cron expression.

    Raises:
        InvalidCronExpression: wrong field count or invalid field values
    """
    if not isinstance(expression, str) or len(expression.split()) != CRON_FIELD_COUNT:
        raise InvalidCronExpression(
            f"Invalid cron expression '{expression}': expected {CRON_FIELD_COUNT} fields"
        )
    try:
        croniter(expression)
    except (CroniterError, ValueError, KeyError) as e:
        raise InvalidCronExpression(f"Invalid cron expression '{expression}': {e}") from e
    return CronSchedule(expression)


def is_valid_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
        return True
    except InvalidCronExpression:
        return False


class CronExpressionBuilder:
    """
    Fluent builder for common cron expressions.

    Example:
        CronExpressionBuilder().at(9, 30).on_weekdays().build()  # "30 9 * * 1-5"
    """

    def __init__(self):
        self.minutes = "*"
        self.hours = "*"
        self.day_of_month = "*"
        self.month = "*"
        self.day_of_week = "*"

    def every(self, interval: timedelta) -> "CronExpressionBuilder":
        """Recurring schedule for sub-day intervals (minutes or hours)."""
        if interval < timedelta(hours=1):
            minutes = max(1, int(interval.total_seconds() // 60))
            self.minutes = f"*/{minutes}"
        elif interval < timedelta(days=1):
            hours = int(interval.total_seconds() // 3600)
            self.hours = f"*/{hours}"
            self.minutes = "0"
        return self

    def at(self, hour: int, minute: int) -> "CronExpressionBuilder":
        self.hours = str(hour)
        self.minutes = str(minute)
        return self

    def on_days(self, *days: int) -> "CronExpressionBuilder":
        """Specific days of the week (0 = Sunday)."""
        self.day_of_week = ",".join(str(day) for day in days)
        return self

    def on_weekdays(self) -> "CronExpressionBuilder":
        self.day_of_week = "1-5"
        return self

    def on_weekends(self) -> "CronExpressionBuilder":
        self.day_of_week = "0,6"
        return self

    def daily(self) -> "CronExpressionBuilder":
        self.day_of_week = "*"
        return self

    def build(self) -> str:
        return f"{self.minutes} {self.hours} {self.day_of_month} {self.month} {self.day_of_week}"


def every_minute() -> str:
    return "* * * * *"


def every_5_minutes() -> str:
    return "*/5 * * * *"


def every_15_minutes() -> str:
    return "*/15 * * * *"


def every_30_minutes() -> str:
    return "*/30 * * * *"


def hourly() -> str:
    return "0 * * * *"


def daily(hour: int, minute: int) -> str:
    return f"{minute} {hour} * * *"


def weekly(day_of_week: int, hour: int, minute: int) -> str:
    return f"{minute} {hour} * * {day_of_week}"


def monthly(day_of_month: int, hour: int, minute: int) -> str:
    return f"{minute} {hour} {day_of_month} * *"
