from datetime import datetime, timedelta

import pytest

from herald.utils.cron import (
    CronExpressionBuilder,
    daily,
    every_15_minutes,
    every_30_minutes,
    every_5_minutes,
    every_minute,
    hourly,
    is_valid_cron,
    monthly,
    parse_cron,
    weekly,
)
from herald.utils.errors import InvalidCronExpression


def test_next_is_strictly_after():
    schedule = parse_cron("*/5 * * * *")
    assert schedule.next(datetime(2024, 1, 1, 10, 0)) == datetime(2024, 1, 1, 10, 5)
    assert schedule.next(datetime(2024, 1, 1, 10, 3, 30)) == datetime(2024, 1, 1, 10, 5)


def test_upcoming_runs():
    runs = parse_cron("0 9 * * 1-5").upcoming(3, datetime(2024, 1, 5, 12, 0))  # a Friday
    assert runs == [
        datetime(2024, 1, 8, 9, 0),
        datetime(2024, 1, 9, 9, 0),
        datetime(2024, 1, 10, 9, 0),
    ]


@pytest.mark.parametrize("expression", [
    "* * * *",
    "0 0 * * * *",
    "61 * * * *",
    "* 25 * * *",
    "not a cron at all",
    "",
])
def test_invalid_expressions(expression):
    with pytest.raises(InvalidCronExpression):
        parse_cron(expression)
    assert not is_valid_cron(expression)


def test_builder():
    assert CronExpressionBuilder().at(9, 30).on_weekdays().build() == "30 9 * * 1-5"
    assert CronExpressionBuilder().every(timedelta(minutes=15)).build() == "*/15 * * * *"
    assert CronExpressionBuilder().every(timedelta(hours=6)).build() == "0 */6 * * *"
    assert CronExpressionBuilder().at(8, 0).on_days(1, 3).build() == "0 8 * * 1,3"


def test_shortcuts_are_valid():
    for expression in (every_5_minutes(), daily(2, 30), weekly(0, 8, 0), monthly(1, 0, 0)):
        assert is_valid_cron(expression)
    assert daily(2, 30) == "30 2 * * *"
    assert [every_minute(), every_15_minutes(), every_30_minutes(), hourly()] == [
        "* * * * *", "*/15 * * * *", "*/30 * * * *", "0 * * * *",
    ]
