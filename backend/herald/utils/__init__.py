"""
Utility modules for Herald.
"""
from herald.utils.clock import utcnow
from herald.utils.cron import parse_cron, CronSchedule, CronExpressionBuilder
from herald.utils.formatting import truncate_body

__all__ = [
    "utcnow",
    "parse_cron",
    "CronSchedule",
    "CronExpressionBuilder",
    "truncate_body",
]
