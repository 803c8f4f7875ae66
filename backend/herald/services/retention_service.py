"""
Data retention service for cleaning up old records.
"""
from datetime import timedelta
from typing import Dict, Optional
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from herald.config import RetentionConfig
from herald.database import checkpoint_wal
from herald.services.metrics_recorder import MetricsRecorder
from herald.services.queue import NotificationQueue
from herald.utils.errors import HeraldError


class RetentionService:
    """
    Purges finished queue rows and old metrics samples.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        metrics: MetricsRecorder,
        config: Optional[RetentionConfig] = None,
        engine: Optional[AsyncEngine] = None
    ):
        self.queue = queue
        self.metrics = metrics
        self.config = config or RetentionConfig()
        self.engine = engine

    async def cleanup_old_data(self) -> Dict[str, int]:
        """Clean up old data based on retention policy. Returns rows deleted per table."""
        logger.info(
            f"Starting data retention cleanup (jobs: {self.config.completed_jobs_days} days, "
            f"metrics: {self.config.metrics_days} days)"
        )
        deleted = {"notification_queue": 0, "notification_metrics": 0}

        try:
            deleted["notification_queue"] = await self.queue.purge(timedelta(days=self.config.completed_jobs_days))
            deleted["notification_metrics"] = await self.metrics.purge(timedelta(days=self.config.metrics_days))
            logger.info("Data retention cleanup completed")
        except HeraldError as e:
            logger.error(f"Error during data retention cleanup: {e}")
            return deleted

        # Run WAL checkpoint after cleanup to consolidate the database
        await checkpoint_wal(self.engine)
        return deleted
