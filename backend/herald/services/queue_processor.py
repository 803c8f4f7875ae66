"""
Queue processor: the worker loop between the queue and the endpoints.

Every poll it leases a batch of due jobs and processes them concurrently.
For each job it renders the template (if any), resolves the service URLs,
fans the notification out, records one metrics sample per endpoint and
moves the job to its next status. No database session is held while
deliveries are in flight.
"""
import asyncio
from typing import List, Optional
from loguru import logger

from herald.config import QueueConfig
from herald.endpoints.base import Notification
from herald.endpoints.registry import EndpointRegistry
from herald.endpoints.url import extract_scheme, redact_service_url
from herald.middleware.correlation import bind_correlation_id
from herald.models import QueuedJob, JobStatus, NotifyType
from herald.services.dispatcher import DeliveryDispatcher, Outcome, aggregate_outcomes
from herald.services.metrics_recorder import MetricsRecorder
from herald.services.queue import NotificationQueue
from herald.services.scheduler import CronScheduler
from herald.services.template_engine import TemplateEngine
from herald.utils.errors import (
    HeraldError,
    InvalidEndpointURL,
    InvalidJobTransition,
    TemplateError,
    UnknownScheme,
)


class QueueProcessor:
    """Polls the queue and processes due jobs."""

    def __init__(
        self,
        queue: NotificationQueue,
        registry: EndpointRegistry,
        dispatcher: DeliveryDispatcher,
        templates: Optional[TemplateEngine] = None,
        metrics: Optional[MetricsRecorder] = None,
        scheduler: Optional[CronScheduler] = None,
        config: Optional[QueueConfig] = None
    ):
        self.queue = queue
        self.registry = registry
        self.dispatcher = dispatcher
        self.templates = templates
        self.metrics = metrics
        self.scheduler = scheduler
        self.config = config or queue.config
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_forever(self):
        """Poll every poll_interval seconds until stopped."""
        self._running = True
        logger.info(f"Queue processor started (every {self.config.poll_interval}s, batch {self.config.batch_size})")
        while self._running:
            try:
                await self.process_batch()
            except asyncio.CancelledError:
                raise
            except HeraldError as e:
                logger.error(f"Queue poll failed: [{e.code.value}] {e}")
            except Exception as e:
                logger.error(f"Error in queue processor: {e}")
            await asyncio.sleep(self.config.poll_interval)

    async def stop(self):
        self._running = False
        logger.info("Queue processor stopped")

    async def process_batch(self) -> int:
        """Lease one batch and process it. Returns the number of jobs processed."""
        jobs = await self.queue.lease_due(self.config.batch_size)
        if jobs:
            logger.info(f"Processing {len(jobs)} queued job(s)")
            results = await asyncio.gather(*(self.process_job(job) for job in jobs), return_exceptions=True)
            for job, result in zip(jobs, results):
                if isinstance(result, Exception):
                    logger.error(f"Job {job.id} processing error: {result}")

        if self.metrics is not None:
            stats = await self.queue.stats()
            self.metrics.update_gauge("queue_pending", stats[JobStatus.PENDING.value] + stats[JobStatus.RETRYING.value])
        return len(jobs)

    async def process_job(self, job: QueuedJob) -> QueuedJob:
        """
        Deliver one leased (running) job and record its next status.

        Template errors fail the job before anything is sent; delivery
        outcomes follow the aggregation policy. Any other error releases
        the lease through the retry policy so the job never stays running.
        """
        with bind_correlation_id(f"job-{job.id}"):
            try:
                return await self._process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Job {job.id}: unexpected processing error")
                return await self._release(job, f"Processing error: {type(e).__name__}: {e}")

    async def _release(self, job: QueuedJob, message: str) -> QueuedJob:
        """Move a job that errored mid-processing to retrying or failed."""
        status = JobStatus.RETRYING if job.retry_count < job.max_retries else JobStatus.FAILED
        try:
            updated = await self.queue.transition(job.id, status, message)
        except InvalidJobTransition:
            # Already moved on before the error happened
            return await self.queue.get(job.id)
        await self._report_status(job, f"{status.value}: {message}")
        return updated

    async def _process(self, job: QueuedJob) -> QueuedJob:
        logger.debug(f"Processing job {job.id}: {job.title!r}")

        try:
            notification = await self._build_notification(job)
        except TemplateError as e:
            logger.error(f"Job {job.id} failed: template '{job.template}': {e}")
            updated = await self.queue.transition(job.id, JobStatus.FAILED, str(e))
            await self._report_status(job, f"failed: {e}")
            return updated

        outcomes = await self._deliver(job, notification)
        await self._record_metrics(job, outcomes)

        status, message = aggregate_outcomes(outcomes, job.retry_count, job.max_retries)
        updated = await self.queue.transition(job.id, status, message)

        succeeded = sum(1 for outcome in outcomes if outcome.success)
        if status == JobStatus.COMPLETED and not message:
            logger.info(f"Job {job.id} completed successfully ({succeeded}/{len(outcomes)} services)")
            summary = "completed"
        elif status == JobStatus.COMPLETED:
            logger.warning(f"Job {job.id} completed with warnings: {message}")
            summary = f"completed with warnings: {message}"
        elif status == JobStatus.RETRYING:
            logger.warning(
                f"Job {job.id} scheduled for retry ({updated.retry_count}/{updated.max_retries}) "
                f"at {updated.next_retry_at.isoformat()}: {message}"
            )
            summary = f"retrying: {message}"
        else:
            logger.error(f"Job {job.id} failed after {job.retry_count} retries: {message}")
            summary = f"failed: {message}"

        await self._report_status(job, summary)
        return updated

    async def _build_notification(self, job: QueuedJob) -> Notification:
        title, body = job.title, job.body
        if job.template:
            if self.templates is None:
                raise TemplateError(f"Job {job.id} uses template '{job.template}' but no template engine is configured")
            title, body = await self.templates.render(job.template, dict(job.metadata_ or {}))
        return Notification(
            title=title,
            body=body,
            notify_type=NotifyType(job.notify_type),
            tags=frozenset(job.tags or []),
        )

    async def _deliver(self, job: QueuedJob, notification: Notification) -> List[Outcome]:
        """
        Resolve service URLs and dispatch.

        Returns one outcome per entry of job.services, in that order;
        unresolvable URLs become failed outcomes without being sent.
        """
        slots: List[Optional[Outcome]] = []
        endpoints = []
        for url in job.services:
            try:
                endpoints.append(self.registry.resolve(url))
                slots.append(None)
            except (InvalidEndpointURL, UnknownScheme) as e:
                logger.warning(f"Job {job.id}: cannot resolve service URL: {e}")
                slots.append(Outcome(
                    service_id=extract_scheme(url) or "unknown",
                    service_url=url,
                    success=False,
                    error=e,
                ))

        delivered = iter(await self.dispatcher.dispatch(notification, endpoints))
        return [slot if slot is not None else next(delivered) for slot in slots]

    async def _record_metrics(self, job: QueuedJob, outcomes: List[Outcome]):
        if self.metrics is None:
            return
        for outcome in outcomes:
            try:
                await self.metrics.record_delivery(
                    service_id=outcome.service_id,
                    service_url=redact_service_url(outcome.service_url),
                    notification_type=job.notify_type,
                    success=outcome.success,
                    duration_ms=outcome.duration_ms,
                    error_message=outcome.error_message,
                    job_id=job.id,
                    scheduled_job_id=job.scheduled_id,
                )
            except HeraldError as e:
                logger.warning(f"Failed to record metrics for job {job.id}: {e}")

    async def _report_status(self, job: QueuedJob, summary: str):
        if self.scheduler is None or job.scheduled_id is None:
            return
        try:
            await self.scheduler.record_status(job.scheduled_id, summary)
        except HeraldError as e:
            logger.warning(f"Failed to record status for scheduled job {job.scheduled_id}: {e}")
