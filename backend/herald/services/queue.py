"""
Durable notification queue.

Jobs live in the notification_queue table and move through

    pending -> running -> completed
                       -> retrying -> running -> ...
                       -> failed

status=running is the lease marker. Leasing is an optimistic single-row
UPDATE ... WHERE status IN (pending, retrying), so two workers polling at
the same time can never both own a job.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger
from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from herald.config import QueueConfig
from herald.database import session_scope
from herald.models import QueuedJob, JobStatus
from herald.models.enums import LEASABLE_STATUSES, TERMINAL_STATUSES
from herald.schemas import QueueJobCreate
from herald.utils.clock import utcnow
from herald.utils.errors import HeraldError, JobNotFound, JobValidationError, InvalidJobTransition

# Allowed status changes; anything else raises InvalidJobTransition
TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RETRYING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.RETRYING, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def backoff_delay(base: timedelta, retry_count: int, max_multiplier: int) -> timedelta:
    """
    Delay before the next attempt.

    retry_count is the value after the increment, so the first retry waits
    base, the second 2 x base, the third 4 x base, capped at max_multiplier x base.
    """
    exponent = max(retry_count - 1, 0)
    multiplier = min(2 ** exponent, max_multiplier)
    return base * multiplier


class NotificationQueue:
    """
    SQL-backed priority queue with exponential-backoff retries.

    Every method opens its own short-lived session, so no connection is
    held while a worker is delivering.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Optional[QueueConfig] = None,
        registry=None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self.config = config or QueueConfig()
        self.registry = registry  # optional EndpointRegistry used to validate service URLs
        self._clock = clock

    def _build_job(self, request: QueueJobCreate) -> QueuedJob:
        if self.registry is not None:
            for url in request.services:
                self.registry.validate(url)

        retry_delay = request.retry_delay
        if retry_delay is None:
            retry_delay = timedelta(seconds=self.config.default_retry_delay)
        if retry_delay <= timedelta(0):
            raise JobValidationError("retry_delay must be positive")

        now = self._clock()
        job = QueuedJob(
            scheduled_id=request.scheduled_id,
            title=request.title,
            body=request.body,
            notify_type=request.notify_type.value,
            services=list(request.services),
            tags=list(request.tags),
            metadata_=dict(request.metadata),
            template=request.template,
            priority=request.priority if request.priority is not None else self.config.default_priority,
            max_retries=request.max_retries if request.max_retries is not None else self.config.default_max_retries,
            retry_count=0,
            status=JobStatus.PENDING.value,
            error_message="",
            created_at=now,
            scheduled_at=now,
        )
        job.retry_delay = retry_delay
        return job

    async def enqueue(self, request: QueueJobCreate) -> QueuedJob:
        """
        Add a job to the queue as pending.

        Raises:
            InvalidEndpointURL / UnknownScheme: a service URL does not resolve
            JobValidationError: invalid retry policy
            QueueBackendError: SQL failure
        """
        job = self._build_job(request)
        async with session_scope(self._session_factory, "enqueue") as db:
            db.add(job)
            await db.commit()
        logger.info(f"Queued job {job.id} (priority={job.priority}, services={len(job.services)})")
        return job

    async def enqueue_batch(self, requests: List[QueueJobCreate]) -> Tuple[List[QueuedJob], Dict[int, HeraldError]]:
        """
        Enqueue several jobs, collecting per-job failures.

        Returns:
            (queued jobs in input order, {input index: error} for rejected jobs)
        """
        queued: List[QueuedJob] = []
        errors: Dict[int, HeraldError] = {}
        for index, request in enumerate(requests):
            try:
                queued.append(await self.enqueue(request))
            except HeraldError as e:
                logger.warning(f"Batch job {index} rejected: {e}")
                errors[index] = e
        return queued, errors

    async def lease_due(self, limit: Optional[int] = None) -> List[QueuedJob]:
        """
        Lease up to `limit` due jobs, marking them running.

        Due means pending, or retrying with next_retry_at in the past.
        Results are ordered by priority (high first), then created_at.
        """
        limit = limit or self.config.batch_size
        now = self._clock()
        due = (
            QueuedJob.status.in_(LEASABLE_STATUSES),
            or_(QueuedJob.next_retry_at.is_(None), QueuedJob.next_retry_at <= now),
        )

        async with session_scope(self._session_factory, "lease_due") as db:
            result = await db.execute(
                select(QueuedJob.id)
                .where(*due)
                .order_by(QueuedJob.priority.desc(), QueuedJob.created_at.asc(), QueuedJob.id.asc())
                .limit(limit)
            )
            candidate_ids = list(result.scalars().all())

            leased_ids = []
            for job_id in candidate_ids:
                # Losing the race to another worker leaves rowcount at 0
                claimed = await db.execute(
                    update(QueuedJob)
                    .where(QueuedJob.id == job_id, *due)
                    .values(status=JobStatus.RUNNING.value, started_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if claimed.rowcount == 1:
                    leased_ids.append(job_id)

            if not leased_ids:
                return []

            result = await db.execute(
                select(QueuedJob)
                .where(QueuedJob.id.in_(leased_ids))
                .order_by(QueuedJob.priority.desc(), QueuedJob.created_at.asc(), QueuedJob.id.asc())
                .execution_options(populate_existing=True)
            )
            jobs = list(result.scalars().all())

        logger.debug(f"Leased {len(jobs)} job(s): {[job.id for job in jobs]}")
        return jobs

    async def transition(self, job_id: int, new_status: JobStatus, error: str = "") -> QueuedJob:
        """
        Atomically move a job to a new status.

        Side effects:
            running   - started_at = now
            completed - completed_at = now, error_message = error (partial-success warning)
            retrying  - retry_count += 1, next_retry_at = now + backoff, error_message = error
            failed    - completed_at = now, error_message = error

        Raises:
            JobNotFound: no such job
            InvalidJobTransition: change not allowed from the current status,
                retries exhausted, or another worker changed the job first
        """
        new_status = JobStatus(new_status)
        async with session_scope(self._session_factory, "transition") as db:
            job = await db.get(QueuedJob, job_id)
            if job is None:
                raise JobNotFound(f"Queued job {job_id} not found")

            current = JobStatus(job.status)
            if new_status not in TRANSITIONS[current]:
                raise InvalidJobTransition(
                    f"Job {job_id} cannot move from {current.value} to {new_status.value}",
                    {"job_id": job_id, "from": current.value, "to": new_status.value}
                )

            now = self._clock()
            values = {"status": new_status.value}
            if new_status == JobStatus.RUNNING:
                values["started_at"] = now
            elif new_status == JobStatus.COMPLETED:
                values["completed_at"] = now
                values["error_message"] = error
            elif new_status == JobStatus.FAILED:
                values["completed_at"] = now
                values["error_message"] = error
            elif new_status == JobStatus.RETRYING:
                if not job.attempts_left:
                    raise InvalidJobTransition(
                        f"Job {job_id} has no retries left ({job.retry_count}/{job.max_retries})",
                        {"job_id": job_id}
                    )
                retry_count = job.retry_count + 1
                values["retry_count"] = retry_count
                values["next_retry_at"] = now + backoff_delay(
                    job.retry_delay, retry_count, self.config.max_backoff_multiplier
                )
                values["error_message"] = error

            result = await db.execute(
                update(QueuedJob)
                .where(QueuedJob.id == job_id, QueuedJob.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise InvalidJobTransition(
                    f"Job {job_id} changed state concurrently (expected {current.value})",
                    {"job_id": job_id}
                )
            await db.commit()
            await db.refresh(job)

        logger.debug(f"Job {job_id}: {current.value} -> {new_status.value}")
        return job

    async def get(self, job_id: int) -> QueuedJob:
        async with session_scope(self._session_factory, "get_job") as db:
            job = await db.get(QueuedJob, job_id)
        if job is None:
            raise JobNotFound(f"Queued job {job_id} not found")
        return job

    async def delete(self, job_id: int):
        async with session_scope(self._session_factory, "delete_job") as db:
            result = await db.execute(delete(QueuedJob).where(QueuedJob.id == job_id))
            await db.commit()
        if result.rowcount == 0:
            raise JobNotFound(f"Queued job {job_id} not found")
        logger.info(f"Deleted queued job {job_id}")

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[QueuedJob]:
        """Jobs in lease order, optionally filtered by status."""
        query = select(QueuedJob)
        if status is not None:
            query = query.where(QueuedJob.status == JobStatus(status).value)
        query = query.order_by(QueuedJob.priority.desc(), QueuedJob.created_at.asc(), QueuedJob.id.asc()).limit(limit)
        async with session_scope(self._session_factory, "list_jobs") as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def stats(self) -> Dict[str, int]:
        """Job count per status, plus 'total'."""
        async with session_scope(self._session_factory, "queue_stats") as db:
            result = await db.execute(
                select(QueuedJob.status, func.count(QueuedJob.id)).group_by(QueuedJob.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            for status, count in result.all():
                counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    async def purge(self, older_than: timedelta) -> int:
        """Delete completed and failed jobs that finished more than `older_than` ago."""
        cutoff = self._clock() - older_than
        async with session_scope(self._session_factory, "purge_jobs") as db:
            result = await db.execute(
                delete(QueuedJob).where(
                    QueuedJob.status.in_(TERMINAL_STATUSES),
                    QueuedJob.completed_at < cutoff,
                )
            )
            await db.commit()
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.info(f"Purged {deleted} finished job(s) from notification_queue")
        return deleted
