"""
Cron scheduler for named notification jobs.

Enabled ScheduledJobs are registered with a single in-process ticker that
multiplexes all of them. Every time a job comes due the ticker puts an
independent QueuedJob on the queue and advances the job's counters.

Missed occurrences are not replayed: after a fire (or a restart) the next
run is always computed from the current time, so a scheduler that was down
for three */5 slots fires once, at the next slot.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger
from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from herald.config import QueueConfig
from herald.constants import CRON_IDLE_SLEEP_SECONDS
from herald.database import session_scope
from herald.middleware.correlation import bind_correlation_id
from herald.models import ScheduledJob
from herald.schemas import QueueJobCreate, ScheduledJobCreate, ScheduledJobUpdate
from herald.services.queue import NotificationQueue
from herald.utils.clock import utcnow, to_naive_utc
from herald.utils.cron import CronSchedule, parse_cron
from herald.utils.errors import (
    DuplicateJobName,
    HeraldError,
    JobValidationError,
    ScheduledJobNotFound,
)

# Metadata key a scheduled job can use to set the priority of what it queues
PRIORITY_METADATA_KEY = "priority"


@dataclass
class CronEntry:
    """Ticker registration for one enabled job."""
    job_id: int
    name: str
    schedule: CronSchedule
    next_run: datetime


class CronScheduler:
    """
    Owns scheduled_jobs: CRUD, the ticker, and the run counters.

    The in-memory registration map is guarded by an asyncio lock; CRUD
    operations that change the cron expression or the enabled flag
    re-register the job under that lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: NotificationQueue,
        registry=None,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self.queue = queue
        self.registry = registry  # optional EndpointRegistry used to validate service URLs
        self.config = config or queue.config
        self._clock = clock

        self._entries: Dict[int, CronEntry] = {}
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._running = False

    # Lifecycle

    async def start(self) -> int:
        """
        Load all enabled jobs and register them with the ticker.

        Returns:
            Number of jobs registered
        """
        async with session_scope(self._session_factory, "load_scheduled_jobs") as db:
            result = await db.execute(select(ScheduledJob).where(ScheduledJob.enabled.is_(True)))
            jobs = list(result.scalars().all())

        registered = 0
        for job in jobs:
            try:
                await self._register(job)
                registered += 1
            except HeraldError as e:
                logger.error(f"Skipping scheduled job '{job.name}' (ID: {job.id}): {e}")

        self._running = True
        logger.info(f"Cron scheduler started with {registered} job(s)")
        return registered

    async def stop(self):
        self._running = False
        self._wakeup.set()
        logger.info("Cron scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def run_forever(self):
        """Ticker loop: fire due jobs, then sleep until the next one is due."""
        while self._running:
            try:
                await self.run_pending()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cron ticker: {e}")

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=await self._seconds_until_next())
            except asyncio.TimeoutError:
                pass

    async def run_pending(self) -> int:
        """Fire every job whose next run has passed. Returns how many fired."""
        now = self._clock()
        async with self._lock:
            due = [entry.job_id for entry in self._entries.values() if entry.next_run <= now]

        fired = 0
        for job_id in due:
            if await self.tick(job_id):
                fired += 1
        return fired

    async def _seconds_until_next(self) -> float:
        async with self._lock:
            if not self._entries:
                return CRON_IDLE_SLEEP_SECONDS
            soonest = min(entry.next_run for entry in self._entries.values())
        delay = (soonest - self._clock()).total_seconds()
        return min(max(delay, 0.0), CRON_IDLE_SLEEP_SECONDS)

    # Ticks

    async def tick(self, job_id: int) -> bool:
        """
        Fire one job: enqueue its payload and advance last_run / run_count / next_run.

        Returns:
            True if a QueuedJob was created
        """
        with bind_correlation_id(f"cron-{job_id}"):
            now = self._clock()
            async with session_scope(self._session_factory, "load_scheduled_job") as db:
                job = await db.get(ScheduledJob, job_id)

            if job is None or not job.enabled:
                await self._unregister(job_id)
                return False

            schedule = parse_cron(job.cron_expression)
            next_run = schedule.next(now)

            try:
                queued = await self.queue.enqueue(self._queue_request(job))
            except HeraldError as e:
                logger.error(f"Failed to queue scheduled job '{job.name}': {e}")
                await self._advance(job_id, next_run, status=f"enqueue failed: {e}")
                return False

            async with session_scope(self._session_factory, "update_run_stats") as db:
                await db.execute(
                    update(ScheduledJob)
                    .where(ScheduledJob.id == job_id)
                    .values(
                        last_run=now,
                        run_count=ScheduledJob.run_count + 1,
                        next_run=next_run,
                        last_status=f"queued as job {queued.id}",
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

            await self._set_next_run(job_id, next_run)
            logger.info(f"Scheduled job '{job.name}' fired, queued job {queued.id}; next run {next_run.isoformat()}")
            return True

    def _queue_request(self, job: ScheduledJob) -> QueueJobCreate:
        metadata = dict(job.metadata_ or {})
        priority = self.config.default_priority
        raw_priority = metadata.get(PRIORITY_METADATA_KEY)
        if raw_priority not in (None, ""):
            try:
                priority = int(raw_priority)
            except (TypeError, ValueError):
                logger.warning(f"Scheduled job '{job.name}' has non-integer priority {raw_priority!r}, using default")

        # The template is rendered by the queue worker right before delivery
        return QueueJobCreate(
            scheduled_id=job.id,
            title=job.title,
            body=job.body,
            notify_type=job.notify_type,
            services=list(job.services),
            tags=list(job.tags or []),
            metadata=metadata,
            template=job.template,
            priority=priority,
        )

    async def _advance(self, job_id: int, next_run: datetime, status: str):
        async with session_scope(self._session_factory, "advance_scheduled_job") as db:
            await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id)
                .values(next_run=next_run, last_status=status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        await self._set_next_run(job_id, next_run)

    async def record_status(self, job_id: int, summary: str):
        """Store the outcome summary of the latest queued run."""
        async with session_scope(self._session_factory, "record_status") as db:
            await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id)
                .values(last_status=summary)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # Registration

    async def _register(self, job: ScheduledJob):
        schedule = parse_cron(job.cron_expression)
        next_run = schedule.next(self._clock())
        async with self._lock:
            self._entries[job.id] = CronEntry(job.id, job.name, schedule, next_run)

        async with session_scope(self._session_factory, "register_scheduled_job") as db:
            await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job.id)
                .values(next_run=next_run)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        job.next_run = next_run
        self._wakeup.set()
        logger.debug(f"Registered '{job.name}' ({job.cron_expression}), next run {next_run.isoformat()}")

    async def _unregister(self, job_id: int):
        async with self._lock:
            entry = self._entries.pop(job_id, None)
        if entry is not None:
            logger.debug(f"Unregistered '{entry.name}'")
            self._wakeup.set()

    async def _set_next_run(self, job_id: int, next_run: datetime):
        async with self._lock:
            entry = self._entries.get(job_id)
            if entry is not None:
                entry.next_run = next_run

    def registered_jobs(self) -> Dict[int, datetime]:
        """job id -> next run for every registered job."""
        return {job_id: entry.next_run for job_id, entry in self._entries.items()}

    # CRUD

    def _validate_services(self, services: List[str]):
        if not services:
            raise JobValidationError("Scheduled job requires at least one service URL")
        if self.registry is not None:
            for url in services:
                self.registry.validate(url)

    async def add(self, request: ScheduledJobCreate) -> ScheduledJob:
        """
        Create a scheduled job and register it if enabled.

        Raises:
            InvalidCronExpression: expression does not parse
            DuplicateJobName: name already used
            InvalidEndpointURL / UnknownScheme: a service URL does not resolve
        """
        parse_cron(request.cron_expression)
        self._validate_services(request.services)

        now = self._clock()
        job = ScheduledJob(
            name=request.name,
            cron_expression=request.cron_expression,
            title=request.title,
            body=request.body,
            notify_type=request.notify_type.value,
            services=list(request.services),
            tags=list(request.tags),
            metadata_=dict(request.metadata),
            template=request.template,
            enabled=request.enabled,
            run_count=0,
            last_status="",
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._session_factory, "add_scheduled_job") as db:
            existing = await db.execute(select(ScheduledJob.id).where(ScheduledJob.name == request.name))
            if existing.scalar_one_or_none() is not None:
                raise DuplicateJobName(f"Scheduled job '{request.name}' already exists", {"name": request.name})
            db.add(job)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateJobName(f"Scheduled job '{request.name}' already exists", {"name": request.name}) from e

        if job.enabled:
            await self._register(job)
        logger.info(f"Added scheduled job: {job.name} (ID: {job.id})")
        return job

    async def schedule_batch(self, requests: List[ScheduledJobCreate]) -> Tuple[List[ScheduledJob], Dict[int, HeraldError]]:
        """
        Add several jobs, collecting per-job failures.

        Returns:
            (created jobs in input order, {input index: error} for rejected jobs)
        """
        created: List[ScheduledJob] = []
        errors: Dict[int, HeraldError] = {}
        for index, request in enumerate(requests):
            try:
                created.append(await self.add(request))
            except HeraldError as e:
                logger.warning(f"Batch scheduled job {index} ('{request.name}') rejected: {e}")
                errors[index] = e
        return created, errors

    async def get(self, job_id: int) -> ScheduledJob:
        async with session_scope(self._session_factory, "get_scheduled_job") as db:
            job = await db.get(ScheduledJob, job_id)
        if job is None:
            raise ScheduledJobNotFound(f"Scheduled job {job_id} not found", {"job_id": job_id})
        return job

    async def list(self, enabled_only: bool = False) -> List[ScheduledJob]:
        query = select(ScheduledJob).order_by(ScheduledJob.id)
        if enabled_only:
            query = query.where(ScheduledJob.enabled.is_(True))
        async with session_scope(self._session_factory, "list_scheduled_jobs") as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update(self, job_id: int, changes: ScheduledJobUpdate) -> ScheduledJob:
        """
        Apply a partial update. Changing cron_expression or enabled re-registers the job.

        Raises:
            ScheduledJobNotFound, InvalidCronExpression, DuplicateJobName, JobValidationError
        """
        values = changes.model_dump(exclude_unset=True)
        if values.get("cron_expression") is not None:
            parse_cron(values["cron_expression"])
        if "services" in values:
            self._validate_services(values["services"] or [])

        async with session_scope(self._session_factory, "update_scheduled_job") as db:
            job = await db.get(ScheduledJob, job_id)
            if job is None:
                raise ScheduledJobNotFound(f"Scheduled job {job_id} not found", {"job_id": job_id})

            new_name = values.get("name")
            if new_name and new_name != job.name:
                clash = await db.execute(select(ScheduledJob.id).where(ScheduledJob.name == new_name))
                if clash.scalar_one_or_none() is not None:
                    raise DuplicateJobName(f"Scheduled job '{new_name}' already exists", {"name": new_name})

            reschedule = False
            for field, value in values.items():
                if value is None and field != "template":
                    continue
                if field == "notify_type":
                    value = value.value if hasattr(value, "value") else value
                if field in ("cron_expression", "enabled") and getattr(job, field) != value:
                    reschedule = True
                setattr(job, "metadata_" if field == "metadata" else field, value)

            if not job.enabled:
                job.next_run = None
            job.updated_at = self._clock()
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateJobName(f"Scheduled job '{job.name}' already exists") from e

        if reschedule:
            await self._unregister(job_id)
            if job.enabled:
                await self._register(job)
        logger.info(f"Updated scheduled job: {job.name} (ID: {job.id})")
        return job

    async def enable(self, job_id: int) -> ScheduledJob:
        return await self.update(job_id, ScheduledJobUpdate(enabled=True))

    async def disable(self, job_id: int) -> ScheduledJob:
        return await self.update(job_id, ScheduledJobUpdate(enabled=False))

    async def delete(self, job_id: int):
        await self._unregister(job_id)
        async with session_scope(self._session_factory, "delete_scheduled_job") as db:
            result = await db.execute(delete(ScheduledJob).where(ScheduledJob.id == job_id))
            await db.commit()
        if result.rowcount == 0:
            raise ScheduledJobNotFound(f"Scheduled job {job_id} not found", {"job_id": job_id})
        logger.info(f"Removed scheduled job {job_id}")

    def preview_runs(self, cron_expression: str, count: int = 5, start: Optional[datetime] = None) -> List[datetime]:
        """Upcoming fire times for an expression, without registering anything."""
        return parse_cron(cron_expression).upcoming(count, to_naive_utc(start) if start else self._clock())
