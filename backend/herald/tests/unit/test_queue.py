import asyncio
from datetime import timedelta

import pytest

from herald.config import QueueConfig
from herald.database import create_engine, create_session_factory
from herald.models import JobStatus, NotifyType
from herald.schemas import QueueJobCreate, ScheduledJobCreate
from herald.services.queue import NotificationQueue, backoff_delay
from herald.utils.errors import (
    InvalidJobTransition,
    JobNotFound,
    JobValidationError,
    QueueBackendError,
    UnknownScheme,
)


def job_request(**kwargs):
    kwargs.setdefault("title", "Backup")
    kwargs.setdefault("body", "nightly backup finished")
    kwargs.setdefault("services", ["fake://ops"])
    return QueueJobCreate(**kwargs)


async def test_enqueue_applies_defaults(queue):
    job = await queue.enqueue(job_request(metadata={"env": "prod"}, tags=["backup"]))

    stored = await queue.get(job.id)
    assert stored.status == JobStatus.PENDING.value
    assert stored.priority == 1
    assert stored.max_retries == 3
    assert stored.retry_count == 0
    assert stored.retry_delay == timedelta(seconds=60)
    assert stored.metadata_ == {"env": "prod"}
    assert stored.tags == ["backup"]
    assert stored.services == ["fake://ops"]
    assert stored.next_retry_at is None


async def test_enqueue_then_get_preserves_payload(queue, scheduler):
    source = await scheduler.add(ScheduledJobCreate(
        name="nightly", cron_expression="0 2 * * *", title="x", services=["fake://ops"],
    ))
    request = job_request(
        scheduled_id=source.id,
        title="Backup: db1",
        body="line one\nline two",
        notify_type=NotifyType.WARNING,
        services=["fake://ops", "fake://bob:pw@pager?limit=10"],
        tags=["backup", "db"],
        metadata={"env": "prod", "count": "3"},
        template="backup-status",
        priority=4,
        max_retries=2,
        retry_delay=timedelta(seconds=90),
    )
    job = await queue.enqueue(request)

    stored = await queue.get(job.id)
    assert stored.scheduled_id == source.id
    assert stored.title == request.title
    assert stored.body == request.body
    assert stored.notify_type == NotifyType.WARNING.value
    assert stored.services == request.services
    assert stored.tags == request.tags
    assert stored.metadata_ == request.metadata
    assert stored.template == request.template
    assert stored.priority == 4
    assert stored.max_retries == 2
    assert stored.retry_delay == timedelta(seconds=90)


async def test_enqueue_keeps_explicit_retry_policy(queue):
    job = await queue.enqueue(job_request(priority=7, max_retries=0, retry_delay=timedelta(milliseconds=1500)))
    stored = await queue.get(job.id)
    assert stored.priority == 7
    assert stored.max_retries == 0
    assert stored.retry_delay == timedelta(milliseconds=1500)


async def test_enqueue_rejects_bad_input(queue):
    with pytest.raises(UnknownScheme):
        await queue.enqueue(job_request(services=["carrier-pigeon://coop"]))
    with pytest.raises(JobValidationError):
        await queue.enqueue(job_request(retry_delay=timedelta(0)))
    assert (await queue.stats())["total"] == 0


async def test_enqueue_batch_collects_errors(queue):
    jobs, errors = await queue.enqueue_batch([
        job_request(title="one"),
        job_request(services=["nope://x"]),
        job_request(title="three"),
    ])
    assert [job.title for job in jobs] == ["one", "three"]
    assert list(errors) == [1]


async def test_lease_orders_by_priority_then_age(queue, clock):
    low = await queue.enqueue(job_request(title="P1", priority=1))
    clock.advance(seconds=1)
    high = await queue.enqueue(job_request(title="P10", priority=10))

    leased = await queue.lease_due(2)
    assert [job.id for job in leased] == [high.id, low.id]
    assert all(job.status == JobStatus.RUNNING.value for job in leased)
    assert all(job.started_at == clock() for job in leased)


async def test_lease_skips_running_and_respects_limit(queue):
    for index in range(3):
        await queue.enqueue(job_request(title=f"job {index}"))

    assert len(await queue.lease_due(2)) == 2
    assert len(await queue.lease_due(5)) == 1
    assert await queue.lease_due(5) == []


async def test_concurrent_lease_never_double_leases(db_engine, queue_config, registry, clock):
    queue = NotificationQueue(create_session_factory(db_engine), queue_config, registry=registry, clock=clock)
    expected = {(await queue.enqueue(job_request(title=f"job {index}"))).id for index in range(3)}

    # Second worker with its own engine, as another process would have
    other_engine = create_engine(db_engine.url.render_as_string(hide_password=False))
    try:
        other = NotificationQueue(create_session_factory(other_engine), queue_config, registry=registry, clock=clock)
        first, second = await asyncio.gather(queue.lease_due(5), other.lease_due(5))
    finally:
        await other_engine.dispose()

    first_ids = {job.id for job in first}
    second_ids = {job.id for job in second}
    assert first_ids | second_ids == expected
    assert first_ids & second_ids == set()


async def test_retry_backoff_doubles_until_failed(queue, clock):
    job = await queue.enqueue(job_request(max_retries=5, retry_delay=timedelta(minutes=1)))

    delays = []
    while True:
        [leased] = await queue.lease_due(1)
        assert leased.id == job.id
        if not leased.attempts_left:
            failed = await queue.transition(job.id, JobStatus.FAILED, "All services failed")
            break
        retrying = await queue.transition(job.id, JobStatus.RETRYING, "All services failed")
        delays.append(retrying.next_retry_at - clock())

        # Not due a moment before next_retry_at
        clock.set(retrying.next_retry_at - timedelta(seconds=1))
        assert await queue.lease_due(1) == []
        clock.set(retrying.next_retry_at)

    assert delays == [timedelta(minutes=m) for m in (1, 2, 4, 8, 16)]
    assert failed.status == JobStatus.FAILED.value
    assert failed.retry_count == 5
    assert failed.completed_at == clock()
    assert failed.error_message == "All services failed"


def test_backoff_delay_is_capped():
    base = timedelta(seconds=10)
    assert backoff_delay(base, 1, 64) == base
    assert backoff_delay(base, 3, 64) == base * 4
    assert backoff_delay(base, 7, 64) == base * 64
    assert backoff_delay(base, 30, 64) == base * 64


async def test_completed_keeps_partial_success_message(queue, clock):
    job = await queue.enqueue(job_request())
    await queue.lease_due(1)
    clock.advance(seconds=2)
    done = await queue.transition(job.id, JobStatus.COMPLETED, "Partial success: 1/2 services failed: b: down")

    assert done.status == JobStatus.COMPLETED.value
    assert done.retry_count == 0
    assert done.completed_at == clock()
    assert done.error_message.startswith("Partial success")


async def test_invalid_transitions(queue):
    job = await queue.enqueue(job_request(max_retries=0))

    with pytest.raises(InvalidJobTransition):
        await queue.transition(job.id, JobStatus.COMPLETED)
    with pytest.raises(InvalidJobTransition):
        await queue.transition(job.id, JobStatus.RETRYING)

    await queue.lease_due(1)
    with pytest.raises(InvalidJobTransition):
        await queue.transition(job.id, JobStatus.RETRYING)  # no retries allowed

    await queue.transition(job.id, JobStatus.FAILED, "boom")
    for status in JobStatus:
        with pytest.raises(InvalidJobTransition):
            await queue.transition(job.id, status)

    with pytest.raises(JobNotFound):
        await queue.transition(999, JobStatus.RUNNING)


async def test_stats_list_and_delete(queue):
    first = await queue.enqueue(job_request(title="a"))
    await queue.enqueue(job_request(title="b"))
    await queue.lease_due(1)

    stats = await queue.stats()
    assert stats["pending"] == 1
    assert stats["running"] == 1
    assert stats["retrying"] == 0
    assert stats["total"] == 2

    running = await queue.list_jobs(JobStatus.RUNNING)
    assert [job.id for job in running] == [first.id]

    await queue.delete(first.id)
    with pytest.raises(JobNotFound):
        await queue.get(first.id)
    with pytest.raises(JobNotFound):
        await queue.delete(first.id)


async def test_purge_removes_only_old_terminal_jobs(queue, clock):
    old = await queue.enqueue(job_request(title="old"))
    await queue.lease_due(1)
    await queue.transition(old.id, JobStatus.COMPLETED)

    clock.advance(days=10)
    waiting = await queue.enqueue(job_request(title="waiting"))
    recent = await queue.enqueue(job_request(title="recent", priority=5))
    await queue.lease_due(1)
    await queue.transition(recent.id, JobStatus.FAILED, "nope")

    assert await queue.purge(timedelta(days=7)) == 1
    remaining = {job.id for job in await queue.list_jobs()}
    assert remaining == {waiting.id, recent.id}


async def test_backend_failure_is_wrapped(tmp_path, registry):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        queue = NotificationQueue(create_session_factory(engine), QueueConfig(), registry=registry)
        with pytest.raises(QueueBackendError):
            await queue.enqueue(job_request())
        with pytest.raises(QueueBackendError):
            await queue.lease_due(1)
    finally:
        await engine.dispose()
