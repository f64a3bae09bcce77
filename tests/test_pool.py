import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from jobengine.commands.cancel_job import cancel_job
from jobengine.commands.enqueue_job import enqueue_job
from jobengine.commands.maintenance import reap_stale_jobs
from jobengine.db.models import Job
from jobengine.domain.states import JobStatus
from jobengine.registry import JobTypeRegistry
from jobengine.workers.pool import WorkerPool

from tests.conftest import SlowHandler


async def _enqueue(session_factory, registry, broker, job_type="test:echo", tenant_id="acme", **kwargs):
    async with session_factory() as session:
        return await enqueue_job(session, tenant_id, job_type, registry=registry, broker=broker, **kwargs)


async def _load(session_factory, job_id) -> Job:
    async with session_factory() as session:
        return await session.get(Job, job_id)


@pytest.mark.asyncio
async def test_process_next_completes_job(session_factory, registry, broker, pool, tenants):
    job = await _enqueue(session_factory, registry, broker, payload={"n": 1})

    claimed = await pool.process_next()
    assert claimed.id == job.id

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"echo": {"n": 1}}
    assert stored.progress == 100
    assert stored.progress_message == "halfway"
    assert stored.duration_ms is not None
    assert stored.finished_at is not None
    assert stored.claimed_by == "test-worker"


@pytest.mark.asyncio
async def test_process_next_with_empty_queue(pool, tenants):
    assert await pool.process_next() is None


@pytest.mark.asyncio
async def test_transient_failure_schedules_retry(session_factory, registry, broker, pool, tenants):
    job = await _enqueue(session_factory, registry, broker, job_type="test:fail")
    before = datetime.now(timezone.utc)

    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.RETRYING
    assert stored.attempt_count == 1
    assert stored.error == "TransientExecutionError: upstream unavailable"
    assert before + timedelta(seconds=5) <= stored.next_attempt_at <= datetime.now(timezone.utc) + timedelta(seconds=5)


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried(session_factory, registry, broker, pool, tenants):
    job = await _enqueue(session_factory, registry, broker, job_type="test:boom")

    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.RETRYING
    assert stored.error_type == "RuntimeError"


@pytest.mark.asyncio
async def test_permanent_failure(session_factory, registry, broker, pool, tenants):
    job = await _enqueue(session_factory, registry, broker, job_type="test:permanent")

    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.attempt_count == 1


@pytest.mark.asyncio
async def test_job_without_handler_fails(session_factory, registry, broker, tenants):
    job = await _enqueue(session_factory, registry, broker)
    bare = WorkerPool(session_factory, registry=JobTypeRegistry(), broker=broker, worker_id="bare")

    await bare.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_type == "HandlerNotFound"


@pytest.mark.asyncio
async def test_handler_stops_on_cancel_request(session_factory, registry, broker, pool, tenants):
    @registry.job_type("test:cancel_me")
    async def cancel_me(job, context):
        # The user cancels while the job runs
        async with context.session() as session:
            await cancel_job(session, job.tenant_id, job.id)
            await session.commit()
        await context.raise_if_cancelled()
        return {"unreachable": True}

    job = await _enqueue(session_factory, registry, broker, job_type="test:cancel_me")

    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.result is None


@pytest.mark.asyncio
async def test_result_discarded_when_claim_lost(session_factory, registry, broker, pool, tenants):
    @registry.job_type("test:slow_worker")
    async def slow_worker(job, context):
        # The reaper decides this worker is gone before it finishes
        async with context.session() as session:
            await reap_stale_jobs(session, now=datetime.now(timezone.utc) + timedelta(seconds=1), stale_after_seconds=0)
            await session.commit()
        return {"late": True}

    job = await _enqueue(session_factory, registry, broker, job_type="test:slow_worker")

    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempt_count == 1
    assert stored.result is None


@pytest.mark.asyncio
async def test_non_dict_result_is_wrapped(session_factory, registry, broker, pool, tenants):
    @registry.job_type("test:count")
    async def count(job, context):
        return 42

    job = await _enqueue(session_factory, registry, broker, job_type="test:count")
    await pool.process_next()

    stored = await _load(session_factory, job.id)
    assert stored.result == {"value": 42}


@pytest.mark.asyncio
async def test_fill_slots_respects_concurrency(session_factory, registry, broker, pool, tenants):
    SlowHandler.release = asyncio.Event()
    SlowHandler.started = 0
    for _ in range(3):
        await _enqueue(session_factory, registry, broker, job_type="test:slow")

    pool.running = True
    launched = await pool._fill_slots()
    await asyncio.sleep(0.05)

    assert launched == 2
    assert pool.inflight == 2
    assert SlowHandler.started == 2

    async with session_factory() as session:
        running = await session.scalar(select(func.count(Job.id)).where(Job.status == JobStatus.RUNNING))
    assert running == 2

    SlowHandler.release.set()
    await pool.stop()
    assert pool.inflight == 0

    async with session_factory() as session:
        statuses = sorted((await session.execute(select(Job.status))).scalars().all())
    assert statuses == [JobStatus.COMPLETED, JobStatus.COMPLETED, JobStatus.PENDING]


@pytest.mark.asyncio
async def test_pool_loop_drains_queue(session_factory, registry, broker, pool, tenants):
    jobs = [await _enqueue(session_factory, registry, broker, payload={"i": i}) for i in range(3)]

    await pool.start()
    try:
        for _ in range(100):
            async with session_factory() as session:
                done = await session.scalar(
                    select(func.count(Job.id)).where(Job.status == JobStatus.COMPLETED)
                )
            if done == len(jobs):
                break
            await asyncio.sleep(0.05)
    finally:
        await pool.stop()

    assert done == len(jobs)


@pytest.mark.asyncio
async def test_run_maintenance_reaps_and_promotes(session_factory, registry, broker, pool, tenants):
    retrying = await _enqueue(session_factory, registry, broker)
    stale = await _enqueue(session_factory, registry, broker)
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    async with session_factory() as session:
        await session.execute(
            update(Job).where(Job.id == retrying.id).values(status=JobStatus.RETRYING, next_attempt_at=past)
        )
        await session.execute(
            update(Job).where(Job.id == stale.id).values(
                status=JobStatus.RUNNING, started_at=past, heartbeat_at=past, claimed_by="gone",
            )
        )
        await session.commit()

    assert await pool.run_maintenance() == {"reaped": 1, "promoted": 1}

    assert (await _load(session_factory, retrying.id)).status == JobStatus.PENDING
    assert (await _load(session_factory, stale.id)).status == JobStatus.PENDING
