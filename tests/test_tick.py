import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from jobengine.commands.maintenance import promote_retrying_jobs
from jobengine.commands.schedules import (
    create_cron_job,
    execute_cron_job_now,
    list_executions,
    pause_cron_job,
    resume_cron_job,
    update_cron_job,
)
from jobengine.db.models import CronJob, CronJobExecution, Job, Tenant
from jobengine.domain.errors import HandlerNotFound, ScheduleMisconfigured
from jobengine.domain.states import ExecutionStatus, JobStatus, ScheduleSourceType, TriggerSource
from jobengine.registry import JobTypeRegistry
from jobengine.scheduler.service import SchedulerService
from jobengine.scheduler.tick import run_tick


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


async def _schedule(session_factory, registry, **kwargs):
    kwargs.setdefault("tenant_id", "acme")
    kwargs.setdefault("name", "nightly")
    kwargs.setdefault("cron_expression", "0 2 * * *")
    kwargs.setdefault("job_type", "test:echo")
    kwargs.setdefault("now", utc(2024, 1, 1, 1, 0))
    async with session_factory() as session:
        cron_job = await create_cron_job(session, registry=registry, **kwargs)
        await session.commit()
    return cron_job


async def _reload(session_factory, cron_job_id) -> CronJob:
    async with session_factory() as session:
        return await session.get(CronJob, cron_job_id)


async def _executions(session_factory, cron_job_id) -> list[CronJobExecution]:
    async with session_factory() as session:
        return list((await session.execute(
            select(CronJobExecution)
            .where(CronJobExecution.cron_job_id == cron_job_id)
            .order_by(CronJobExecution.started_at)
        )).scalars().all())


@pytest.mark.asyncio
async def test_create_schedule_computes_first_run(session_factory, registry, tenants):
    cron_job = await _schedule(session_factory, registry)

    assert cron_job.next_run_at == utc(2024, 1, 1, 2, 0)
    assert cron_job.source_type == ScheduleSourceType.USER
    assert cron_job.is_active and not cron_job.is_paused
    assert cron_job.max_failures == 5


@pytest.mark.asyncio
async def test_create_schedule_validation(session_factory, registry, tenants):
    with pytest.raises(ScheduleMisconfigured):
        await _schedule(session_factory, registry, cron_expression="0 2 * *")
    with pytest.raises(ScheduleMisconfigured):
        await _schedule(session_factory, registry, timezone_name="Nowhere/City")
    with pytest.raises(HandlerNotFound):
        await _schedule(session_factory, registry, job_type="test:unknown")


@pytest.mark.asyncio
async def test_tick_fires_due_schedule_once(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.ok
    assert report.fired == 1
    assert report.enqueued == 1

    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at == utc(2024, 1, 2, 2, 0)

    executions = await _executions(session_factory, cron_job.id)
    assert len(executions) == 1
    execution = executions[0]
    assert execution.status == ExecutionStatus.RUNNING
    assert execution.triggered_by == TriggerSource.SCHEDULER
    assert execution.job_id is not None

    async with session_factory() as session:
        job = await session.get(Job, execution.job_id)
    assert job.tenant_id == "acme"
    assert job.status == JobStatus.PENDING
    assert job.meta["cron_job_id"] == str(cron_job.id)
    assert job.meta["cron_execution_id"] == str(execution.id)

    # A redundant tick at the same instant finds nothing due
    again = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)
    assert again.fired == 0
    assert len(await _executions(session_factory, cron_job.id)) == 1


@pytest.mark.asyncio
async def test_tick_skips_missed_runs(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)

    # No tick ran for four days
    report = await run_tick(session_factory, now=utc(2024, 1, 5, 10, 0), registry=registry, broker=broker, alerts=alerts)

    assert report.fired == 1
    assert len(await _executions(session_factory, cron_job.id)) == 1
    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at == utc(2024, 1, 6, 2, 0)


@pytest.mark.asyncio
async def test_tick_before_due_does_nothing(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 1, 59), registry=registry, broker=broker, alerts=alerts)

    assert report.scopes == 0
    assert report.fired == 0
    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at == utc(2024, 1, 1, 2, 0)


@pytest.mark.asyncio
async def test_paused_schedule_advances_without_running(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)
    async with session_factory() as session:
        await pause_cron_job(session, "acme", cron_job.id, reason="maintenance window")
        await session.commit()

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.fired == 0
    assert report.skipped_paused == 1
    assert await _executions(session_factory, cron_job.id) == []
    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at == utc(2024, 1, 2, 2, 0)
    assert stored.paused_reason == "maintenance window"


@pytest.mark.asyncio
async def test_inline_schedule_runs_in_tick(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok")

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.inline_succeeded == 1
    assert report.enqueued == 0

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.output == {"ok": True, "tenant": "acme"}
    assert execution.job_id is None
    assert execution.finished_at is not None

    stored = await _reload(session_factory, cron_job.id)
    assert stored.run_count == 1
    assert stored.success_count == 1
    assert stored.last_status == ExecutionStatus.SUCCESS
    assert stored.last_run_at == utc(2024, 1, 1, 2, 0, 1)

    async with session_factory() as session:
        assert await session.scalar(select(func.count(Job.id))) == 0


@pytest.mark.asyncio
async def test_consecutive_failures_auto_pause_and_alert(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(
        session_factory, registry, job_type="test:inline_fail", cron_expression="* * * * *",
        now=utc(2024, 1, 1, 0, 0, 30),
    )
    received = []
    alerts.subscribe(received.append)

    for minute in range(1, 6):
        report = await run_tick(
            session_factory, now=utc(2024, 1, 1, 0, minute), registry=registry, broker=broker, alerts=alerts,
        )
        assert report.inline_failed == 1

    stored = await _reload(session_factory, cron_job.id)
    assert stored.is_paused
    assert stored.consecutive_failures == 5
    assert stored.failure_count == 5
    assert "5 consecutive failures" in stored.paused_reason
    assert "inline failure" in stored.last_error

    assert len(received) == 1
    alert = received[0]
    assert alert.cron_job_id == cron_job.id
    assert alert.tenant_id == "acme"
    assert alert.consecutive_failures == 5

    # Paused: the next tick only advances it
    report = await run_tick(session_factory, now=utc(2024, 1, 1, 0, 6), registry=registry, broker=broker, alerts=alerts)
    assert report.skipped_paused == 1
    assert len(await _executions(session_factory, cron_job.id)) == 5

    async with session_factory() as session:
        resumed = await resume_cron_job(session, "acme", cron_job.id, now=utc(2024, 1, 1, 0, 6, 30))
        await session.commit()
    assert not resumed.is_paused
    assert resumed.consecutive_failures == 0
    assert resumed.next_run_at == utc(2024, 1, 1, 0, 7)


@pytest.mark.asyncio
async def test_success_resets_failure_streak(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_fail", cron_expression="* * * * *",
                               now=utc(2024, 1, 1, 0, 0, 30))
    for minute in (1, 2):
        await run_tick(session_factory, now=utc(2024, 1, 1, 0, minute), registry=registry, broker=broker, alerts=alerts)

    async with session_factory() as session:
        stored = await session.get(CronJob, cron_job.id)
        stored.job_type = "test:inline_ok"
        await session.commit()

    await run_tick(session_factory, now=utc(2024, 1, 1, 0, 3), registry=registry, broker=broker, alerts=alerts)

    stored = await _reload(session_factory, cron_job.id)
    assert stored.consecutive_failures == 0
    assert stored.failure_count == 2
    assert stored.success_count == 1


@pytest.mark.asyncio
async def test_run_once_deactivates_after_firing(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok", run_once=True)

    await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)
    report = await run_tick(session_factory, now=utc(2024, 1, 9), registry=registry, broker=broker, alerts=alerts)

    assert report.fired == 0
    stored = await _reload(session_factory, cron_job.id)
    assert not stored.is_active
    assert stored.next_run_at is None
    assert len(await _executions(session_factory, cron_job.id)) == 1


@pytest.mark.asyncio
async def test_max_runs_deactivates(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok", cron_expression="* * * * *",
                               max_runs=2, now=utc(2024, 1, 1, 0, 0, 30))

    for minute in (1, 2, 3):
        await run_tick(session_factory, now=utc(2024, 1, 1, 0, minute), registry=registry, broker=broker, alerts=alerts)

    stored = await _reload(session_factory, cron_job.id)
    assert stored.run_count == 2
    assert not stored.is_active
    assert len(await _executions(session_factory, cron_job.id)) == 2


@pytest.mark.asyncio
async def test_missing_handler_fails_execution(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)

    # A deployment that no longer ships the handler
    report = await run_tick(
        session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=JobTypeRegistry(), broker=broker, alerts=alerts,
    )

    assert report.inline_failed == 1
    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.FAILED
    assert "No handler registered" in execution.error


@pytest.mark.asyncio
async def test_queued_execution_closed_by_worker(session_factory, registry, broker, alerts, pool, tenants):
    cron_job = await _schedule(session_factory, registry, configuration={"sku": "A-1"})
    await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    job = await pool.process_next()
    assert job.payload == {"sku": "A-1"}

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.SUCCESS
    assert execution.output["result"] == {"echo": {"sku": "A-1"}}

    stored = await _reload(session_factory, cron_job.id)
    assert stored.run_count == 1
    assert stored.success_count == 1


@pytest.mark.asyncio
async def test_queued_execution_stays_open_while_retrying(session_factory, registry, broker, alerts, pool, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:fail", max_retries=1)
    await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    await pool.process_next()

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.RUNNING

    async with session_factory() as session:
        later = datetime.now(timezone.utc) + timedelta(seconds=10)
        assert await promote_retrying_jobs(session, now=later) == 1
        await session.execute(update(Job).values(available_at=datetime.now(timezone.utc)))
        await session.commit()

    await pool.process_next()

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.FAILED
    assert "upstream unavailable" in execution.error
    stored = await _reload(session_factory, cron_job.id)
    assert stored.consecutive_failures == 1


@pytest.mark.asyncio
async def test_system_schedule_runs_under_system_tenant(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, tenant_id=None, name="token refresh",
                               job_type="system:token_refresh")

    assert cron_job.is_system
    assert cron_job.source_type == ScheduleSourceType.SYSTEM

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.inline_succeeded == 1
    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.tenant_id is None
    assert execution.output["refreshers"] == 0


@pytest.mark.asyncio
async def test_manual_execution_keeps_next_run(session_factory, registry, broker, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok")

    async with session_factory() as session:
        execution = await execute_cron_job_now(session, "acme", cron_job.id, registry=registry, broker=broker)
        items, total = await list_executions(session, "acme", cron_job.id)

    assert execution.triggered_by == TriggerSource.MANUAL
    assert execution.status == ExecutionStatus.SUCCESS
    assert total == 1
    assert items[0].id == execution.id

    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at == utc(2024, 1, 1, 2, 0)


@pytest.mark.asyncio
async def test_schedules_of_tenants_are_ticked_separately(session_factory, registry, broker, alerts, tenants):
    await _schedule(session_factory, registry, tenant_id="acme", job_type="test:inline_ok")
    await _schedule(session_factory, registry, tenant_id="globex", job_type="test:inline_ok")
    await _schedule(session_factory, registry, tenant_id="globex", name="other", job_type="test:inline_ok")

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.scopes == 2
    assert report.fired == 3
    assert report.as_dict()["inlineSucceeded"] == 3


@pytest.mark.asyncio
async def test_scheduler_service_ticks_in_background(session_factory, registry, broker, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok")
    async with session_factory() as session:
        await session.execute(
            update(CronJob).where(CronJob.id == cron_job.id).values(next_run_at=datetime.now(timezone.utc))
        )
        await session.commit()

    service = SchedulerService(0.05, session_factory, registry=registry, broker=broker)
    await service.start()
    try:
        for _ in range(100):
            if await _executions(session_factory, cron_job.id):
                break
            await asyncio.sleep(0.05)
    finally:
        await service.stop()

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.SUCCESS
    stored = await _reload(session_factory, cron_job.id)
    assert stored.next_run_at > datetime.now(timezone.utc)


async def _deactivate_tenant(session_factory, tenant_id):
    async with session_factory() as session:
        await session.execute(update(Tenant).where(Tenant.id == tenant_id).values(is_active=False))
        await session.commit()


@pytest.mark.asyncio
async def test_enqueue_rejection_closes_execution_as_failed(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry)
    await _deactivate_tenant(session_factory, "acme")

    report = await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    assert report.errors == []
    assert report.fired == 1
    assert report.enqueued == 0

    [execution] = await _executions(session_factory, cron_job.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.job_id is None
    assert execution.finished_at is not None
    assert "TenantError" in execution.error

    stored = await _reload(session_factory, cron_job.id)
    assert stored.run_count == 1
    assert stored.failure_count == 1
    assert stored.consecutive_failures == 1
    assert stored.last_status == ExecutionStatus.FAILED
    assert stored.next_run_at == utc(2024, 1, 2, 2, 0)

    async with session_factory() as session:
        assert await session.scalar(select(func.count(Job.id))) == 0


@pytest.mark.asyncio
async def test_enqueue_rejections_auto_pause_schedule(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, cron_expression="* * * * *", now=utc(2024, 1, 1, 0, 0, 30))
    await _deactivate_tenant(session_factory, "acme")

    for minute in range(1, 6):
        await run_tick(session_factory, now=utc(2024, 1, 1, 0, minute), registry=registry, broker=broker, alerts=alerts)

    stored = await _reload(session_factory, cron_job.id)
    assert stored.is_paused
    assert stored.consecutive_failures == 5
    executions = await _executions(session_factory, cron_job.id)
    assert [e.status for e in executions] == [ExecutionStatus.FAILED] * 5


@pytest.mark.asyncio
async def test_manual_execute_with_enqueue_rejection(session_factory, registry, broker, tenants):
    cron_job = await _schedule(session_factory, registry)
    await _deactivate_tenant(session_factory, "acme")

    async with session_factory() as session:
        execution = await execute_cron_job_now(session, "acme", cron_job.id, registry=registry, broker=broker)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.triggered_by == TriggerSource.MANUAL
    stored = await _reload(session_factory, cron_job.id)
    assert stored.consecutive_failures == 1


@pytest.mark.asyncio
async def test_update_schedule_keeps_history(session_factory, registry, broker, alerts, tenants):
    cron_job = await _schedule(session_factory, registry, job_type="test:inline_ok")
    await run_tick(session_factory, now=utc(2024, 1, 1, 2, 0, 1), registry=registry, broker=broker, alerts=alerts)

    async with session_factory() as session:
        updated = await update_cron_job(
            session, "acme", cron_job.id,
            name="twice daily", cron_expression="0  6,18 * * *", timezone_name="Europe/Amsterdam",
            configuration={"store": 7}, registry=registry, now=utc(2024, 1, 1, 3, 0),
        )
        await session.commit()

    assert updated.name == "twice daily"
    assert updated.cron_expression == "0 6,18 * * *"
    assert updated.configuration == {"store": 7}
    # 06:00 in Amsterdam is 05:00 UTC in winter
    assert updated.next_run_at == utc(2024, 1, 1, 5, 0)
    assert updated.run_count == 1
    assert len(await _executions(session_factory, cron_job.id)) == 1


@pytest.mark.asyncio
async def test_update_schedule_validation(session_factory, registry, tenants):
    cron_job = await _schedule(session_factory, registry)

    async with session_factory() as session:
        with pytest.raises(ScheduleMisconfigured):
            await update_cron_job(session, "acme", cron_job.id, cron_expression="61 * * * *", registry=registry)
        with pytest.raises(ScheduleMisconfigured):
            await update_cron_job(session, "acme", cron_job.id, timezone_name="Nowhere/City", registry=registry)
        with pytest.raises(HandlerNotFound):
            await update_cron_job(session, "acme", cron_job.id, job_type="test:unknown", registry=registry)

        # Only the fields given change; next_run_at stays put
        updated = await update_cron_job(session, "acme", cron_job.id, description="nightly sync", registry=registry)
        assert updated.next_run_at == utc(2024, 1, 1, 2, 0)
        assert updated.cron_expression == "0 2 * * *"
