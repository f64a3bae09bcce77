"""
One scheduler tick: fire every due schedule exactly once.

The tick is a plain function, safe to call from several processes at the
same time (cron, a Kubernetes CronJob, the embedded SchedulerService or
POST /admin/tick). Two guards make redundant ticks harmless:

1. a per-tenant advisory lock, so only one process works a tenant at a time;
2. advance-on-read: next_run_at is moved forward with an UPDATE conditional on
   its old value before anything runs. Whoever loses that update did not fire.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.commands.enqueue_job import enqueue_job
from jobengine.commands.tenants import ensure_system_tenant
from jobengine.db.models import CronJob, CronJobExecution
from jobengine.domain.cron import compute_next_run
from jobengine.domain.errors import HandlerNotFound, JobError, ScheduleMisconfigured
from jobengine.domain.models import JobSnapshot
from jobengine.domain.states import ExecutionStatus, JobStatus, TriggerSource
from jobengine.registry import JobTypeRegistry, get_registry
from jobengine.scheduler.alerts import ScheduleAlerts, discard_alerts, dispatch_alerts
from jobengine.scheduler.broker import JobBroker, broker as default_broker
from jobengine.scheduler.outcomes import record_execution_outcome
from jobengine.settings import settings
from jobengine.tenancy import tenant_context
from jobengine.utils.locking import scope_lock
from jobengine.api.v1.metrics import SCHEDULE_FIRINGS, TICK_DURATION

logger = logging.getLogger(__name__)

SYSTEM_SCOPE = "system"

@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    scopes: int = 0
    skipped_scopes: list[str] = field(default_factory=list)
    fired: int = 0
    skipped_paused: int = 0
    lost_races: int = 0
    inline_succeeded: int = 0
    inline_failed: int = 0
    enqueued: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "scopes": self.scopes,
            "skippedScopes": list(self.skipped_scopes),
            "fired": self.fired,
            "skippedPaused": self.skipped_paused,
            "lostRaces": self.lost_races,
            "inlineSucceeded": self.inline_succeeded,
            "inlineFailed": self.inline_failed,
            "enqueued": self.enqueued,
            "errors": list(self.errors),
        }

def session_factory_for(session: AsyncSession) -> async_sessionmaker:
    """A sessionmaker on the same engine as `session`."""
    return async_sessionmaker(bind=session.bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)

async def run_tick(
    session_factory: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
    registry: Optional[JobTypeRegistry] = None,
    broker: Optional[JobBroker] = None,
    alerts: Optional[ScheduleAlerts] = None,
) -> TickReport:
    if session_factory is None:
        from jobengine.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    registry = registry if registry is not None else get_registry()
    broker = broker or default_broker

    report = TickReport(started_at=now)
    clock = time.monotonic()

    async with session_factory() as session:
        rows = await session.execute(
            select(CronJob.tenant_id)
            .where(CronJob.is_active.is_(True), CronJob.next_run_at <= now)
            .distinct()
        )
        tenant_ids = [row[0] for row in rows]

    for tenant_id in tenant_ids:
        scope = tenant_id or SYSTEM_SCOPE
        report.scopes += 1
        try:
            async with scope_lock(session_factory, scope) as acquired:
                if not acquired:
                    logger.info("Tick for scope %s already running elsewhere; skipped", scope)
                    report.skipped_scopes.append(scope)
                    continue
                with tenant_context(tenant_id or settings.SYSTEM_TENANT_ID):
                    await _tick_scope(session_factory, tenant_id, now, registry, broker, alerts, report)
        except Exception as e:
            logger.error(f"Tick failed for scope {scope}: {e}", exc_info=True)
            report.errors.append(f"{scope}: {e}")

    report.finished_at = datetime.now(timezone.utc)
    TICK_DURATION.observe(time.monotonic() - clock)
    logger.info(
        "Tick done: scopes=%s fired=%s paused=%s lost=%s enqueued=%s errors=%s",
        report.scopes, report.fired, report.skipped_paused, report.lost_races,
        report.enqueued, len(report.errors),
    )
    return report

async def _tick_scope(
    session_factory: async_sessionmaker,
    tenant_id: Optional[str],
    now: datetime,
    registry: JobTypeRegistry,
    broker: JobBroker,
    alerts: Optional[ScheduleAlerts],
    report: TickReport,
) -> None:
    async with session_factory() as session:
        owner = CronJob.tenant_id.is_(None) if tenant_id is None else CronJob.tenant_id == tenant_id
        due_ids = (await session.execute(
            select(CronJob.id)
            .where(owner, CronJob.is_active.is_(True), CronJob.next_run_at <= now)
            .order_by(CronJob.next_run_at.asc(), CronJob.id.asc())
        )).scalars().all()

        if tenant_id is None and due_ids:
            await ensure_system_tenant(session)
            await session.commit()

    for cron_job_id in due_ids:
        try:
            await _fire_if_due(session_factory, cron_job_id, now, registry, broker, alerts, report)
        except Exception as e:
            # One broken schedule must not hold up the rest of the tenant
            logger.error(f"Failed to fire schedule {cron_job_id}: {e}", exc_info=True)
            report.errors.append(f"{cron_job_id}: {e}")

async def _fire_if_due(
    session_factory: async_sessionmaker,
    cron_job_id: UUID,
    now: datetime,
    registry: JobTypeRegistry,
    broker: JobBroker,
    alerts: Optional[ScheduleAlerts],
    report: TickReport,
) -> None:
    async with session_factory() as session:
        cron_job = await session.get(CronJob, cron_job_id, populate_existing=True)
        if not cron_job or not cron_job.is_active or cron_job.next_run_at is None or cron_job.next_run_at > now:
            return

        previous = cron_job.next_run_at
        values: dict[str, Any] = {"updated_at": now}
        try:
            values["next_run_at"] = compute_next_run(cron_job.cron_expression, cron_job.timezone, now, previous)
        except ScheduleMisconfigured as e:
            await _pause_misconfigured(session, cron_job, previous, str(e), now)
            report.errors.append(f"{cron_job_id}: {e}")
            return

        if cron_job.run_once and not cron_job.is_paused:
            values.update(next_run_at=None, is_active=False)

        advanced = await session.execute(
            update(CronJob)
            .where(CronJob.id == cron_job_id, CronJob.next_run_at == previous, CronJob.is_active.is_(True))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if advanced.rowcount != 1:
            await session.rollback()
            report.lost_races += 1
            SCHEDULE_FIRINGS.labels(outcome="lost_race").inc()
            logger.debug("Schedule %s was fired by another tick", cron_job_id)
            return

        if cron_job.is_paused:
            await session.commit()
            report.skipped_paused += 1
            SCHEDULE_FIRINGS.labels(outcome="skipped_paused").inc()
            logger.debug("Schedule %s is paused; advanced to %s", cron_job_id, values["next_run_at"])
            return

        execution = CronJobExecution(
            cron_job_id=cron_job.id,
            tenant_id=cron_job.tenant_id,
            triggered_by=TriggerSource.SCHEDULER,
            status=ExecutionStatus.RUNNING,
            started_at=now,
        )
        session.add(execution)
        # The firing is on record before anything runs
        await session.commit()

        report.fired += 1
        SCHEDULE_FIRINGS.labels(outcome="fired").inc()
        logger.info("Firing schedule %s (%s, type=%s)", cron_job.name, cron_job.id, cron_job.job_type)

        outcome = await dispatch_execution(
            session, session_factory, cron_job, execution, registry=registry, broker=broker, alerts=alerts,
        )
        if outcome == "enqueued":
            report.enqueued += 1
        elif outcome == ExecutionStatus.SUCCESS:
            report.inline_succeeded += 1
        else:
            report.inline_failed += 1

async def _pause_misconfigured(
    session: AsyncSession, cron_job: CronJob, previous: datetime, error: str, now: datetime
) -> None:
    await session.execute(
        update(CronJob)
        .where(CronJob.id == cron_job.id, CronJob.next_run_at == previous)
        .values(is_paused=True, paused_reason=f"Misconfigured: {error}", last_error=error, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.error("Schedule %s paused: %s", cron_job.id, error)

async def dispatch_execution(
    session: AsyncSession,
    session_factory: async_sessionmaker,
    cron_job: CronJob,
    execution: CronJobExecution,
    registry: Optional[JobTypeRegistry] = None,
    broker: Optional[JobBroker] = None,
    alerts: Optional[ScheduleAlerts] = None,
) -> str:
    """
    Runs or enqueues the work behind an open execution.

    Inline types run here and close the execution straight away. Queued
    types get a Job whose metadata points back at the execution; the worker
    closes it when the job reaches a terminal state. Returns "enqueued" or
    the closed execution status.
    """
    registry = registry if registry is not None else get_registry()
    broker = broker or default_broker
    # A rollback below expires both instances
    execution_id, cron_job_id, job_type = execution.id, cron_job.id, cron_job.job_type

    try:
        handler = registry.create(job_type)
    except HandlerNotFound as e:
        return await _close(session, execution_id, False, None, str(e), alerts)

    owner = cron_job.tenant_id or settings.SYSTEM_TENANT_ID
    metadata = {
        "cron_job_id": str(cron_job.id),
        "cron_execution_id": str(execution.id),
        "source_type": str(cron_job.source_type),
        "source_id": cron_job.source_id,
        "triggered_by": str(execution.triggered_by),
    }

    if handler.inline:
        from jobengine.workers.context import InlineJobContext

        snapshot = JobSnapshot(
            id=execution.id,
            tenant_id=owner,
            type=cron_job.job_type,
            payload=dict(cron_job.configuration or {}),
            priority=cron_job.priority,
            status=JobStatus.RUNNING,
            max_retries=0,
            metadata=metadata,
            created_at=execution.started_at,
            started_at=execution.started_at,
        )
        context = InlineJobContext(session_factory, snapshot, handler)
        try:
            with tenant_context(owner):
                result = await handler.execute(snapshot, context)
        except Exception as e:
            logger.warning("Inline job %s for schedule %s failed: %s", job_type, cron_job_id, e)
            return await _close(session, execution_id, False, None, f"{type(e).__name__}: {e}", alerts)
        return await _close(session, execution_id, True, result or {}, None, alerts)

    try:
        job = await enqueue_job(
            session,
            tenant_id=owner,
            job_type=cron_job.job_type,
            payload=dict(cron_job.configuration or {}),
            priority=cron_job.priority,
            max_retries=cron_job.max_retries,
            metadata=metadata,
            registry=registry,
            commit=False,
        )
        await session.execute(
            update(CronJobExecution)
            .where(CronJobExecution.id == execution.id)
            .values(job_id=job.id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except JobError as e:
        await session.rollback()
        logger.error("Could not enqueue %s for schedule %s: %s", job_type, cron_job_id, e)
        return await _close(session, execution_id, False, None, f"{type(e).__name__}: {e}", alerts)

    broker.notify(owner)
    return "enqueued"

async def _close(
    session: AsyncSession,
    execution_id: UUID,
    success: bool,
    output: Optional[dict[str, Any]],
    error: Optional[str],
    alerts: Optional[ScheduleAlerts],
) -> ExecutionStatus:
    try:
        await record_execution_outcome(session, execution_id, success, output=output, error=error)
        await session.commit()
    except Exception:
        discard_alerts(session)
        raise
    await dispatch_alerts(session, alerts)
    return ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED
