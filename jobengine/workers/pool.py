import asyncio
import logging
import os
import socket
import time
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from jobengine.commands.claim_job import claim_next_job
from jobengine.commands.complete_job import complete_job
from jobengine.commands.fail_job import fail_job, mark_cancelled
from jobengine.commands.maintenance import promote_retrying_jobs, reap_stale_jobs
from jobengine.db.models import Job
from jobengine.domain.errors import ClaimLostError, JobCancelledError
from jobengine.domain.models import JobSnapshot
from jobengine.domain.states import JobStatus
from jobengine.registry import JobTypeRegistry, get_registry
from jobengine.scheduler.alerts import ScheduleAlerts, discard_alerts, dispatch_alerts
from jobengine.scheduler.broker import JobBroker, broker as default_broker
from jobengine.settings import settings
from jobengine.tenancy import tenant_context
from jobengine.workers.context import JobContext
from jobengine.api.v1.metrics import JOBS_INFLIGHT, QUEUE_DEPTH

logger = logging.getLogger(__name__)

def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"

class WorkerPool:
    """
    Claims and runs jobs inside this process.

    At most `concurrency` handlers run at once; the per-tenant cap is
    enforced by the claim query. The pool wakes on a broker signal or every
    `poll_interval` seconds, whichever comes first, so a lost signal only
    delays pickup.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        registry: Optional[JobTypeRegistry] = None,
        concurrency: Optional[int] = None,
        broker: Optional[JobBroker] = None,
        poll_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
        maintenance_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        shutdown_timeout: Optional[float] = None,
        alerts: Optional[ScheduleAlerts] = None,
    ):
        if session_factory is None:
            from jobengine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.registry = registry if registry is not None else get_registry()
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.broker = broker or default_broker
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self.worker_id = worker_id or default_worker_id()
        self.maintenance_interval = (
            maintenance_interval if maintenance_interval is not None else settings.MAINTENANCE_INTERVAL_SECONDS
        )
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.WORKER_HEARTBEAT_INTERVAL_SECONDS
        )
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else settings.WORKER_SHUTDOWN_TIMEOUT_SECONDS
        )
        self.alerts = alerts

        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._last_maintenance = 0.0

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self):
        self.running = True
        self._task = asyncio.create_task(self.run())
        logger.info("Worker pool %s started (concurrency=%s)", self.worker_id, self.concurrency)

    async def stop(self):
        """Stops claiming, then waits up to `shutdown_timeout` for running handlers."""
        self.running = False
        self.broker.notify()
        if self._task:
            await self._task
            self._task = None

        if self._inflight:
            logger.info("Waiting for %s in-flight job(s) to finish", len(self._inflight))
            _, pending = await asyncio.wait(set(self._inflight), timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                # Left as running; the reaper hands them out again
                logger.warning("%s job(s) still running at shutdown were abandoned", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker pool %s stopped", self.worker_id)

    async def run(self):
        self.running = True
        try:
            while self.running:
                try:
                    await self._maybe_run_maintenance()
                    await self.promote_due()
                    launched = await self._fill_slots()

                    if len(self._inflight) >= self.concurrency:
                        await asyncio.wait(
                            set(self._inflight), timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED
                        )
                    elif not launched:
                        await self.broker.wait(self.poll_interval)
                except Exception as e:
                    logger.exception("Error in worker pool loop %s: %s", self.worker_id, e)
                    await asyncio.sleep(min(self.poll_interval, 5.0))
        finally:
            logger.info("Worker pool loop %s exited", self.worker_id)

    async def _fill_slots(self) -> int:
        launched = 0
        while self.running and len(self._inflight) < self.concurrency:
            job = await self.claim()
            if job is None:
                break
            task = asyncio.create_task(self.execute(job))
            self._inflight.add(task)
            task.add_done_callback(self._on_task_done)
            launched += 1
        return launched

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Job task crashed: %s", task.exception(), exc_info=task.exception())
        # A free slot may be refilled right away
        self.broker.notify()

    async def claim(self) -> Optional[JobSnapshot]:
        async with self.session_factory() as session:
            job = await claim_next_job(session, self.worker_id)
            if job is None:
                await session.rollback()
                return None
            snapshot = JobSnapshot.from_record(job)
            await session.commit()
            return snapshot

    async def process_next(self) -> Optional[JobSnapshot]:
        """Claims one job and runs it to the end. Returns what was claimed."""
        job = await self.claim()
        if job is not None:
            await self.execute(job)
        return job

    async def execute(self, job: JobSnapshot) -> None:
        with tenant_context(job.tenant_id):
            JOBS_INFLIGHT.inc()
            heartbeat_task: Optional[asyncio.Task] = None
            started = time.monotonic()
            try:
                try:
                    handler = self.registry.create(job.type)
                    context = JobContext(self.session_factory, job, handler)
                    heartbeat_task = asyncio.create_task(self._heartbeat_loop(context))
                    result = await handler.execute(job, context)
                except ClaimLostError as e:
                    logger.warning("Job %s lost its claim while running; result discarded: %s", job.id, e)
                    return
                except JobCancelledError:
                    logger.info("Job %s stopped on cancel request", job.id)
                    await self._settle(mark_cancelled, job.id, job.claim_token)
                    return
                except Exception as e:
                    logger.error(f"Job {job.id} ({job.type}) failed: {type(e).__name__}: {e}")
                    await self._settle(fail_job, job.id, job.claim_token, e)
                    return

                if result is None:
                    result = {}
                elif not isinstance(result, dict):
                    result = {"value": result}
                await self._settle(complete_job, job.id, job.claim_token, result)
                logger.info("Job %s finished in %.2fs", job.id, time.monotonic() - started)
            finally:
                if heartbeat_task:
                    heartbeat_task.cancel()
                    try:
                        await heartbeat_task
                    except asyncio.CancelledError:
                        pass
                JOBS_INFLIGHT.dec()

    async def _settle(self, command: Callable[..., Awaitable[Job]], *args: Any) -> Optional[Job]:
        """Runs a terminal command in its own transaction, then emits alerts."""
        async with self.session_factory() as session:
            try:
                job = await command(session, *args)
                await session.commit()
            except ClaimLostError as e:
                await session.rollback()
                discard_alerts(session)
                logger.warning("Outcome discarded: %s", e)
                return None
            except Exception:
                discard_alerts(session)
                raise
            await dispatch_alerts(session, self.alerts)
            return job

    async def _heartbeat_loop(self, context: JobContext):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await context.heartbeat()
            except ClaimLostError:
                logger.warning("Heartbeat for job %s rejected: claim lost", context.job.id)
                return
            except Exception as e:
                logger.warning("Heartbeat failed for job %s: %s", context.job.id, e)

    async def _maybe_run_maintenance(self):
        if time.monotonic() - self._last_maintenance < self.maintenance_interval:
            return
        await self.run_maintenance()

    async def run_maintenance(self) -> dict[str, int]:
        """Reaps stale jobs, promotes due retries and refreshes queue gauges."""
        self._last_maintenance = time.monotonic()
        async with self.session_factory() as session:
            try:
                reaped = await reap_stale_jobs(session)
                promoted = await promote_retrying_jobs(session)
                await session.commit()
            except Exception:
                discard_alerts(session)
                raise
            await dispatch_alerts(session, self.alerts)

            rows = (await session.execute(
                select(Job.tenant_id, func.count(Job.id))
                .where(Job.status == JobStatus.PENDING)
                .group_by(Job.tenant_id)
            )).all()
            for tenant_id, count in rows:
                QUEUE_DEPTH.labels(tenant_id=tenant_id).set(count)

        if reaped or promoted:
            self.broker.notify()
            logger.info("Maintenance: reaped=%s promoted=%s", reaped, promoted)
        return {"reaped": reaped, "promoted": promoted}

    async def promote_due(self) -> int:
        async with self.session_factory() as session:
            promoted = await promote_retrying_jobs(session)
            await session.commit()
        return promoted
