import inspect
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Union

from sqlalchemy import delete, or_, select, update

from jobengine.commands.maintenance import purge_finished_jobs
from jobengine.db.models import CronJobExecution, Tenant
from jobengine.domain.errors import TransientExecutionError
from jobengine.domain.states import ExecutionStatus
from jobengine.handlers.base import JobHandler
from jobengine.settings import settings

logger = logging.getLogger(__name__)

TokenRefresher = Callable[[int, int], Union[Awaitable[int], int]]

_token_refreshers: dict[str, TokenRefresher] = {}

def register_token_refresher(name: str, refresher: TokenRefresher) -> None:
    """
    Integrations (marketplaces, PIMs) register a refresher that renews tokens
    expiring within `buffer_minutes` and returns how many it refreshed.
    """
    _token_refreshers[name] = refresher

def unregister_token_refresher(name: str) -> None:
    _token_refreshers.pop(name, None)

class TokenRefreshHandler(JobHandler):
    inline = True
    description = "Refresh OAuth tokens that are about to expire"

    async def execute(self, job, context):
        buffer_minutes = int(job.payload.get("bufferMinutes", job.payload.get("buffer_minutes", 60)))
        batch_size = int(job.payload.get("batchSize", job.payload.get("batch_size", 10)))

        refreshed = 0
        failed: dict[str, str] = {}
        for name, refresher in sorted(_token_refreshers.items()):
            try:
                outcome = refresher(buffer_minutes, batch_size)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                refreshed += int(outcome or 0)
            except Exception as e:
                logger.warning("Token refresher %s failed: %s", name, e)
                failed[name] = f"{type(e).__name__}: {e}"

        if failed:
            raise TransientExecutionError(
                f"{len(failed)} token refresher(s) failed: " + ", ".join(f"{k} ({v})" for k, v in failed.items())
            )
        return {"refreshed": refreshed, "refreshers": len(_token_refreshers), "bufferMinutes": buffer_minutes}

class DailyCreditDeductionHandler(JobHandler):
    """
    Deducts each tenant's daily credit cost once per UTC day.

    Run under the system tenant it charges every active tenant, otherwise only
    the job's own tenant. The charge is a conditional update on
    last_credit_deduction_on, so a retried or duplicated run never charges
    the same tenant twice for one day.
    """
    description = "Deduct daily credits from tenants"

    async def execute(self, job, context):
        today = datetime.now(timezone.utc).date()
        if job.payload.get("date"):
            today = datetime.fromisoformat(str(job.payload["date"])).date()

        async with context.session() as session:
            stmt = select(Tenant.id).where(Tenant.is_active.is_(True), Tenant.daily_credit_cost > 0)
            if job.tenant_id == settings.SYSTEM_TENANT_ID:
                stmt = stmt.where(Tenant.id != settings.SYSTEM_TENANT_ID)
            else:
                stmt = stmt.where(Tenant.id == job.tenant_id)
            tenant_ids = list((await session.execute(stmt.order_by(Tenant.id))).scalars().all())

        deducted, skipped = 0, 0
        amount = Decimal("0")
        for index, tenant_id in enumerate(tenant_ids, start=1):
            async with context.session() as session:
                tenant = await session.get(Tenant, tenant_id)
                res = await session.execute(
                    update(Tenant)
                    .where(
                        Tenant.id == tenant_id,
                        or_(Tenant.last_credit_deduction_on.is_(None), Tenant.last_credit_deduction_on < today),
                    )
                    .values(
                        credit_balance=Tenant.credit_balance - Tenant.daily_credit_cost,
                        last_credit_deduction_on=today,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

            if res.rowcount == 1:
                deducted += 1
                amount += tenant.daily_credit_cost
                logger.info("Deducted %s credits from tenant %s for %s", tenant.daily_credit_cost, tenant_id, today)
            else:
                skipped += 1

            await context.update_progress(int(index * 100 / len(tenant_ids)), f"Charged {index}/{len(tenant_ids)} tenants")

        return {"date": today.isoformat(), "tenants": len(tenant_ids), "deducted": deducted, "skipped": skipped, "amount": str(amount)}

class CleanupHandler(JobHandler):
    inline = True
    description = "Purge finished jobs and closed executions past retention"

    async def execute(self, job, context):
        days = int(job.payload.get("retention_days") or settings.JOB_RETENTION_DAYS)
        now = datetime.now(timezone.utc)

        async with context.session() as session:
            jobs_purged = await purge_finished_jobs(session, now=now, retention_days=days)
            res = await session.execute(
                delete(CronJobExecution)
                .where(
                    CronJobExecution.status != ExecutionStatus.RUNNING,
                    CronJobExecution.finished_at < now - timedelta(days=days),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        executions_purged = res.rowcount or 0
        return {"jobsPurged": jobs_purged, "executionsPurged": executions_purged, "retentionDays": days}
