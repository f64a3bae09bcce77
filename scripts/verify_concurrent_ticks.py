#!/usr/bin/env python3
"""
Fires five scheduler ticks at the same instant against a real Postgres
database. Each due schedule must produce exactly one execution and its
next_run_at must move forward once.
"""
import asyncio
import logging
import sys
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select

from jobengine.commands.schedules import create_cron_job
from jobengine.commands.tenants import create_tenant
from jobengine.db.models import CronJob, CronJobExecution
from jobengine.db.session import AsyncSessionLocal, engine
from jobengine.registry import JobTypeRegistry
from jobengine.scheduler.tick import run_tick

logging.basicConfig(level=logging.WARNING)

async def verify_concurrent_ticks() -> bool:
    registry = JobTypeRegistry()

    @registry.job_type("verify:ping", inline=True)
    async def ping(job, context):
        await asyncio.sleep(0.2)
        return {"pong": True}

    tenant_id = f"tenant-ticks-{uuid4()}"
    created_at = datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)
    tick_at = datetime(2024, 1, 1, 2, 0, 1, tzinfo=timezone.utc)

    async with AsyncSessionLocal() as session:
        await create_tenant(session, tenant_id, "Tick check")
        ids = []
        for i in range(3):
            cron_job = await create_cron_job(
                session, tenant_id, f"nightly-{i}", "0 2 * * *", "verify:ping", registry=registry, now=created_at,
            )
            ids.append(cron_job.id)
        await session.commit()
    print(f"1. Created 3 schedules for {tenant_id}, due at 02:00 UTC")

    print("2. Running 5 ticks concurrently at 02:00:01...")
    reports = await asyncio.gather(*(run_tick(now=tick_at, registry=registry) for _ in range(5)))
    print(f"   fired per tick: {[r.fired for r in reports]}, skipped scopes: {[r.skipped_scopes for r in reports]}")

    ok = True
    async with AsyncSessionLocal() as session:
        for cron_job_id in ids:
            executions = await session.scalar(
                select(func.count(CronJobExecution.id)).where(CronJobExecution.cron_job_id == cron_job_id)
            )
            cron_job = await session.get(CronJob, cron_job_id)
            if executions != 1:
                print(f"FAILURE: schedule {cron_job_id} has {executions} executions")
                ok = False
            if cron_job.next_run_at != datetime(2024, 1, 2, 2, 0, tzinfo=timezone.utc):
                print(f"FAILURE: schedule {cron_job_id} next_run_at is {cron_job.next_run_at}")
                ok = False

    if ok and sum(r.fired for r in reports) == 3:
        print("SUCCESS: Every schedule fired exactly once.")
        return True
    print("FAILURE: Redundant ticks fired schedules more than once.")
    return False

async def main() -> int:
    try:
        return 0 if await verify_concurrent_ticks() else 1
    finally:
        await engine.dispose()

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
