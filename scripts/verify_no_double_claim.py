#!/usr/bin/env python3
"""
Races 20 workers for a single pending job against a real Postgres database
(SQLALCHEMY_DATABASE_URI). Exactly one claim must succeed.
"""
import asyncio
import logging
import sys
from uuid import uuid4

from jobengine.commands.claim_job import claim_next_job
from jobengine.commands.enqueue_job import enqueue_job
from jobengine.commands.tenants import create_tenant
from jobengine.db.session import AsyncSessionLocal, engine
from jobengine.registry import JobTypeRegistry

logging.basicConfig(level=logging.WARNING)

async def attempt_claim(worker_id, tenant_id):
    async with AsyncSessionLocal() as session:
        job = await claim_next_job(session, worker_id, tenant_id=tenant_id)
        await session.commit()
        if job is None:
            return None
        return {"worker_id": worker_id, "job_id": job.id, "claim_token": job.claim_token}

async def verify_no_double_claim() -> bool:
    registry = JobTypeRegistry()

    @registry.job_type("verify:noop")
    async def noop(job, context):
        return {}

    tenant_id = f"tenant-concurrency-{uuid4()}"
    async with AsyncSessionLocal() as session:
        print("1. Creating tenant and 1 job...")
        await create_tenant(session, tenant_id, "Concurrency check", max_inflight=20)
        await session.commit()
        job = await enqueue_job(session, tenant_id, "verify:noop", {"task": "concurrency_test"}, registry=registry)
        print(f"   Job created: {job.id}")

    print("2. Spawning 20 concurrent claim attempts...")
    results = await asyncio.gather(*(attempt_claim(f"worker-{i}", tenant_id) for i in range(20)))

    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1 and claims[0]["job_id"] == job.id:
        print("SUCCESS: Exactly one worker claimed the job.")
        print(f"   Winner: {claims[0]['worker_id']} (Token: {claims[0]['claim_token']})")
        return True
    if not claims:
        print("FAILURE: No one claimed the job (unexpected).")
    else:
        print(f"FAILURE: {len(claims)} workers claimed the job! Double claim detected.")
        for claim in claims:
            print(f"   - {claim['worker_id']}: {claim['claim_token']}")
    return False

async def main() -> int:
    try:
        return 0 if await verify_no_double_claim() else 1
    finally:
        await engine.dispose()

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
