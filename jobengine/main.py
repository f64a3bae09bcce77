import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError, OperationalError

from jobengine.settings import settings
from jobengine.tenancy import configure_logging
from jobengine.api.v1.jobs import router as jobs_router
from jobengine.api.v1.cron_jobs import router as cron_jobs_router
from jobengine.api.v1.admin import router as admin_router
from jobengine.api.v1.stats import router as stats_router
from jobengine.api.v1.metrics import router as metrics_router
from jobengine.auth.security import verify_admin_key

logger = logging.getLogger(__name__)

async def bootstrap(session_factory, registry) -> set[str]:
    """
    Creates the system tenant and checks that every configured schedule
    job type has a handler. Returns the missing types.
    """
    from jobengine.commands.tenants import ensure_system_tenant
    from jobengine.db.models import CronJob

    async with session_factory() as session:
        await ensure_system_tenant(session)
        await session.commit()
        job_types = (await session.execute(
            select(CronJob.job_type).where(CronJob.is_active.is_(True)).distinct()
        )).scalars().all()

    missing = registry.verify(job_types)
    if missing:
        logger.error("Schedules reference %d unregistered job type(s): %s", len(missing), ", ".join(sorted(missing)))
    return missing

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from jobengine.db.session import AsyncSessionLocal
    from jobengine.registry import get_registry
    from jobengine.scheduler.service import SchedulerService
    from jobengine.workers.pool import WorkerPool

    configure_logging(settings.LOG_LEVEL)
    registry = get_registry()

    # 1. Bootstrap (retry for fresh DBs where migrations haven't run yet)
    for i in range(10):
        try:
            await bootstrap(AsyncSessionLocal, registry)
            break
        except (ProgrammingError, OperationalError) as e:
            logger.warning(f"Bootstrap: database not ready, retrying in 2s... ({i+1}/10): {e}")
            await asyncio.sleep(2)

    # 2. Worker pool
    pool = None
    if settings.WORKER_ENABLED:
        pool = WorkerPool(AsyncSessionLocal, registry=registry)
        await pool.start()

    # 3. Embedded tick (off unless configured; normally an external trigger)
    scheduler = None
    if settings.EMBEDDED_TICK_INTERVAL_SECONDS > 0:
        scheduler = SchedulerService(settings.EMBEDDED_TICK_INTERVAL_SECONDS, AsyncSessionLocal, registry=registry)
        await scheduler.start()

    yield

    # Shutdown
    if scheduler:
        await scheduler.stop()
    if pool:
        await pool.stop()

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(cron_jobs_router, prefix="/api/v1/cron-jobs", tags=["cron-jobs"])
    app.include_router(stats_router, prefix="/api/v1", tags=["stats"])
    app.include_router(
        admin_router, prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)]
    )
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    return app

app = create_app()
