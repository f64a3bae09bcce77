"""Shared pytest fixtures: a throwaway sqlite database per test, a registry
with test job types, two tenants and an API client."""
import asyncio
import os
from decimal import Decimal
from typing import AsyncGenerator

# Settings are read at import time
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WORKER_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jobengine.api import deps
from jobengine.commands.tenants import create_tenant, ensure_system_tenant
from jobengine.db import models  # noqa: F401
from jobengine.db.session import Base, get_db_session
from jobengine.domain.errors import PermanentExecutionError, TransientExecutionError
from jobengine.handlers import register_builtin_handlers
from jobengine.handlers.base import JobHandler
from jobengine.main import create_app
from jobengine.registry import JobTypeRegistry
from jobengine.scheduler.alerts import ScheduleAlerts
from jobengine.scheduler.broker import JobBroker
from jobengine.workers.pool import WorkerPool

ACME_KEY = "acme-key"
GLOBEX_KEY = "globex-key"


class SlowHandler(JobHandler):
    """Blocks until the test releases it."""
    release: asyncio.Event = None
    started = 0

    async def execute(self, job, context):
        type(self).started += 1
        await type(self).release.wait()
        return {"slow": True}


def build_test_registry() -> JobTypeRegistry:
    registry = JobTypeRegistry()
    register_builtin_handlers(registry)

    @registry.job_type("test:echo")
    async def echo(job, context):
        await context.update_progress(50, "halfway")
        return {"echo": job.payload}

    @registry.job_type("test:fail")
    async def fail(job, context):
        raise TransientExecutionError("upstream unavailable")

    @registry.job_type("test:boom")
    async def boom(job, context):
        raise RuntimeError("unexpected")

    @registry.job_type("test:permanent")
    async def permanent(job, context):
        raise PermanentExecutionError("bad payload")

    @registry.job_type("test:inline_ok", inline=True)
    async def inline_ok(job, context):
        return {"ok": True, "tenant": job.tenant_id}

    @registry.job_type("test:inline_fail", inline=True)
    async def inline_fail(job, context):
        raise TransientExecutionError("inline failure")

    registry.register("test:slow", SlowHandler)
    return registry


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobengine.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry() -> JobTypeRegistry:
    return build_test_registry()


@pytest.fixture
def broker() -> JobBroker:
    return JobBroker()


@pytest.fixture
def alerts() -> ScheduleAlerts:
    return ScheduleAlerts()


@pytest_asyncio.fixture
async def tenants(session_factory):
    async with session_factory() as session:
        await ensure_system_tenant(session)
        await create_tenant(session, "acme", "Acme", api_key=ACME_KEY, daily_credit_cost=Decimal("2.50"),
                            credit_balance=Decimal("100"))
        await create_tenant(session, "globex", "Globex", api_key=GLOBEX_KEY, max_inflight=1)
        await session.commit()
    return ["acme", "globex"]


@pytest.fixture
def pool(session_factory, registry, broker, alerts) -> WorkerPool:
    return WorkerPool(
        session_factory,
        registry=registry,
        concurrency=2,
        broker=broker,
        poll_interval=0.05,
        worker_id="test-worker",
        maintenance_interval=3600,
        heartbeat_interval=3600,
        shutdown_timeout=1,
        alerts=alerts,
    )


@pytest_asyncio.fixture
async def client(session_factory, registry, broker, tenants) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()

    async def override_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[deps.get_job_registry] = lambda: registry
    app.dependency_overrides[deps.get_broker] = lambda: broker
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def acme_headers():
    return {"X-API-Key": ACME_KEY}


@pytest.fixture
def globex_headers():
    return {"X-API-Key": GLOBEX_KEY}
