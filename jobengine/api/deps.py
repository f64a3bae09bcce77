from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.db.session import get_db_session
from jobengine.registry import JobTypeRegistry, get_registry
from jobengine.scheduler.broker import JobBroker, broker

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

def get_job_registry() -> JobTypeRegistry:
    return get_registry()

def get_broker() -> JobBroker:
    return broker

def get_session_factory() -> async_sessionmaker:
    from jobengine.db.session import AsyncSessionLocal
    return AsyncSessionLocal

Registry = Annotated[JobTypeRegistry, Depends(get_job_registry)]
Broker = Annotated[JobBroker, Depends(get_broker)]
SessionFactory = Annotated[async_sessionmaker, Depends(get_session_factory)]
