from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Fixed key for the embedded scheduler's leader lock.
# Postgres uses 64-bit keys for advisory locks.
LEADER_LOCK_KEY = 84728472

def _is_postgres(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Note: Session-level locks are released automatically when the session ends.
    Other backends have no advisory locks and always report success.
    """
    if not _is_postgres(session):
        return True
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True

@asynccontextmanager
async def scope_lock(session_factory: async_sessionmaker, scope: str) -> AsyncIterator[bool]:
    """
    Advisory lock keyed by a string (a tenant id), held on a dedicated
    connection for the whole `async with` body, which may span several
    transactions on other sessions. Yields False when another process holds it.
    """
    async with session_factory() as lock_session:
        if not _is_postgres(lock_session):
            yield True
            return

        key = f"jobengine:tick:{scope}"
        result = await lock_session.execute(
            text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": key}
        )
        acquired = result.scalar() is True
        try:
            yield acquired
        finally:
            if acquired:
                await lock_session.execute(
                    text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": key}
                )
                await lock_session.commit()
