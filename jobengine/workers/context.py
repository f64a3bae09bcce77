import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.commands import progress
from jobengine.domain.errors import JobCancelledError
from jobengine.domain.models import JobSnapshot
from jobengine.handlers.base import JobHandler
from jobengine.tenancy import tenant_context

logger = logging.getLogger(__name__)

class JobContext:
    """
    What a handler may do while its job runs.

    Every write is guarded by the job's claim token; if the reaper has taken
    the job away, the write raises ClaimLostError and the handler stops.
    """

    def __init__(self, session_factory: async_sessionmaker, job: JobSnapshot, handler: JobHandler):
        self._session_factory = session_factory
        self.job = job
        self.handler = handler

    @property
    def tenant_id(self) -> str:
        return self.job.tenant_id

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A fresh session bound to this job's tenant context."""
        with tenant_context(self.job.tenant_id):
            async with self._session_factory() as session:
                yield session

    async def update_progress(self, percent: int, message: Optional[str] = None) -> int:
        async with self._session_factory() as session:
            stored = await progress.update_progress(session, self.job.id, self.job.claim_token, percent, message)
            await session.commit()
        await self.handler.notify_progress(stored, message)
        return stored

    async def heartbeat(self) -> None:
        async with self._session_factory() as session:
            await progress.heartbeat(session, self.job.id, self.job.claim_token)
            await session.commit()

    async def save_checkpoint(self, checkpoint: Any) -> None:
        async with self._session_factory() as session:
            await progress.save_checkpoint(session, self.job.id, self.job.claim_token, checkpoint)
            await session.commit()

    async def is_cancel_requested(self) -> bool:
        async with self._session_factory() as session:
            return await progress.is_cancel_requested(session, self.job.id)

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancel_requested():
            raise JobCancelledError(f"Job {self.job.id} was cancelled")

class InlineJobContext(JobContext):
    """
    Context for handlers the scheduler tick runs inline. There is no job row
    behind it, so progress and checkpoints stay in memory.
    """

    def __init__(self, session_factory: async_sessionmaker, job: JobSnapshot, handler: JobHandler):
        super().__init__(session_factory, job, handler)
        self.progress = 0
        self.checkpoint: Any = None

    async def update_progress(self, percent: int, message: Optional[str] = None) -> int:
        self.progress = max(0, min(100, int(percent)))
        logger.debug("Inline %s progress %s%% %s", self.job.type, self.progress, message or "")
        await self.handler.notify_progress(self.progress, message)
        return self.progress

    async def heartbeat(self) -> None:
        return None

    async def save_checkpoint(self, checkpoint: Any) -> None:
        self.checkpoint = checkpoint

    async def is_cancel_requested(self) -> bool:
        return False
