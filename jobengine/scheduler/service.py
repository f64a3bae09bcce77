import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from jobengine.registry import JobTypeRegistry
from jobengine.scheduler.broker import JobBroker
from jobengine.scheduler.tick import run_tick
from jobengine.utils.locking import try_advisory_lock
from jobengine.api.v1.metrics import LEADER_STATUS

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Optional in-process trigger: calls run_tick every `interval` seconds on
    whichever instance holds the leader lock. Ticks are idempotent, so the
    lock only saves work; an external trigger can run alongside it.
    """

    def __init__(
        self,
        interval: int,
        session_factory: Optional[async_sessionmaker] = None,
        registry: Optional[JobTypeRegistry] = None,
        broker: Optional[JobBroker] = None,
    ):
        if session_factory is None:
            from jobengine.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.interval = interval
        self.session_factory = session_factory
        self.registry = registry
        self.broker = broker
        self._running = False
        self._task = None
        self._is_leader = False

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started (interval=%ss).", self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        LEADER_STATUS.set(0)
        logger.info("Scheduler service stopped.")

    async def _loop(self):
        # The lock lives as long as this session's connection
        session = None
        try:
            while self._running:
                try:
                    if not session:
                        session = self.session_factory()

                    is_leader = await try_advisory_lock(session)
                    if is_leader:
                        if not self._is_leader:
                            logger.info("Acquired leadership. Starting scheduler ticks.")
                            self._is_leader = True
                            LEADER_STATUS.set(1)
                        await run_tick(self.session_factory, registry=self.registry, broker=self.broker)
                    elif self._is_leader:
                        logger.info("Lost leadership. Stopping scheduler ticks.")
                        self._is_leader = False
                        LEADER_STATUS.set(0)

                except Exception as e:
                    logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                    self._is_leader = False
                    LEADER_STATUS.set(0)

                    # If DB error, close session and retry to reconnect
                    if session:
                        await session.close()
                        session = None

                await asyncio.sleep(self.interval)
        finally:
            if session:
                await session.close()
