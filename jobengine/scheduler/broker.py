import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

class JobBroker:
    """
    In-process wake-up signal between enqueue and the worker pool.

    It never carries jobs: the jobs table is the only record of a job, and a
    missed or dropped signal only delays pickup until the next poll.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.notifications = 0

    def notify(self, tenant_id: Optional[str] = None) -> None:
        self.notifications += 1
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """True when woken by notify(), False when the timeout elapsed."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._event.clear()

broker = JobBroker()
