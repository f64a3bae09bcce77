import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Optional, Union

from jobengine.domain.errors import PermanentExecutionError
from jobengine.domain.models import JobSnapshot

if TYPE_CHECKING:
    from jobengine.workers.context import JobContext

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[str]], Union[Awaitable[None], None]]
HandlerFunc = Callable[[JobSnapshot, "JobContext"], Awaitable[Optional[dict]]]

class JobHandler:
    """
    Base class for job handlers.

    A new instance is created for every execution. `inline` handlers are run
    directly by the scheduler tick instead of being enqueued; keep them
    sub-second.

    Handlers must be idempotent or checkpointed: a job whose worker died is
    handed to another worker and runs again from the start (or its last
    checkpoint).
    """
    inline: ClassVar[bool] = False
    description: ClassVar[str] = ""

    def __init__(self) -> None:
        self._progress_callbacks: list[ProgressCallback] = []

    def on_progress(self, callback: ProgressCallback) -> ProgressCallback:
        self._progress_callbacks.append(callback)
        return callback

    async def notify_progress(self, percent: int, message: Optional[str]) -> None:
        for callback in list(self._progress_callbacks):
            outcome = callback(percent, message)
            if inspect.isawaitable(outcome):
                await outcome

    async def execute(self, job: JobSnapshot, context: "JobContext") -> Optional[dict[str, Any]]:
        raise NotImplementedError

class FunctionHandler(JobHandler):
    """Adapts a plain coroutine function to the handler interface."""
    func: ClassVar[Optional[HandlerFunc]] = None

    @classmethod
    def wrap(cls, func: HandlerFunc, inline: bool = False, description: str = "") -> type["FunctionHandler"]:
        name = getattr(func, "__name__", "handler")
        return type(
            f"FunctionHandler[{name}]",
            (cls,),
            {"func": staticmethod(func), "inline": inline, "description": description or (func.__doc__ or "").strip()},
        )

    async def execute(self, job, context):
        return await type(self).func(job, context)

class BatchJobHandler(JobHandler):
    """
    Processes `payload["items"]` in batches, checkpointing the offset after
    each batch so a reclaimed job resumes where the previous worker stopped.
    """
    batch_size: ClassVar[int] = 50

    async def load_items(self, job: JobSnapshot, context: "JobContext") -> list[Any]:
        items = job.payload.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise PermanentExecutionError("payload.items must be a list")
        return items

    async def process_batch(self, batch: list[Any], job: JobSnapshot, context: "JobContext") -> dict[str, int]:
        raise NotImplementedError

    async def execute(self, job, context):
        items = await self.load_items(job, context)
        total = len(items)
        batch_size = int(job.payload.get("batch_size") or self.batch_size)
        offset = int(job.metadata.get("checkpoint", 0))
        totals: dict[str, int] = {}

        if offset:
            logger.info("Job %s resuming from checkpoint %s/%s", job.id, offset, total)

        while offset < total:
            await context.raise_if_cancelled()

            batch = items[offset:offset + batch_size]
            counts = await self.process_batch(batch, job, context)
            for key, value in (counts or {}).items():
                totals[key] = totals.get(key, 0) + int(value)

            offset += len(batch)
            await context.save_checkpoint(offset)
            await context.update_progress(
                int(offset * 100 / total),
                f"Processed {offset}/{total}",
            )

        return {"total": total, **totals}
