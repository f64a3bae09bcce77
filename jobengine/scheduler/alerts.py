import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.api.v1.metrics import SCHEDULE_AUTO_PAUSED

logger = logging.getLogger(__name__)

_PENDING_KEY = "jobengine.pending_alerts"

@dataclass(frozen=True)
class ScheduleAlert:
    cron_job_id: UUID
    tenant_id: Optional[str]
    name: str
    source_type: str
    source_id: Optional[str]
    consecutive_failures: int
    last_error: Optional[str]
    raised_at: datetime

AlertListener = Callable[[ScheduleAlert], Union[Awaitable[None], None]]

class ScheduleAlerts:
    """
    Fan-out of auto-pause alerts to the owning collaborator (plugin,
    integration, system). The engine itself only logs and counts; paging or
    emailing is up to the listeners.
    """

    def __init__(self):
        self._listeners: list[AlertListener] = []

    def subscribe(self, listener: AlertListener) -> AlertListener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: AlertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, alert: ScheduleAlert) -> None:
        SCHEDULE_AUTO_PAUSED.labels(source_type=alert.source_type).inc()
        logger.warning(
            "Schedule %s (%s) auto-paused after %d consecutive failures. Last error: %s",
            alert.name, alert.cron_job_id, alert.consecutive_failures, alert.last_error,
        )
        for listener in list(self._listeners):
            try:
                outcome = listener(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Alert listener %r failed for schedule %s", listener, alert.cron_job_id)

schedule_alerts = ScheduleAlerts()

def queue_alert(session: AsyncSession, alert: ScheduleAlert) -> None:
    """Holds an alert until the transaction that paused the schedule commits."""
    session.info.setdefault(_PENDING_KEY, []).append(alert)

def discard_alerts(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)

async def dispatch_alerts(session: AsyncSession, alerts: Optional[ScheduleAlerts] = None) -> int:
    """Call after commit. Returns the number of alerts emitted."""
    pending = session.info.pop(_PENDING_KEY, [])
    target = alerts or schedule_alerts
    for alert in pending:
        await target.emit(alert)
    return len(pending)
