"""
Cron expression evaluation.

Expressions use the standard five fields (minute hour day month weekday) and
are evaluated in the schedule's IANA timezone. `croniter` walks the fields
(minute, hour, day/weekday, month) rather than stepping minute by minute, so
sparse expressions such as ``0 0 1 * *`` stay cheap far into the future.
"""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from jobengine.domain.errors import ScheduleMisconfigured

def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleMisconfigured(f"Unknown timezone '{tz_name}'") from e

def validate_cron_expression(expression: str, tz_name: str = "UTC") -> str:
    """Returns the normalised expression or raises ScheduleMisconfigured."""
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleMisconfigured("Cron expression is required")

    normalised = " ".join(expression.split())
    if len(normalised.split(" ")) != 5:
        raise ScheduleMisconfigured(
            f"Cron expression '{expression}' must have 5 fields (minute hour day month weekday)"
        )
    if not croniter.is_valid(normalised):
        raise ScheduleMisconfigured(f"Invalid cron expression '{expression}'")

    get_zone(tz_name)
    return normalised

def next_run_after(expression: str, tz_name: str, after: datetime) -> datetime:
    """Earliest occurrence strictly after `after`, returned in UTC."""
    zone = get_zone(tz_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    local_after = after.astimezone(zone)
    nxt = croniter(expression, local_after).get_next(datetime)
    return nxt.astimezone(timezone.utc)

def compute_next_run(
    expression: str,
    tz_name: str,
    now: datetime,
    previous: Optional[datetime] = None,
) -> datetime:
    """
    Next slot after a firing.

    Slots missed while no tick ran are skipped, never replayed: the search
    starts from whichever is later, the slot that just fired or the tick time.
    """
    base = now if previous is None or previous < now else previous
    return next_run_after(expression, tz_name, base)
