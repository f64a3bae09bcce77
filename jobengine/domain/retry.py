import random
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from jobengine.domain.errors import ExecutionError, HandlerNotFound
from jobengine.settings import settings

def backoff_delay(attempts: int, delays: Optional[Sequence[int]] = None) -> int:
    """
    Seconds to wait before the next attempt after `attempts` failures.

    The schedule is a fixed ladder (default 5s, 30s, 5m); once exhausted the
    last step repeats, so the fourth and later retries also wait 5 minutes.
    """
    ladder = tuple(delays) if delays is not None else settings.RETRY_DELAYS_SECONDS
    if not ladder:
        return 0
    index = min(max(attempts, 1), len(ladder)) - 1
    return ladder[index]

def calculate_next_attempt(
    attempts: int,
    now: Optional[datetime] = None,
    delays: Optional[Sequence[int]] = None,
    jitter: bool = False,
) -> datetime:
    delay = float(backoff_delay(attempts, delays))
    if jitter:
        # Up to 10% extra to spread out retries of a failed batch
        delay += random.uniform(0, delay * 0.1)
    base = now or datetime.now(timezone.utc)
    return base + timedelta(seconds=delay)

def is_retryable(error: BaseException) -> bool:
    """Unclassified errors are treated as transient."""
    if isinstance(error, HandlerNotFound):
        return False
    if isinstance(error, ExecutionError):
        return error.retryable
    return True
