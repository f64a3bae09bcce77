"""
External trigger: run one scheduler tick and exit.

    jobengine-tick                  # cron / Kubernetes CronJob
    python -m jobengine.scheduler.entrypoint --now 2024-01-01T02:00:01Z

Exit status is 1 when any scope or schedule errored, so the trigger's own
alerting notices.
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, Sequence

from jobengine.scheduler.tick import run_tick
from jobengine.settings import settings
from jobengine.tenancy import configure_logging

logger = logging.getLogger(__name__)

def _parse_now(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

async def _run(now: Optional[datetime]) -> int:
    from jobengine.db.session import engine

    try:
        report = await run_tick(now=now)
    finally:
        await engine.dispose()
    print(json.dumps(report.as_dict()))
    return 0 if report.ok else 1

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one scheduler tick.")
    parser.add_argument("--now", type=_parse_now, default=None, help="Tick time (ISO 8601, default: current time)")
    args = parser.parse_args(argv)

    configure_logging(settings.LOG_LEVEL)
    try:
        return asyncio.run(_run(args.now))
    except Exception:
        logger.exception("Scheduler tick crashed")
        return 1

if __name__ == "__main__":
    sys.exit(main())
