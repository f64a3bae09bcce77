from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs in PENDING state', ['tenant_id'])
JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Number of jobs currently running"
)

JOB_ENQUEUED_TOTAL = Counter('jobs_enqueued_total', 'Total jobs enqueued', ['tenant_id', 'job_type'])
JOB_CLAIM_TOTAL = Counter(
    "job_claim_total",
    "Claim attempts by outcome",
    ["outcome"]  # claimed | conflict
)
JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from available_at to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0])
JOB_DURATION = Histogram('job_duration_seconds', 'Time from claim to completion', ['job_type'], buckets=[1.0, 5.0, 10.0, 60.0, 120.0, 600.0])
JOB_COMPLETE_TOTAL = Counter('jobs_completed_total', 'Total jobs completed', ['tenant_id', 'job_type'])
JOB_FAILURES = Counter('job_failures_total', 'Total job failures', ['tenant_id', 'type'])  # type=retryable|final

REAPER_RECOVERED_JOBS = Counter(
    "reaper_recovered_jobs_total",
    "Total number of stale running jobs recovered by the reaper"
)
RETRY_PROMOTED_JOBS = Counter(
    "retry_promoted_jobs_total",
    "Total number of retrying jobs moved back to pending"
)

SCHEDULE_FIRINGS = Counter('cron_firings_total', 'Schedule firings by outcome', ['outcome'])  # fired|skipped_paused|lost_race
SCHEDULE_OUTCOMES = Counter('cron_outcomes_total', 'Closed schedule executions', ['status'])
SCHEDULE_AUTO_PAUSED = Counter('cron_auto_paused_total', 'Schedules paused after consecutive failures', ['source_type'])
TICK_DURATION = Histogram('scheduler_tick_duration_seconds', 'Duration of one scheduler tick', buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 120.0])

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
