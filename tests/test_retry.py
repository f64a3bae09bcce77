from datetime import datetime, timedelta, timezone

import pytest

from jobengine.commands.claim_job import claim_next_job
from jobengine.commands.complete_job import complete_job
from jobengine.commands.enqueue_job import enqueue_job
from jobengine.commands.fail_job import describe_error, fail_job
from jobengine.commands.maintenance import promote_retrying_jobs
from jobengine.domain.errors import (
    ClaimLostError,
    HandlerNotFound,
    PermanentExecutionError,
    TransientExecutionError,
)
from jobengine.domain.retry import backoff_delay, calculate_next_attempt, is_retryable
from jobengine.domain.states import JobStatus


@pytest.mark.parametrize(
    "attempts, expected",
    [(0, 5), (1, 5), (2, 30), (3, 300), (4, 300), (10, 300)],
)
def test_backoff_ladder(attempts, expected):
    assert backoff_delay(attempts) == expected


def test_backoff_custom_ladder():
    assert backoff_delay(2, delays=[1, 2]) == 2
    assert backoff_delay(5, delays=[]) == 0


def test_calculate_next_attempt_with_jitter_stays_within_ten_percent():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert calculate_next_attempt(2, now=now) == now + timedelta(seconds=30)
    for _ in range(20):
        nxt = calculate_next_attempt(2, now=now, jitter=True)
        assert now + timedelta(seconds=30) <= nxt <= now + timedelta(seconds=33)


def test_error_classification():
    assert is_retryable(TransientExecutionError("flaky"))
    assert is_retryable(RuntimeError("unclassified"))
    assert not is_retryable(PermanentExecutionError("bad input"))
    assert not is_retryable(HandlerNotFound("x:y"))


def test_describe_error():
    assert describe_error(ValueError("nope")) == ("ValueError: nope", "ValueError")
    assert describe_error("plain text") == ("plain text", "Error")


async def _claim(session, now):
    job = await claim_next_job(session, "w1", now=now)
    await session.commit()
    return job


@pytest.mark.asyncio
async def test_retry_schedule_then_failed(session, registry, broker, tenants):
    job = await enqueue_job(session, "acme", "test:fail", max_retries=3, registry=registry, broker=broker)
    now = datetime.now(timezone.utc)

    expected_delays = [5, 30, 300]
    for attempt, delay in enumerate(expected_delays, start=1):
        claimed = await _claim(session, now)
        assert claimed.id == job.id

        failed = await fail_job(session, job.id, claimed.claim_token, TransientExecutionError("upstream 503"), now=now)
        await session.commit()

        assert failed.status == JobStatus.RETRYING
        assert failed.attempt_count == attempt
        assert failed.next_attempt_at == now + timedelta(seconds=delay)
        assert failed.error == "TransientExecutionError: upstream 503"

        # Not due yet
        assert await promote_retrying_jobs(session, now=now + timedelta(seconds=delay - 1)) == 0
        now = now + timedelta(seconds=delay)
        assert await promote_retrying_jobs(session, now=now) == 1
        await session.commit()

    claimed = await _claim(session, now)
    failed = await fail_job(session, job.id, claimed.claim_token, TransientExecutionError("upstream 503"), now=now)
    await session.commit()

    # Four failures with max_retries=3: out of attempts
    assert failed.status == JobStatus.FAILED
    assert failed.attempt_count == 4
    assert failed.next_attempt_at is None
    assert failed.finished_at == now


@pytest.mark.asyncio
async def test_permanent_error_fails_without_retry(session, registry, broker, tenants):
    job = await enqueue_job(session, "acme", "test:permanent", registry=registry, broker=broker)
    claimed = await _claim(session, None)

    failed = await fail_job(session, job.id, claimed.claim_token, PermanentExecutionError("bad payload"))
    await session.commit()

    assert failed.status == JobStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.error_type == "PermanentExecutionError"


@pytest.mark.asyncio
async def test_zero_retries_fails_on_first_error(session, registry, broker, tenants):
    job = await enqueue_job(session, "acme", "test:fail", max_retries=0, registry=registry, broker=broker)
    claimed = await _claim(session, None)

    failed = await fail_job(session, job.id, claimed.claim_token, "boom")
    assert failed.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_outcome_with_stale_claim_token_is_rejected(session, registry, broker, tenants):
    job = await enqueue_job(session, "acme", "test:echo", registry=registry, broker=broker)
    claimed = await _claim(session, None)
    token = claimed.claim_token

    await complete_job(session, job.id, token, {"ok": True})
    await session.commit()

    with pytest.raises(ClaimLostError):
        await complete_job(session, job.id, token, {"ok": False})
    with pytest.raises(ClaimLostError):
        await fail_job(session, job.id, token, "late failure")
