"""
Tests for the retry & failure policy.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from jobhub.config.settings import Settings
from jobhub.v1.jobs.models import Job, JobErrorCode, JobStatus, utcnow
from jobhub.v1.jobs.retry import RetryPolicy


def make_policy(**overrides):
    settings = Settings(
        job_backoff_base_ms=overrides.pop("job_backoff_base_ms", 1000),
        job_max_backoff_s=overrides.pop("job_max_backoff_s", 3600),
        job_backoff_jitter=overrides.pop("job_backoff_jitter", 0),
    )
    store = MagicMock()
    store.update_status = AsyncMock(return_value=True)
    return RetryPolicy(settings, store)


def make_running_job(retry_count=0, max_retries=2):
    return Job(
        id=uuid4(),
        job_name="sum",
        namespace="default",
        status=JobStatus.RUNNING.value,
        payload={},
        retry_count=retry_count,
        max_retries=max_retries,
        worker_id="worker-1",
        lease_id=uuid4(),
        created_by="alice",
    )


class TestBackoff:
    """Exponential backoff delays."""

    def test_delay_doubles_per_attempt(self):
        policy = make_policy()

        assert policy.backoff_delay(0) == 1.0
        assert policy.backoff_delay(1) == 2.0
        assert policy.backoff_delay(3) == 8.0

    def test_delay_capped(self):
        policy = make_policy(job_max_backoff_s=5)

        assert policy.backoff_delay(10) == 5.0

    def test_jitter_stays_within_bounds(self):
        policy = make_policy(job_backoff_jitter=0.25)

        for _ in range(50):
            delay = policy.backoff_delay(2)
            assert 3.0 <= delay <= 5.0

    def test_zero_base_means_immediate_retry(self):
        policy = make_policy(job_backoff_base_ms=0)

        assert policy.backoff_delay(5) == 0.0

    def test_next_run_at(self):
        policy = make_policy()
        now = utcnow()

        assert policy.next_run_at(1, now) == now + timedelta(seconds=2)


class TestFail:
    """Recording failed attempts."""

    async def test_retry_when_budget_left(self):
        policy = make_policy()
        job = make_running_job(retry_count=0, max_retries=2)
        session = MagicMock()

        outcome = await policy.fail(
            session, job, error_message="boom", error_code=JobErrorCode.TIMEOUT
        )

        assert outcome == JobStatus.PENDING
        args, kwargs = policy.store.update_status.call_args
        assert args[1:] == (job.id, JobStatus.RUNNING, JobStatus.PENDING)
        assert kwargs["expected_worker_id"] == "worker-1"
        assert kwargs["expected_lease_id"] == job.lease_id
        assert kwargs["retry_count"] == 1
        assert kwargs["error_message"] == "boom"
        assert kwargs["error_code"] == "TIMEOUT"
        assert kwargs["scheduled_at"] > utcnow() - timedelta(seconds=1)

    async def test_fail_permanently_when_budget_exhausted(self):
        policy = make_policy()
        job = make_running_job(retry_count=2, max_retries=2)

        outcome = await policy.fail(MagicMock(), job, error_message="boom")

        assert outcome == JobStatus.FAILED
        args, kwargs = policy.store.update_status.call_args
        assert args[3] == JobStatus.FAILED
        assert kwargs["error_code"] == JobErrorCode.RUNTIME_ERROR.value
        assert "retry_count" not in kwargs

    async def test_no_retries_fails_first_time(self):
        policy = make_policy()
        job = make_running_job(retry_count=0, max_retries=0)

        assert await policy.fail(MagicMock(), job, error_message="boom") == JobStatus.FAILED

    async def test_lost_lease_writes_nothing(self):
        policy = make_policy()
        policy.store.update_status.return_value = False
        job = make_running_job()

        assert await policy.fail(MagicMock(), job, error_message="boom") is None

    async def test_explicit_lease_holder(self):
        policy = make_policy()
        job = make_running_job()

        await policy.fail(MagicMock(), job, error_message="boom", worker_id="worker-2")

        _, kwargs = policy.store.update_status.call_args
        assert kwargs["expected_worker_id"] == "worker-2"

    async def test_explicit_lease_overrides_job_lease(self):
        policy = make_policy()
        job = make_running_job()
        lease_id = uuid4()

        await policy.fail(MagicMock(), job, error_message="boom", lease_id=lease_id)

        _, kwargs = policy.store.update_status.call_args
        assert kwargs["expected_lease_id"] == lease_id


@pytest.mark.parametrize("retry_count,max_retries,expected", [(0, 0, False), (0, 1, True), (1, 1, False)])
def test_can_retry(retry_count, max_retries, expected):
    assert make_running_job(retry_count, max_retries).can_retry() is expected

