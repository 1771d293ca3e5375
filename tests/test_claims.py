"""
Claim engine and reclaim sweep tests against PostgreSQL.
"""

import asyncio
from datetime import timedelta

from jobhub.config.settings import Settings
from jobhub.v1.jobs.claims import ClaimEngine
from jobhub.v1.jobs.models import JobErrorCode, JobStatus, WorkerStatus
from jobhub.v1.jobs.retry import RetryPolicy
from jobhub.v1.jobs.store import JobStore


class TestClaimOrder:
    """Which job a worker gets."""

    async def test_nothing_to_claim(self, db_session, claims):
        assert await claims.claim_next(db_session, "w1") is None

    async def test_claim_sets_lease(self, db_session, claims, make_definition, make_job):
        await make_definition()
        job = await make_job()

        claimed = await claims.claim_next(db_session, "w1")

        assert claimed.id == job.id
        assert claimed.status == JobStatus.RUNNING.value
        assert claimed.worker_id == "w1"
        assert claimed.started_at is not None
        assert claimed.lease_id is not None
        assert await claims.claim_next(db_session, "w1") is None

    async def test_priority_then_age(self, db_session, claims, make_definition, make_job, now):
        await make_definition()
        oldest_low = await make_job(priority=0, created_at=now - timedelta(minutes=3))
        newer_high = await make_job(priority=10, created_at=now - timedelta(minutes=1))
        older_high = await make_job(priority=10, created_at=now - timedelta(minutes=2))

        order = [(await claims.claim_next(db_session, "w1")).id for _ in range(3)]

        assert order == [older_high.id, newer_high.id, oldest_low.id]

    async def test_future_jobs_not_claimed(self, db_session, claims, make_definition, make_job, now):
        await make_definition()
        await make_job(scheduled_at=now + timedelta(hours=1))

        assert await claims.claim_next(db_session, "w1") is None

    async def test_disabled_definition_not_claimed(self, db_session, claims, make_definition, make_job):
        await make_definition(enabled=False)
        await make_job()

        assert await claims.claim_next(db_session, "w1") is None

    async def test_worker_namespaces(self, db_session, test_settings, make_definition, make_job):
        await make_definition("sum", "default")
        await make_definition("sum", "billing")
        await make_job(namespace="default")
        billing_job = await make_job(namespace="billing")

        settings = test_settings.model_copy(update={"job_worker_namespaces": ["billing"]})
        store = JobStore(settings)
        engine = ClaimEngine(settings, store, RetryPolicy(settings, store))

        claimed = await engine.claim_next(db_session, "w1")
        assert claimed.id == billing_job.id
        assert await engine.claim_next(db_session, "w1") is None

    async def test_namespace_cap(self, db_session, test_settings, make_definition, make_job):
        await make_definition("sum", "reports")
        await make_definition("sum", "default")
        for _ in range(3):
            await make_job(namespace="reports")
        default_job = await make_job(namespace="default")

        settings = test_settings.model_copy(
            update={"job_namespace_concurrency": {"reports": 1}}
        )
        store = JobStore(settings)
        engine = ClaimEngine(settings, store, RetryPolicy(settings, store))

        claimed = [await engine.claim_next(db_session, "w1") for _ in range(3)]

        namespaces = sorted(job.namespace for job in claimed if job is not None)
        assert namespaces == ["default", "reports"]
        assert default_job.id in {job.id for job in claimed if job is not None}

    async def test_concurrent_claims_single_winner(
        self, session_factory, claims, make_definition, make_job
    ):
        await make_definition()
        job = await make_job()

        async def claim(worker_id):
            async with session_factory() as session:
                return await claims.claim_next(session, worker_id)

        results = await asyncio.gather(*(claim(f"w{i}") for i in range(5)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].id == job.id


class TestSweeps:
    """Reclaiming leases of dead workers and stalled jobs."""

    async def test_stale_worker_jobs_reclaimed(
        self, db_session, store, claims, make_definition, make_job, register_worker, now
    ):
        await make_definition(max_retries=2)
        job = await make_job(max_retries=2)
        await register_worker("gone", heartbeat_at=now - timedelta(minutes=10))
        await claims.claim_next(db_session, "gone")

        reclaimed = await claims.sweep_stale_workers(db_session)

        assert reclaimed == 1
        stored = await store.read(db_session, job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.retry_count == 1
        assert stored.worker_id is None
        assert stored.error_code == JobErrorCode.WORKER_LOST.value

        (worker,) = await store.list_workers(db_session)
        assert worker.status == WorkerStatus.DEAD.value

    async def test_live_worker_jobs_untouched(
        self, db_session, store, claims, make_definition, make_job, register_worker
    ):
        await make_definition()
        job = await make_job()
        await register_worker("alive")
        await claims.claim_next(db_session, "alive")

        assert await claims.sweep_stale_workers(db_session) == 0
        assert (await store.read(db_session, job.id)).worker_id == "alive"

    async def test_unknown_lease_holder_reclaimed(
        self, db_session, store, claims, make_definition, make_job
    ):
        await make_definition()
        job = await make_job(max_retries=0)
        await claims.claim_next(db_session, "never-registered")

        await claims.sweep_stale_workers(db_session)

        stored = await store.read(db_session, job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == JobErrorCode.WORKER_LOST.value

    async def test_stalled_job_reclaimed(
        self, db_session, test_settings, make_definition, make_job, register_worker, now
    ):
        settings = test_settings.model_copy(update={"job_no_progress_timeout_s": 60})
        store = JobStore(settings)
        engine = ClaimEngine(settings, store, RetryPolicy(settings, store))

        await make_definition()
        job = await make_job(max_retries=2)
        await register_worker("busy")
        await engine.claim_next(db_session, "busy")
        await store.update_status(
            db_session,
            job.id,
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            started_at=now - timedelta(minutes=5),
        )

        reclaimed = await engine.sweep_stalled_jobs(db_session)

        assert reclaimed == 1
        stored = await store.read(db_session, job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.error_code == JobErrorCode.NO_PROGRESS.value

    async def test_stalled_sweep_disabled(self, db_session, claims):
        assert await claims.sweep_stalled_jobs(db_session) == 0

    async def test_definition_progress_timeout_applies_without_default(
        self, db_session, store, claims, make_definition, make_job, register_worker, now
    ):
        await make_definition(progress_timeout_seconds=30)
        await make_definition("sleep")
        limited = await make_job(progress_timeout_seconds=30)
        unlimited = await make_job("sleep")
        await register_worker("busy")
        for _ in range(2):
            claimed = await claims.claim_next(db_session, "busy")
            await store.update_status(
                db_session,
                claimed.id,
                JobStatus.RUNNING,
                JobStatus.RUNNING,
                started_at=now - timedelta(minutes=5),
            )

        reclaimed = await claims.sweep_stalled_jobs(db_session)

        assert reclaimed == 1
        stored = await store.read(db_session, limited.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.error_code == JobErrorCode.NO_PROGRESS.value
        assert stored.error_message == "No progress reported for 30s"
        assert (await store.read(db_session, unlimited.id)).status == JobStatus.RUNNING.value

    async def test_definition_progress_timeout_overrides_default(
        self, db_session, test_settings, make_definition, make_job, register_worker, now
    ):
        settings = test_settings.model_copy(update={"job_no_progress_timeout_s": 60})
        store = JobStore(settings)
        engine = ClaimEngine(settings, store, RetryPolicy(settings, store))

        await make_definition(progress_timeout_seconds=3600)
        job = await make_job(progress_timeout_seconds=3600)
        await register_worker("busy")
        await engine.claim_next(db_session, "busy")
        await store.update_status(
            db_session,
            job.id,
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            started_at=now - timedelta(minutes=5),
        )

        assert await engine.sweep_stalled_jobs(db_session) == 0
        assert (await store.read(db_session, job.id)).status == JobStatus.RUNNING.value

    async def test_stale_attempt_cannot_fail_new_lease_of_same_worker(
        self, db_session, store, claims, retry_policy, make_definition, make_job, now
    ):
        await make_definition()
        job = await make_job(max_retries=2)
        first_attempt = await claims.claim_next(db_session, "w1")
        db_session.expunge(first_attempt)
        await retry_policy.fail(
            db_session,
            first_attempt,
            error_message="No progress",
            error_code=JobErrorCode.NO_PROGRESS,
        )
        await store.update_status(
            db_session,
            job.id,
            JobStatus.PENDING,
            JobStatus.PENDING,
            scheduled_at=now - timedelta(seconds=1),
        )
        second_attempt = await claims.claim_next(db_session, "w1")

        outcome = await retry_policy.fail(
            db_session, first_attempt, error_message="late failure"
        )

        assert outcome is None
        stored = await store.read(db_session, job.id)
        assert second_attempt.lease_id != first_attempt.lease_id
        assert stored.status == JobStatus.RUNNING.value
        assert stored.lease_id == second_attempt.lease_id
        assert stored.retry_count == 1


async def test_failing_job_exhausts_retries(
    db_session, store, claims, retry_policy, make_definition, make_job
):
    """A job failing every attempt runs max_retries + 1 times, then fails."""
    await make_definition("sum", max_retries=2)
    job = await make_job("sum", payload={"a": "x", "b": 1}, max_retries=2)

    attempts = 0
    while True:
        claimed = await claims.claim_next(db_session, "w1")
        if claimed is None:
            break
        attempts += 1
        await retry_policy.fail(
            db_session, claimed, error_message="ValueError: 'a' must be a number"
        )

    stored = await store.read(db_session, job.id)
    assert attempts == 3
    assert stored.status == JobStatus.FAILED.value
    assert stored.retry_count == 2
    assert stored.worker_id is None
