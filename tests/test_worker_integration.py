"""
End-to-end worker tests: real worker pool, real handlers, PostgreSQL.
"""

import asyncio

import pytest

from jobhub.v1.jobs.models import JobErrorCode, JobStatus, WorkerStatus
from jobhub.v1.jobs.registry_init import register_job_handlers
from jobhub.v1.jobs.worker import WorkerPool


@pytest.fixture
async def worker(test_settings, session_factory):
    register_job_handlers()
    pool = WorkerPool(test_settings, session_factory)
    yield pool
    await pool.stop()


async def wait_for_job(session_factory, store, job_id, *statuses, timeout=10.0):
    async def _poll():
        while True:
            async with session_factory() as session:
                job = await store.read(session, job_id)
            if job.status in statuses:
                return job
            await asyncio.sleep(0.05)

    return await asyncio.wait_for(_poll(), timeout=timeout)


async def test_sum_job_completes(worker, session_factory, store, make_definition, make_job):
    await make_definition("sum")
    job = await make_job("sum", payload={"a": 2, "b": 3})

    await worker.start()
    done = await wait_for_job(session_factory, store, job.id, "completed")

    assert done.result == {"sum": 5}
    assert done.progress_percent == 100
    assert done.worker_id is None
    assert "Adding 2 and 3" in done.logs

    async with session_factory() as session:
        lines = await store.list_log_lines(session, job.id)
        workers = await store.list_workers(session)
    assert [line.message for line in lines] == ["Adding 2 and 3"]
    assert workers[0].total_completed == 1


async def test_bad_payload_retries_until_failed(
    worker, session_factory, store, make_definition, make_job
):
    await make_definition("sum", max_retries=2)
    job = await make_job("sum", payload={"a": "x", "b": 1}, max_retries=2)

    await worker.start()
    failed = await wait_for_job(session_factory, store, job.id, "failed")

    assert failed.retry_count == 2
    assert failed.error_code == JobErrorCode.RUNTIME_ERROR.value
    assert "must be a number" in failed.error_message


async def test_timeout_fails_job(worker, session_factory, store, make_definition, make_job):
    await make_definition("sleep", max_retries=0, timeout_seconds=1)
    job = await make_job("sleep", payload={"seconds": 30}, max_retries=0)

    await worker.start()
    failed = await wait_for_job(session_factory, store, job.id, "failed")

    assert failed.error_code == JobErrorCode.TIMEOUT.value


async def test_cancel_running_job(
    worker, session_factory, store, make_definition, make_job, db_session
):
    await make_definition("sleep")
    job = await make_job("sleep", payload={"seconds": 30})

    await worker.start()
    await wait_for_job(session_factory, store, job.id, "running")
    await store.update_status(
        db_session,
        job.id,
        JobStatus.RUNNING,
        JobStatus.CANCELLED,
        error_message="Job was cancelled",
        error_code=JobErrorCode.CANCELLED.value,
    )

    async def _drained():
        while worker.active_jobs:
            await asyncio.sleep(0.05)

    await asyncio.wait_for(_drained(), timeout=5)
    cancelled = await wait_for_job(session_factory, store, job.id, "cancelled")
    assert cancelled.error_code == JobErrorCode.CANCELLED.value


async def test_stop_deregisters(worker, session_factory, store):
    await worker.start()
    await worker.stop()

    async with session_factory() as session:
        (registration,) = await store.list_workers(session)
    assert registration.worker_id == worker.worker_id
    assert registration.status == WorkerStatus.DEAD.value
