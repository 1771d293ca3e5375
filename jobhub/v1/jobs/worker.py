"""
Postgres-backed worker pool with heartbeats, lease watching and graceful shutdown.
"""

import asyncio
import os
import signal
import socket
from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobhub.config.logging import bind_worker_context, get_logger, setup_logging
from jobhub.config.settings import Settings
from jobhub.config.settings import settings as default_settings
from jobhub.infra.database import Database
from jobhub.v1.jobs.claims import ClaimEngine
from jobhub.v1.jobs.models import Job, JobErrorCode, JobStatus
from jobhub.v1.jobs.progress import JobReporter, ProgressBridge
from jobhub.v1.jobs.retry import RetryPolicy
from jobhub.v1.jobs.runtime import (
    CallerIdentity,
    JobContext,
    JobRuntime,
    RegistryRuntime,
    RuntimeOutcome,
)
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)


@dataclass
class ActiveJob:
    """A job currently executing in one of this worker's slots."""

    job: Job
    ctx: JobContext
    reporter: JobReporter
    task: asyncio.Task | None = None
    abort_reason: str | None = None


class WorkerPool:
    """
    Fixed-size pool of execution slots in one process.

    Features:
    - Each slot claims through the claim engine and runs one job at a time
    - Heartbeats independent of job activity
    - Periodic stale-worker and no-progress sweeps
    - Lease watcher: cooperative cancellation and forced abort on lease loss
    - Graceful shutdown with a bounded grace period
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        store: JobStore | None = None,
        claims: ClaimEngine | None = None,
        retry_policy: RetryPolicy | None = None,
        runtime: JobRuntime | None = None,
        progress: ProgressBridge | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.store = store or JobStore(settings)
        self.retry_policy = retry_policy or RetryPolicy(settings, self.store)
        self.claims = claims or ClaimEngine(settings, self.store, self.retry_policy)
        self.runtime = runtime or RegistryRuntime(session_factory)
        self.progress = progress or ProgressBridge(session_factory, self.store)

        self.hostname = socket.gethostname()
        self.worker_id = f"{self.hostname}-{os.getpid()}-{uuid4().hex[:8]}"
        self.running = False
        # Keyed by lease_id: the same job may be leased to this worker again
        self.active_jobs: dict[UUID, ActiveJob] = {}

        self._slot_tasks: list[asyncio.Task] = []
        self._background_tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Register the worker and start slots and background loops."""
        if self.running:
            raise RuntimeError("Worker is already running")

        async with self.session_factory() as session:
            await self.store.register_worker(
                session,
                self.worker_id,
                self.hostname,
                self.settings.job_concurrency,
            )

        self.running = True
        self._stopping.clear()
        self._stopped.clear()

        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            concurrency=self.settings.job_concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
            namespaces=self.settings.job_worker_namespaces or "all",
        )

        self._slot_tasks = [
            asyncio.create_task(self._slot_loop(slot), name=f"job-slot-{slot}")
            for slot in range(self.settings.job_concurrency)
        ]
        self._background_tasks = [
            asyncio.create_task(self._heartbeat_loop(), name="job-heartbeat"),
            asyncio.create_task(self._sweep_loop(), name="job-sweep"),
            asyncio.create_task(self._lease_watch_loop(), name="job-lease-watch"),
        ]

    async def run(self) -> None:
        """Start the worker and block until it has been stopped."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """
        Stop the worker gracefully.

        Claiming stops immediately. In-flight jobs get the shutdown grace
        period; whatever is still running afterwards is abandoned without a
        state write and recovered by the stale-worker sweep.
        """
        if not self.running:
            return

        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self._stopping.set()

        if self._slot_tasks:
            _, pending = await asyncio.wait(
                self._slot_tasks, timeout=self.settings.job_shutdown_grace_s
            )
            if pending:
                logger.warning(
                    "Worker stopped with active jobs",
                    worker_id=self.worker_id,
                    active_jobs=len(self.active_jobs),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        # The heartbeat must not re-register the worker after it is marked dead
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)

        try:
            async with self.session_factory() as session:
                await self.store.mark_worker_dead(session, self.worker_id)
        except Exception:
            logger.exception("Failed to deregister worker", worker_id=self.worker_id)

        self._slot_tasks = []
        self._background_tasks = []
        self._stopped.set()
        logger.info("Job worker stopped", worker_id=self.worker_id)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the worker is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _slot_loop(self, slot: int) -> None:
        """Claim and run jobs one at a time until the worker stops."""
        poll_interval = self.settings.job_poll_interval_ms / 1000

        while self.running:
            try:
                async with self.session_factory() as session:
                    job = await self.claims.claim_next(session, self.worker_id)
            except Exception:
                logger.exception("Error claiming job", worker_id=self.worker_id, slot=slot)
                await self._sleep(poll_interval * 5)
                continue

            if job is None:
                await self._sleep(poll_interval)
                continue

            await self._run_job(job)

    async def _run_job(self, job: Job) -> None:
        """Execute one claimed job and record its outcome."""
        job_logger = logger.bind(
            job_id=str(job.id),
            job_name=job.job_name,
            namespace=job.namespace,
            worker_id=self.worker_id,
        )

        try:
            async with self.session_factory() as session:
                definition = await self.store.get_definition(
                    session, job.job_name, job.namespace
                )
                if definition is None:
                    await self.retry_policy.fail(
                        session,
                        job,
                        error_message=f"Job definition '{job.namespace}/{job.job_name}' not found",
                        worker_id=self.worker_id,
                    )
                    return
        except Exception:
            job_logger.exception("Failed to resolve job definition")
            return

        reporter = self.progress.reporter(job.id, job.lease_id)
        ctx = JobContext(
            job_id=job.id,
            job_name=job.job_name,
            namespace=job.namespace,
            retry_count=job.retry_count,
            payload=job.payload or {},
            user=CallerIdentity(
                id=job.created_by, role=job.caller_role, email=job.caller_email
            ),
            progress_sink=reporter.progress,
            log_sink=reporter.log_line,
        )
        active = ActiveJob(job=job, ctx=ctx, reporter=reporter)
        self.active_jobs[job.lease_id] = active

        job_logger.info(
            "Processing job started",
            retry_count=job.retry_count,
            timeout_seconds=definition.timeout_seconds,
            definition_version=definition.version,
        )

        try:
            active.task = asyncio.create_task(
                asyncio.wait_for(
                    self.runtime.invoke(definition, ctx),
                    timeout=definition.timeout_seconds,
                )
            )
            error_code = JobErrorCode.RUNTIME_ERROR
            try:
                outcome = await active.task
            except asyncio.TimeoutError:
                ctx.token.cancel()
                error_code = JobErrorCode.TIMEOUT
                outcome = RuntimeOutcome.failed(
                    f"Job timed out after {definition.timeout_seconds}s", logs=ctx.logs
                )
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                job_logger.warning(
                    "Job execution aborted", reason=active.abort_reason
                )
                return
            except Exception as e:
                job_logger.exception("Runtime invocation failed")
                outcome = RuntimeOutcome.failed(
                    f"{e.__class__.__name__}: {e}", logs=ctx.logs
                )

            await reporter.flush()
            await self._record_outcome(job, outcome, error_code)
        finally:
            self.active_jobs.pop(job.lease_id, None)

    async def _record_outcome(
        self, job: Job, outcome: RuntimeOutcome, error_code: JobErrorCode
    ) -> None:
        """Persist the outcome, conditional on still holding the lease."""
        job_logger = logger.bind(job_id=str(job.id), job_name=job.job_name)

        try:
            async with self.session_factory() as session:
                if outcome.status == JobStatus.COMPLETED:
                    stored = await self.store.update_status(
                        session,
                        job.id,
                        JobStatus.RUNNING,
                        JobStatus.COMPLETED,
                        expected_worker_id=self.worker_id,
                        expected_lease_id=job.lease_id,
                        result=outcome.result,
                        logs=outcome.logs,
                        error_message=None,
                        error_code=None,
                    )
                    if stored:
                        await self.store.increment_completed(session, self.worker_id)
                        job_logger.info("Processing job completed successfully")
                    else:
                        job_logger.info("Result discarded, lease no longer held")
                    return

                if outcome.status == JobStatus.CANCELLED:
                    stored = await self.store.update_status(
                        session,
                        job.id,
                        JobStatus.RUNNING,
                        JobStatus.CANCELLED,
                        expected_worker_id=self.worker_id,
                        expected_lease_id=job.lease_id,
                        error_message=outcome.error,
                        error_code=JobErrorCode.CANCELLED.value,
                        logs=outcome.logs,
                    )
                    job_logger.info("Job cancelled", recorded=stored)
                    return

                await self.retry_policy.fail(
                    session,
                    job,
                    error_message=outcome.error or "Job failed",
                    error_code=error_code,
                    logs=outcome.logs,
                    worker_id=self.worker_id,
                )
        except Exception as e:
            job_logger.exception("Failed to record job outcome")
            if outcome.status != JobStatus.COMPLETED:
                return
            # Most likely a result that cannot be stored; count it as a failed attempt.
            try:
                async with self.session_factory() as session:
                    await self.retry_policy.fail(
                        session,
                        job,
                        error_message=f"Result could not be stored: {e}",
                        logs=outcome.logs,
                        worker_id=self.worker_id,
                    )
            except Exception:
                job_logger.exception("Failed to record result storage failure")

    async def _heartbeat_loop(self) -> None:
        """Refresh liveness regardless of job activity."""
        while True:
            try:
                async with self.session_factory() as session:
                    alive = await self.store.touch_worker(
                        session, self.worker_id, len(self.active_jobs)
                    )
                    if not alive:
                        logger.warning(
                            "Worker registration lost, re-registering",
                            worker_id=self.worker_id,
                        )
                        await self.store.register_worker(
                            session,
                            self.worker_id,
                            self.hostname,
                            self.settings.job_concurrency,
                            current_job_count=len(self.active_jobs),
                        )
            except Exception:
                logger.exception("Error updating heartbeat", worker_id=self.worker_id)

            await asyncio.sleep(self.settings.job_heartbeat_interval_s)

    async def _sweep_loop(self) -> None:
        """Reclaim leases of dead workers and stalled jobs."""
        while True:
            await asyncio.sleep(self.settings.job_sweep_interval_s)
            if not self.running:
                continue
            try:
                async with self.session_factory() as session:
                    await self.claims.sweep(session)
            except Exception:
                logger.exception("Error in stale worker sweep", worker_id=self.worker_id)

    async def _lease_watch_loop(self) -> None:
        """Propagate cancellation and lease loss to in-flight jobs."""
        interval = self.settings.job_cancel_check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            if not self.active_jobs:
                continue
            try:
                await self.check_leases()
            except Exception:
                logger.exception("Error checking job leases", worker_id=self.worker_id)

    async def check_leases(self) -> None:
        """
        Compare in-flight jobs with their rows.

        A user cancellation flips the job's cancellation token. Any other
        loss of the lease aborts the local execution, including a newer claim
        of the same job, even by this worker.
        """
        job_ids = [active.job.id for active in self.active_jobs.values()]
        async with self.session_factory() as session:
            states = await self.store.lease_states(session, job_ids)

        for lease_id, active in list(self.active_jobs.items()):
            job_id = active.job.id
            state = states.get(job_id)
            if state is None:
                self._abort(active, "deleted")
                continue

            status, current_lease_id, error_code = state
            if status == JobStatus.RUNNING.value and current_lease_id == lease_id:
                continue

            if (
                status == JobStatus.CANCELLED.value
                and error_code == JobErrorCode.CANCELLED.value
            ):
                if not active.ctx.token.is_cancelled:
                    logger.info("Cancellation requested", job_id=str(job_id))
                    active.ctx.token.cancel()
                continue

            if status == JobStatus.RUNNING.value:
                self._abort(active, "claimed again")
            else:
                self._abort(active, error_code or status)

    def _abort(self, active: ActiveJob, reason: str) -> None:
        active.ctx.token.cancel()
        if active.task is not None and not active.task.done():
            active.abort_reason = reason
            logger.warning(
                "Aborting job after lease loss",
                job_id=str(active.job.id),
                reason=reason,
            )
            active.task.cancel()


async def _serve(settings: Settings) -> None:
    database = Database(settings)
    pool = WorkerPool(settings, database.SessionLocal)
    bind_worker_context(pool.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(pool.stop()))

    try:
        await pool.run()
    finally:
        await database.close()


def run_worker() -> None:
    """Entry point of a worker process."""
    setup_logging()

    from jobhub.v1.jobs.registry_init import register_job_handlers

    register_job_handlers()
    asyncio.run(_serve(default_settings))


if __name__ == "__main__":
    run_worker()
