"""
Claim engine: leases pending jobs to workers and reclaims lost leases.

A claim is a single conditional update ``pending -> running`` that only
succeeds while the row is still pending, so at most one worker can ever hold
a given job. ``FOR UPDATE SKIP LOCKED`` on the candidate query only reduces
contention between concurrent claimers; correctness rests on the update.
"""

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings
from jobhub.v1.jobs.models import Job, JobDefinition, JobErrorCode, JobStatus, utcnow
from jobhub.v1.jobs.retry import RetryPolicy
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)

CLAIM_CANDIDATES = 5


class ClaimEngine:
    """Selects and leases the next eligible job; runs the reclaim sweeps."""

    def __init__(self, settings: Settings, store: JobStore, retry_policy: RetryPolicy):
        self.settings = settings
        self.store = store
        self.retry_policy = retry_policy

    async def _saturated_namespaces(self, session: AsyncSession) -> list[str]:
        """Namespaces whose running job count reached their cap."""
        if not (
            self.settings.job_default_namespace_concurrency
            or self.settings.job_namespace_concurrency
        ):
            return []

        running = await self.store.running_counts_by_namespace(session)
        return [
            namespace
            for namespace, count in running.items()
            if 0 < self.settings.namespace_cap(namespace) <= count
        ]

    async def claim_next(self, session: AsyncSession, worker_id: str) -> Job | None:
        """
        Lease the next eligible pending job to ``worker_id``.

        Eligible: pending, due, definition enabled, namespace under its cap
        and served by this worker. Highest priority first, then oldest.

        Returns:
            The claimed job (now running), or None when nothing is eligible
        """
        now = utcnow()
        saturated = await self._saturated_namespaces(session)

        conditions = [
            Job.status == JobStatus.PENDING.value,
            Job.scheduled_at <= now,
            JobDefinition.enabled.is_(True),
        ]
        if saturated:
            conditions.append(Job.namespace.not_in(saturated))
        if self.settings.job_worker_namespaces:
            conditions.append(Job.namespace.in_(self.settings.job_worker_namespaces))

        candidates_query = (
            select(Job.id)
            .join(
                JobDefinition,
                and_(
                    JobDefinition.name == Job.job_name,
                    JobDefinition.namespace == Job.namespace,
                ),
            )
            .where(and_(*conditions))
            .order_by(Job.priority.desc(), Job.created_at.asc(), Job.id.asc())
            .limit(CLAIM_CANDIDATES)
            .with_for_update(of=Job, skip_locked=True)
        )
        candidate_ids = (await session.execute(candidates_query)).scalars().all()

        for job_id in candidate_ids:
            claimed = await self.store.update_status(
                session,
                job_id,
                JobStatus.PENDING,
                JobStatus.RUNNING,
                commit=False,
                worker_id=worker_id,
                lease_id=uuid4(),
                started_at=now,
                last_progress_at=None,
                progress=None,
                error_message=None,
                error_code=None,
                result=None,
            )
            if claimed:
                job = await self.store.read(session, job_id)
                await session.commit()
                logger.info(
                    "Job claimed",
                    job_id=str(job.id),
                    job_name=job.job_name,
                    namespace=job.namespace,
                    priority=job.priority,
                    retry_count=job.retry_count,
                    worker_id=worker_id,
                    lease_id=str(job.lease_id),
                )
                return job

        await session.commit()
        return None

    async def sweep_stale_workers(self, session: AsyncSession) -> int:
        """
        Mark workers with an expired heartbeat dead and reclaim their leases.

        Running jobs leased to a dead or unknown worker are treated as a
        failed attempt.

        Returns:
            Number of jobs reclaimed
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.job_worker_timeout_s)

        for stale_worker_id in await self.store.find_stale_workers(session, cutoff):
            if await self.store.mark_worker_dead(
                session, stale_worker_id, stale_before=cutoff
            ):
                logger.warning(
                    "Worker marked dead",
                    stale_worker_id=stale_worker_id,
                    timeout_seconds=self.settings.job_worker_timeout_s,
                )

        reclaimed = 0
        for job in await self.store.list_orphaned_running(session):
            outcome = await self.retry_policy.fail(
                session,
                job,
                error_message=f"Worker {job.worker_id} stopped heartbeating",
                error_code=JobErrorCode.WORKER_LOST,
                logs=job.logs,
            )
            if outcome is not None:
                reclaimed += 1

        retention = self.settings.job_dead_worker_retention_s
        await self.store.delete_dead_workers(session, now - timedelta(seconds=retention))

        if reclaimed:
            logger.warning("Reclaimed jobs from dead workers", reclaimed_count=reclaimed)
        return reclaimed

    async def sweep_stalled_jobs(self, session: AsyncSession) -> int:
        """
        Reclaim running jobs that stopped reporting progress.

        Independent of the lease holder's heartbeat, so a job looping forever
        inside a healthy worker is still recovered. A job uses the
        ``progress_timeout_seconds`` of its definition when set, otherwise
        ``job_no_progress_timeout_s``; a zero default disables the fallback.

        Returns:
            Number of jobs reclaimed
        """
        default_timeout = self.settings.job_no_progress_timeout_s

        reclaimed = 0
        stalled = await self.store.list_stalled_running(
            session, utcnow(), default_timeout
        )
        for job in stalled:
            timeout_seconds = job.progress_timeout_seconds or default_timeout
            outcome = await self.retry_policy.fail(
                session,
                job,
                error_message=f"No progress reported for {timeout_seconds:g}s",
                error_code=JobErrorCode.NO_PROGRESS,
                logs=job.logs,
            )
            if outcome is not None:
                reclaimed += 1

        if reclaimed:
            logger.warning(
                "Reclaimed stalled jobs",
                reclaimed_count=reclaimed,
                default_timeout_seconds=default_timeout,
            )
        return reclaimed

    async def sweep(self, session: AsyncSession) -> int:
        """Run both reclaim sweeps."""
        return await self.sweep_stale_workers(session) + await self.sweep_stalled_jobs(
            session
        )
