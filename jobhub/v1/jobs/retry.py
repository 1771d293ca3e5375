"""
Retry & failure policy.

A failed attempt (exception, error result, timeout, lost worker or stalled
job) goes back to ``pending`` with exponential backoff while the retry budget
lasts, and ends ``failed`` once it is exhausted.
"""

import random
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings
from jobhub.v1.jobs.models import Job, JobErrorCode, JobStatus, utcnow
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)


class RetryPolicy:
    """Decides between re-enqueue with backoff and permanent failure."""

    def __init__(self, settings: Settings, store: JobStore):
        self.settings = settings
        self.store = store

    def backoff_delay(self, retry_count: int) -> float:
        """Delay in seconds before the next attempt: base * 2^retry_count, capped."""
        base_delay = self.settings.job_backoff_base_ms / 1000
        max_delay = self.settings.job_max_backoff_s

        delay = base_delay * (2 ** retry_count)

        jitter_ratio = self.settings.job_backoff_jitter
        if jitter_ratio:
            delay += delay * jitter_ratio * (2 * random.random() - 1)

        return max(0.0, min(max_delay, delay))

    def next_run_at(self, retry_count: int, now: datetime | None = None) -> datetime:
        now = now or utcnow()
        return now + timedelta(seconds=self.backoff_delay(retry_count))

    async def fail(
        self,
        session: AsyncSession,
        job: Job,
        *,
        error_message: str,
        error_code: JobErrorCode = JobErrorCode.RUNTIME_ERROR,
        logs: str | None = None,
        worker_id: str | None = None,
        lease_id: UUID | None = None,
    ) -> JobStatus | None:
        """
        Record a failed attempt of a running job.

        Args:
            job: The job as it was leased (its retry_count is the attempt's)
            worker_id: Lease holder the transition is conditional on; the
                job's own worker_id when omitted
            lease_id: Claim the transition is conditional on; the job's own
                lease_id when omitted. A newer claim of the same job by the
                same worker does not match.

        Returns:
            The status the job moved to, or None if the lease was already
            gone and nothing was written
        """
        lease_holder = worker_id or job.worker_id
        lease = lease_id or job.lease_id
        bind = {"job_id": str(job.id), "job_name": job.job_name, "error_code": error_code.value}

        if job.can_retry():
            next_run_at = self.next_run_at(job.retry_count)
            moved = await self.store.update_status(
                session,
                job.id,
                JobStatus.RUNNING,
                JobStatus.PENDING,
                expected_worker_id=lease_holder,
                expected_lease_id=lease,
                retry_count=job.retry_count + 1,
                scheduled_at=next_run_at,
                error_message=error_message,
                error_code=error_code.value,
                logs=logs,
            )
            if not moved:
                logger.info("Retry skipped, lease no longer held", **bind)
                return None

            logger.info(
                "Job scheduled for retry",
                retry_count=job.retry_count + 1,
                max_retries=job.max_retries,
                next_run_at=next_run_at.isoformat(),
                **bind,
            )
            return JobStatus.PENDING

        moved = await self.store.update_status(
            session,
            job.id,
            JobStatus.RUNNING,
            JobStatus.FAILED,
            expected_worker_id=lease_holder,
            expected_lease_id=lease,
            error_message=error_message,
            error_code=error_code.value,
            logs=logs,
        )
        if not moved:
            logger.info("Failure not recorded, lease no longer held", **bind)
            return None

        logger.warning(
            "Job failed permanently",
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            error=error_message,
            **bind,
        )
        return JobStatus.FAILED
