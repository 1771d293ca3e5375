"""
Built-in job handlers.

Handlers implement the JobHandler protocol and are registered in the job
registry under the name of the job definition they execute.
"""

import asyncio
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings
from jobhub.v1.jobs.models import utcnow
from jobhub.v1.jobs.runtime import JobContext
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)


class SumHandler:
    """
    Adds two numbers.

    Payload expected:
    {
        "a": 2,
        "b": 3
    }
    """

    def handle(self, session: None, ctx: JobContext) -> dict[str, Any]:
        a = ctx.payload.get("a")
        b = ctx.payload.get("b")
        for key, value in (("a", a), ("b", b)):
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ValueError(f"'{key}' must be a number, got {value!r}")

        ctx.log(f"Adding {a} and {b}")
        ctx.report_progress(50, "Adding")
        total = a + b
        ctx.report_progress(100, "Done")
        return {"sum": total}


class SleepHandler:
    """
    Waits for a number of seconds, reporting progress once per second.

    Payload expected:
    {
        "seconds": 10
    }
    """

    async def handle(self, session: AsyncSession, ctx: JobContext) -> dict[str, Any]:
        seconds = float(ctx.payload.get("seconds", 1))
        if seconds < 0:
            raise ValueError("'seconds' must not be negative")

        elapsed = 0.0
        while elapsed < seconds:
            ctx.raise_if_cancelled()
            step = min(1.0, seconds - elapsed)
            await asyncio.sleep(step)
            elapsed += step
            ctx.report_progress(
                elapsed / seconds * 100, f"Slept {elapsed:g}s of {seconds:g}s"
            )

        ctx.log(f"Slept {seconds:g}s")
        return {"slept_seconds": seconds}


class MaintenanceCleanupHandler:
    """
    Deletes terminal jobs past the retention period.

    Payload expected:
    {
        "retention_days": 30  # optional, defaults to JOB_CLEANUP_AFTER_DAYS
    }
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = JobStore(settings)

    async def handle(self, session: AsyncSession, ctx: JobContext) -> dict[str, Any]:
        retention_days = int(
            ctx.payload.get("retention_days", self.settings.job_cleanup_after_days)
        )
        cutoff = utcnow() - timedelta(days=retention_days)

        ctx.report_progress(0, "Deleting old jobs")
        deleted_count = await self.store.delete_terminal_jobs(session, cutoff)
        ctx.report_progress(100, "Cleanup finished")
        ctx.log(f"Deleted {deleted_count} jobs older than {retention_days} days")

        logger.info(
            "Job cleanup completed",
            deleted_count=deleted_count,
            retention_days=retention_days,
        )
        return {"deleted_jobs": deleted_count, "retention_days": retention_days}
