from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings, SettingsDep
from jobhub.infra.database import get_session
from jobhub.v1.core.exceptions import create_success_response
from jobhub.v1.jobs.models import Job, JobStatus, Worker, WorkerStatus
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stalled_jobs_count: int = 0
    queue_depth: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database and worker status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    # Worker health failures don't fail overall health
    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
        except Exception:
            logger.exception("Worker health check failed")
            worker_health = WorkerHealth(active_workers=0)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check registered workers and queue status."""
    now = datetime.now(UTC)
    heartbeat_cutoff = now - timedelta(seconds=settings.job_worker_timeout_s)

    active_workers_result = await session.execute(
        select(func.count(Worker.worker_id)).where(
            Worker.status != WorkerStatus.DEAD.value,
            Worker.last_heartbeat_at >= heartbeat_cutoff,
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Worker.last_heartbeat_at)).where(
            Worker.status != WorkerStatus.DEAD.value
        )
    )
    last_heartbeat = last_heartbeat_result.scalar()

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    stalled = await JobStore(settings).list_stalled_running(
        session, now, settings.job_no_progress_timeout_s
    )
    stalled_jobs_count = len(stalled)

    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stalled_jobs_count=stalled_jobs_count,
        queue_depth=queue_depth,
    )
