"""
Job Store: durable CRUD over jobs, job definitions, workers and log lines.

Every state change of a job goes through ``update_status``, a conditional
update on the current status (and optionally on the lease holder). It affects
zero rows when another actor transitioned the row first; callers treat that
as having lost the race. No other locking exists between workers.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Float,
    Interval,
    and_,
    cast,
    delete,
    desc,
    exists,
    func,
    literal,
    literal_column,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings
from jobhub.v1.core.exceptions import NotFoundError
from jobhub.v1.jobs.models import (
    TERMINAL_STATUSES,
    ExecutionLog,
    Job,
    JobDefinition,
    JobStatus,
    Worker,
    WorkerStatus,
    utcnow,
)
from jobhub.v1.jobs.schemas import JobListFilters

logger = get_logger(__name__)

ONE_SECOND = literal_column("interval '1 second'", Interval)

DEFINITION_FIELDS = (
    "description",
    "enabled",
    "timeout_seconds",
    "max_retries",
    "progress_timeout_seconds",
    "required_role",
    "schedule",
)


def _status_value(status: JobStatus | str) -> str:
    return status.value if isinstance(status, JobStatus) else status


class JobStore:
    """Repository for the job tables."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # Jobs

    async def insert_pending(self, session: AsyncSession, job: Job) -> Job:
        """Insert a new job in the pending state."""
        now = utcnow()
        job.status = JobStatus.PENDING.value
        job.worker_id = None
        job.lease_id = None
        job.completed_at = None
        if job.scheduled_at is None:
            job.scheduled_at = now
        if job.retry_count is None:
            job.retry_count = 0

        session.add(job)
        await session.commit()
        await session.refresh(job)

        logger.info(
            "Job inserted",
            job_id=str(job.id),
            job_name=job.job_name,
            namespace=job.namespace,
            priority=job.priority,
            created_by=job.created_by,
        )
        return job

    async def read(
        self,
        session: AsyncSession,
        job_id: UUID,
        created_by: str | None = None,
    ) -> Job:
        """Read a job, raising NotFoundError if absent or owned by someone else."""
        query = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        if created_by is not None:
            query = query.where(Job.created_by == created_by)

        result = await session.execute(query)
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        filters: JobListFilters,
        created_by: str | None = None,
    ) -> tuple[list[Job], int]:
        """List jobs newest first, returning the page and the total count."""
        base_query = select(Job)

        if created_by is not None:
            base_query = base_query.where(Job.created_by == created_by)
        if filters.status:
            base_query = base_query.where(
                Job.status.in_([_status_value(s) for s in filters.status])
            )
        if filters.namespace:
            base_query = base_query.where(Job.namespace == filters.namespace)
        if filters.job_name:
            base_query = base_query.where(Job.job_name == filters.job_name)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_query = (
            base_query.order_by(desc(Job.created_at), desc(Job.id))
            .offset(filters.offset)
            .limit(filters.limit)
            .execution_options(populate_existing=True)
        )
        jobs = (await session.execute(jobs_query)).scalars().all()
        return list(jobs), total

    async def update_status(
        self,
        session: AsyncSession,
        job_id: UUID,
        from_status: JobStatus | str,
        to_status: JobStatus | str,
        *,
        expected_worker_id: str | None = None,
        expected_lease_id: UUID | None = None,
        commit: bool = True,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-swap the status of a job.

        The update only applies while the row is still in ``from_status``
        (and held by ``expected_worker_id`` under the claim ``expected_lease_id``
        when given). Lease and completion columns are kept consistent with the
        target status; every entry into ``running`` gets a fresh ``lease_id``.

        Returns:
            True if this call performed the transition
        """
        now = utcnow()
        target = _status_value(to_status)

        values: dict[str, Any] = {"status": target, "updated_at": now, **fields}
        if target == JobStatus.RUNNING.value:
            if _status_value(from_status) != target:
                values.setdefault("lease_id", uuid4())
        else:
            values.setdefault("worker_id", None)
            values.setdefault("lease_id", None)
        if target in TERMINAL_STATUSES:
            values.setdefault("completed_at", now)
        else:
            values.setdefault("completed_at", None)

        conditions = [Job.id == job_id, Job.status == _status_value(from_status)]
        if expected_worker_id is not None:
            conditions.append(Job.worker_id == expected_worker_id)
        if expected_lease_id is not None:
            conditions.append(Job.lease_id == expected_lease_id)

        result = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await session.commit()

        return result.rowcount > 0

    async def write_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        lease_id: UUID,
        progress: dict[str, Any],
        reported_at: datetime,
    ) -> bool:
        """
        Store a progress report of a running job.

        Never touches ``status``. Ignored once the claim ``lease_id`` is gone
        or when a newer report already landed.
        """
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.RUNNING.value,
                    Job.lease_id == lease_id,
                    or_(
                        Job.last_progress_at.is_(None),
                        Job.last_progress_at <= reported_at,
                    ),
                )
            )
            .values(progress=progress, last_progress_at=reported_at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def running_counts_by_namespace(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(Job.namespace, func.count(Job.id))
            .where(Job.status == JobStatus.RUNNING.value)
            .group_by(Job.namespace)
        )
        return dict(result.all())

    async def lease_states(
        self, session: AsyncSession, job_ids: list[UUID]
    ) -> dict[UUID, tuple[str, UUID | None, str | None]]:
        """Current (status, lease_id, error_code) of the given jobs."""
        if not job_ids:
            return {}
        result = await session.execute(
            select(Job.id, Job.status, Job.lease_id, Job.error_code).where(
                Job.id.in_(job_ids)
            )
        )
        return {row.id: (row.status, row.lease_id, row.error_code) for row in result}

    async def list_orphaned_running(self, session: AsyncSession) -> list[Job]:
        """Running jobs whose lease holder is dead or unknown."""
        live_worker = exists().where(
            and_(
                Worker.worker_id == Job.worker_id,
                Worker.status != WorkerStatus.DEAD.value,
            )
        )
        result = await session.execute(
            select(Job)
            .where(and_(Job.status == JobStatus.RUNNING.value, ~live_worker))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_stalled_running(
        self,
        session: AsyncSession,
        now: datetime,
        default_timeout_s: float,
    ) -> list[Job]:
        """
        Running jobs without a progress report (or start) within their limit.

        The limit is the job's own ``progress_timeout_seconds``, falling back
        to ``default_timeout_s``. A zero default only sweeps jobs that carry
        their own limit.
        """
        conditions = [Job.status == JobStatus.RUNNING.value]
        if default_timeout_s > 0:
            timeout = func.coalesce(
                cast(Job.progress_timeout_seconds, Float),
                literal(float(default_timeout_s), Float),
            )
        else:
            conditions.append(Job.progress_timeout_seconds.is_not(None))
            timeout = cast(Job.progress_timeout_seconds, Float)

        last_seen = func.coalesce(Job.last_progress_at, Job.started_at)
        conditions.append(last_seen + timeout * ONE_SECOND < now)

        result = await session.execute(
            select(Job)
            .where(and_(*conditions))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_terminal_jobs(
        self, session: AsyncSession, older_than: datetime
    ) -> int:
        result = await session.execute(
            delete(Job).where(
                and_(
                    Job.status.in_(TERMINAL_STATUSES),
                    Job.updated_at < older_than,
                )
            )
        )
        await session.commit()
        return result.rowcount

    # Definitions

    async def get_definition(
        self, session: AsyncSession, name: str, namespace: str
    ) -> JobDefinition | None:
        result = await session.execute(
            select(JobDefinition)
            .where(
                and_(JobDefinition.name == name, JobDefinition.namespace == namespace)
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_definitions(
        self, session: AsyncSession, namespace: str | None = None
    ) -> list[JobDefinition]:
        query = select(JobDefinition).order_by(
            JobDefinition.namespace, JobDefinition.name
        )
        if namespace:
            query = query.where(JobDefinition.namespace == namespace)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def list_namespaces(self, session: AsyncSession) -> list[str]:
        result = await session.execute(
            select(JobDefinition.namespace).distinct().order_by(JobDefinition.namespace)
        )
        return list(result.scalars().all())

    async def upsert_definition(
        self,
        session: AsyncSession,
        name: str,
        namespace: str,
        commit: bool = True,
        **fields: Any,
    ) -> tuple[JobDefinition, str]:
        """
        Create or update a definition, bumping ``version`` on any change.

        Returns:
            The definition and one of "created", "updated" or "unchanged"
        """
        definition = await self.get_definition(session, name, namespace)
        now = utcnow()

        if definition is None:
            definition = JobDefinition(
                name=name,
                namespace=namespace,
                version=1,
                created_at=now,
                updated_at=now,
                **fields,
            )
            session.add(definition)
            outcome = "created"
        else:
            changed = {
                key: value
                for key, value in fields.items()
                if getattr(definition, key) != value
            }
            if changed:
                for key, value in changed.items():
                    setattr(definition, key, value)
                definition.version += 1
                definition.updated_at = now
                outcome = "updated"
            else:
                outcome = "unchanged"

        if commit:
            await session.commit()
            await session.refresh(definition)

        return definition, outcome

    async def delete_definitions(
        self,
        session: AsyncSession,
        namespace: str,
        keep_names: list[str],
        commit: bool = True,
    ) -> int:
        """Delete the definitions of a namespace that are not in ``keep_names``."""
        query = delete(JobDefinition).where(JobDefinition.namespace == namespace)
        if keep_names:
            query = query.where(JobDefinition.name.not_in(keep_names))
        result = await session.execute(query)
        if commit:
            await session.commit()
        return result.rowcount

    # Workers

    async def register_worker(
        self,
        session: AsyncSession,
        worker_id: str,
        hostname: str,
        max_concurrent_jobs: int,
        current_job_count: int = 0,
    ) -> None:
        """Insert (or revive) a worker registration."""
        now = utcnow()
        status = WorkerStatus.BUSY if current_job_count else WorkerStatus.IDLE
        statement = pg_insert(Worker).values(
            worker_id=worker_id,
            hostname=hostname,
            status=status.value,
            current_job_count=current_job_count,
            max_concurrent_jobs=max_concurrent_jobs,
            total_completed=0,
            last_heartbeat_at=now,
            started_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[Worker.worker_id],
            set_={
                "status": status.value,
                "current_job_count": current_job_count,
                "last_heartbeat_at": now,
            },
        )
        await session.execute(statement)
        await session.commit()

    async def touch_worker(
        self,
        session: AsyncSession,
        worker_id: str,
        current_job_count: int,
    ) -> bool:
        """Heartbeat. Returns False when the row is missing or marked dead."""
        status = WorkerStatus.BUSY if current_job_count else WorkerStatus.IDLE
        result = await session.execute(
            update(Worker)
            .where(
                and_(
                    Worker.worker_id == worker_id,
                    Worker.status != WorkerStatus.DEAD.value,
                )
            )
            .values(
                last_heartbeat_at=utcnow(),
                current_job_count=current_job_count,
                status=status.value,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def mark_worker_dead(
        self,
        session: AsyncSession,
        worker_id: str,
        stale_before: datetime | None = None,
    ) -> bool:
        """Mark a worker dead, optionally only if its heartbeat is still stale."""
        conditions = [
            Worker.worker_id == worker_id,
            Worker.status != WorkerStatus.DEAD.value,
        ]
        if stale_before is not None:
            conditions.append(Worker.last_heartbeat_at < stale_before)

        result = await session.execute(
            update(Worker)
            .where(and_(*conditions))
            .values(status=WorkerStatus.DEAD.value, current_job_count=0)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def find_stale_workers(
        self, session: AsyncSession, cutoff: datetime
    ) -> list[str]:
        result = await session.execute(
            select(Worker.worker_id).where(
                and_(
                    Worker.status != WorkerStatus.DEAD.value,
                    Worker.last_heartbeat_at < cutoff,
                )
            )
        )
        return list(result.scalars().all())

    async def list_workers(
        self, session: AsyncSession, include_dead: bool = True
    ) -> list[Worker]:
        query = select(Worker).order_by(desc(Worker.last_heartbeat_at))
        if not include_dead:
            query = query.where(Worker.status != WorkerStatus.DEAD.value)
        result = await session.execute(
            query.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def increment_completed(self, session: AsyncSession, worker_id: str) -> None:
        await session.execute(
            update(Worker)
            .where(Worker.worker_id == worker_id)
            .values(total_completed=Worker.total_completed + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def delete_dead_workers(
        self, session: AsyncSession, older_than: datetime
    ) -> int:
        result = await session.execute(
            delete(Worker).where(
                and_(
                    Worker.status == WorkerStatus.DEAD.value,
                    Worker.last_heartbeat_at < older_than,
                )
            )
        )
        await session.commit()
        return result.rowcount

    # Execution logs

    async def append_log_line(
        self,
        session: AsyncSession,
        job_id: UUID,
        line_number: int,
        level: str,
        message: str,
    ) -> None:
        session.add(
            ExecutionLog(
                job_id=job_id,
                line_number=line_number,
                level=level,
                message=message,
            )
        )
        await session.commit()

    async def list_log_lines(
        self, session: AsyncSession, job_id: UUID, after_line: int = 0
    ) -> list[ExecutionLog]:
        """Console lines of a job, only those numbered above ``after_line``."""
        result = await session.execute(
            select(ExecutionLog)
            .where(
                and_(
                    ExecutionLog.job_id == job_id,
                    ExecutionLog.line_number > after_line,
                )
            )
            .order_by(ExecutionLog.line_number, ExecutionLog.id)
        )
        return list(result.scalars().all())
