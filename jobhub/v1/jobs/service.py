"""
Job service: the application boundary for submitting and managing jobs.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings
from jobhub.v1.core.exceptions import ConflictError, ValidationError
from jobhub.v1.core.security import Principal
from jobhub.v1.jobs.access import AccessControl
from jobhub.v1.jobs.models import (
    ExecutionLog,
    Job,
    JobDefinition,
    JobErrorCode,
    JobStatus,
    Worker,
    utcnow,
)
from jobhub.v1.jobs.schemas import (
    DefinitionSyncRequest,
    DefinitionSyncResponse,
    DefinitionSyncSummary,
    JobDefinitionUpsert,
    JobListFilters,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    JobSubmitRequest,
    JobSubmitResponse,
)
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)

CANCEL_ATTEMPTS = 3


def to_job_response(job: Job) -> JobResponse:
    return JobResponse.model_validate(job)


class JobService:
    """Service for submitting, querying and controlling jobs."""

    def __init__(self, settings: Settings, store: JobStore | None = None):
        self.settings = settings
        self.store = store or JobStore(settings)
        self.access = AccessControl(settings)

    async def _enabled_definition(
        self, session: AsyncSession, job_name: str, namespace: str
    ) -> JobDefinition:
        definition = await self.store.get_definition(session, job_name, namespace)
        if definition is None:
            raise ValidationError(
                f"Unknown job '{namespace}/{job_name}'",
                details={"job_name": job_name, "namespace": namespace},
            )
        if not definition.enabled:
            raise ValidationError(
                f"Job '{namespace}/{job_name}' is disabled",
                details={"job_name": job_name, "namespace": namespace},
            )
        return definition

    async def submit(
        self,
        session: AsyncSession,
        principal: Principal | None,
        request: JobSubmitRequest,
    ) -> JobSubmitResponse:
        """
        Submit a job for asynchronous execution.

        Raises:
            UnauthorizedError: No caller identity
            ValidationError: Unknown or disabled job definition
            ForbiddenError: Caller lacks the definition's required role
        """
        principal = self.access.require_authenticated(principal)
        definition = await self._enabled_definition(
            session, request.job_name, request.namespace
        )
        self.access.check_submit(principal, definition)

        job = await self.store.insert_pending(
            session,
            Job(
                job_name=definition.name,
                namespace=definition.namespace,
                payload=request.payload,
                priority=request.priority,
                scheduled_at=request.scheduled_at,
                retry_count=0,
                max_retries=definition.max_retries,
                progress_timeout_seconds=definition.progress_timeout_seconds,
                created_by=principal.user_id,
                caller_role=principal.role,
                caller_email=principal.email,
            ),
        )
        return JobSubmitResponse(job_id=job.id, status=job.status)

    async def get_job(
        self, session: AsyncSession, principal: Principal | None, job_id: UUID
    ) -> Job:
        principal = self.access.require_authenticated(principal)
        return await self.store.read(
            session, job_id, created_by=self.access.owner_filter(principal)
        )

    async def list_jobs(
        self,
        session: AsyncSession,
        principal: Principal | None,
        filters: JobListFilters,
    ) -> JobListResponse:
        principal = self.access.require_authenticated(principal)
        jobs, total = await self.store.list_jobs(
            session, filters, created_by=self.access.owner_filter(principal)
        )
        return JobListResponse(
            jobs=[to_job_response(job) for job in jobs],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
        )

    async def get_logs(
        self,
        session: AsyncSession,
        principal: Principal | None,
        job_id: UUID,
        after_line: int = 0,
    ) -> list[ExecutionLog]:
        job = await self.get_job(session, principal, job_id)
        return await self.store.list_log_lines(session, job.id, after_line=after_line)

    async def cancel(
        self, session: AsyncSession, principal: Principal | None, job_id: UUID
    ) -> Job:
        """
        Cancel a pending or running job.

        Takes effect in the row immediately; a running job's worker observes
        it through its lease watcher and stops cooperatively.

        Raises:
            ConflictError: The job is already terminal
        """
        principal = self.access.require_authenticated(principal)
        owner = self.access.owner_filter(principal)

        for _ in range(CANCEL_ATTEMPTS):
            job = await self.store.read(session, job_id, created_by=owner)
            if job.is_terminal():
                raise ConflictError(
                    f"Job is already {job.status}",
                    details={"job_id": str(job_id), "status": job.status},
                )

            cancelled = await self.store.update_status(
                session,
                job.id,
                job.status,
                JobStatus.CANCELLED,
                error_message="Job was cancelled",
                error_code=JobErrorCode.CANCELLED.value,
            )
            if cancelled:
                logger.info(
                    "Job cancelled",
                    job_id=str(job_id),
                    previous_status=job.status,
                    user_id=principal.user_id,
                )
                return await self.store.read(session, job_id)

        # The row kept changing under us; report the state we last saw.
        job = await self.store.read(session, job_id, created_by=owner)
        raise ConflictError(
            "Job changed state concurrently, try again",
            details={"job_id": str(job_id), "status": job.status},
        )

    async def retry(
        self, session: AsyncSession, principal: Principal | None, job_id: UUID
    ) -> JobSubmitResponse:
        """
        Resubmit a failed job as a new pending job.

        The new job keeps the original owner, payload and priority and starts
        with a fresh retry budget.

        Raises:
            ConflictError: The job is not failed
        """
        principal = self.access.require_authenticated(principal)
        original = await self.store.read(
            session, job_id, created_by=self.access.owner_filter(principal)
        )
        if original.status != JobStatus.FAILED.value:
            raise ConflictError(
                "Only failed jobs can be retried",
                details={"job_id": str(job_id), "status": original.status},
            )

        definition = await self._enabled_definition(
            session, original.job_name, original.namespace
        )
        self.access.check_submit(principal, definition)

        job = await self.store.insert_pending(
            session,
            Job(
                job_name=original.job_name,
                namespace=original.namespace,
                payload=original.payload,
                priority=original.priority,
                retry_count=0,
                max_retries=definition.max_retries,
                progress_timeout_seconds=definition.progress_timeout_seconds,
                created_by=original.created_by,
                caller_role=original.caller_role,
                caller_email=original.caller_email,
            ),
        )
        logger.info(
            "Job resubmitted",
            original_job_id=str(job_id),
            job_id=str(job.id),
            user_id=principal.user_id,
        )
        return JobSubmitResponse(job_id=job.id, status=job.status)

    async def terminate(
        self, session: AsyncSession, principal: Principal | None, job_id: UUID
    ) -> Job:
        """
        Force-reclaim a job (administrators only).

        The lease is revoked at once; the holding worker aborts the execution
        without waiting for the job to observe cancellation.
        """
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)

        for _ in range(CANCEL_ATTEMPTS):
            job = await self.store.read(session, job_id)
            if job.is_terminal():
                raise ConflictError(
                    f"Job is already {job.status}",
                    details={"job_id": str(job_id), "status": job.status},
                )

            if job.status == JobStatus.RUNNING.value:
                fields = {
                    "error_message": "Terminated by administrator",
                    "error_code": JobErrorCode.TERMINATED.value,
                }
            else:
                fields = {
                    "error_message": "Job was cancelled",
                    "error_code": JobErrorCode.CANCELLED.value,
                }

            terminated = await self.store.update_status(
                session, job.id, job.status, JobStatus.CANCELLED, **fields
            )
            if terminated:
                logger.warning(
                    "Job terminated",
                    job_id=str(job_id),
                    previous_status=job.status,
                    previous_worker_id=job.worker_id,
                    user_id=principal.user_id,
                )
                return await self.store.read(session, job_id)

        job = await self.store.read(session, job_id)
        raise ConflictError(
            "Job changed state concurrently, try again",
            details={"job_id": str(job_id), "status": job.status},
        )

    async def get_stats(
        self, session: AsyncSession, principal: Principal | None
    ) -> JobStatsResponse:
        """Job statistics, scoped to the caller unless privileged."""
        principal = self.access.require_authenticated(principal)
        owner = self.access.owner_filter(principal)
        base_filter = Job.created_by == owner if owner is not None else True

        status_result = await session.execute(
            select(Job.status, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.status)
        )
        by_status = dict(status_result.all())

        namespace_result = await session.execute(
            select(Job.namespace, func.count(Job.id))
            .where(base_filter)
            .group_by(Job.namespace)
        )
        by_namespace = dict(namespace_result.all())

        failed_recent_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    base_filter,
                    Job.status == JobStatus.FAILED.value,
                    Job.updated_at >= utcnow() - timedelta(hours=1),
                )
            )
        )

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_namespace=by_namespace,
            queue_depth=by_status.get(JobStatus.PENDING.value, 0)
            + by_status.get(JobStatus.RUNNING.value, 0),
            failed_last_hour=failed_recent_result.scalar() or 0,
        )

    # Administration

    async def list_workers(
        self,
        session: AsyncSession,
        principal: Principal | None,
        include_dead: bool = True,
    ) -> list[Worker]:
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)
        return await self.store.list_workers(session, include_dead=include_dead)

    async def list_namespaces(
        self, session: AsyncSession, principal: Principal | None
    ) -> list[str]:
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)
        return await self.store.list_namespaces(session)

    async def list_definitions(
        self,
        session: AsyncSession,
        principal: Principal | None,
        namespace: str | None = None,
    ) -> list[JobDefinition]:
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)
        return await self.store.list_definitions(session, namespace)

    def _definition_fields(self, upsert: JobDefinitionUpsert) -> dict:
        return {
            "description": upsert.description,
            "enabled": upsert.enabled,
            "timeout_seconds": upsert.timeout_seconds
            or self.settings.job_default_timeout_s,
            "max_retries": (
                upsert.max_retries
                if upsert.max_retries is not None
                else self.settings.job_default_max_retries
            ),
            "progress_timeout_seconds": upsert.progress_timeout_seconds,
            "required_role": upsert.required_role,
            "schedule": upsert.schedule,
        }

    async def upsert_definition(
        self,
        session: AsyncSession,
        principal: Principal | None,
        upsert: JobDefinitionUpsert,
    ) -> tuple[JobDefinition, str]:
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)

        definition, outcome = await self.store.upsert_definition(
            session, upsert.name, upsert.namespace, **self._definition_fields(upsert)
        )
        logger.info(
            "Job definition saved",
            job_name=definition.name,
            namespace=definition.namespace,
            version=definition.version,
            outcome=outcome,
        )
        return definition, outcome

    async def sync_definitions(
        self,
        session: AsyncSession,
        principal: Principal | None,
        request: DefinitionSyncRequest,
    ) -> DefinitionSyncResponse:
        """Make a namespace's definitions match the request in one transaction."""
        principal = self.access.require_authenticated(principal)
        self.access.require_privileged(principal)

        names = [d.name for d in request.definitions]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(
                "Duplicate job names in sync request", details={"names": duplicates}
            )

        summary = DefinitionSyncSummary()
        try:
            for upsert in request.definitions:
                _, outcome = await self.store.upsert_definition(
                    session,
                    upsert.name,
                    request.namespace,
                    commit=False,
                    **self._definition_fields(upsert),
                )
                setattr(summary, outcome, getattr(summary, outcome) + 1)

            if request.delete_missing:
                summary.deleted = await self.store.delete_definitions(
                    session, request.namespace, names, commit=False
                )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            "Job definitions synced",
            namespace=request.namespace,
            **summary.model_dump(),
        )
        return DefinitionSyncResponse(namespace=request.namespace, summary=summary)
