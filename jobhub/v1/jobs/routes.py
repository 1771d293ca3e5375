"""
Job API endpoints.

User endpoints live under ``/jobs``; worker, definition and terminate
operations under ``/admin/jobs`` require a privileged role.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobhub.config.logging import get_logger
from jobhub.config.settings import Settings, SettingsDep
from jobhub.infra.database import get_session
from jobhub.v1.core.exceptions import create_success_response
from jobhub.v1.core.security import Principal, PrincipalDep
from jobhub.v1.jobs.models import JobStatus
from jobhub.v1.jobs.schemas import (
    DefinitionSyncRequest,
    JobDefinitionResponse,
    JobDefinitionUpsert,
    JobListFilters,
    JobLogLine,
    JobSubmitRequest,
    WorkerResponse,
)
from jobhub.v1.jobs.service import JobService, to_job_response

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
admin_router = APIRouter(prefix="/admin/jobs", tags=["jobs-admin"])


@router.post("", response_model=dict, status_code=201)
async def submit_job(
    request: JobSubmitRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Submit a job for asynchronous execution."""
    result = await JobService(settings).submit(session, principal, request)

    logger.info(
        "Job submitted via API",
        job_id=str(result.job_id),
        job_name=request.job_name,
        namespace=request.namespace,
        user_id=principal.user_id,
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    namespace: str | None = Query(default=None, description="Filter by namespace"),
    job_name: str | None = Query(default=None, description="Filter by job name"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List the caller's jobs (all jobs for privileged callers)."""
    filters = JobListFilters(
        status=status,
        namespace=namespace,
        job_name=job_name,
        limit=limit,
        offset=offset,
    )
    response_data = await JobService(settings).list_jobs(session, principal, filters)
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics."""
    stats = await JobService(settings).get_stats(session, principal)
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await JobService(settings).get_job(session, principal, job_id)
    return create_success_response(data=to_job_response(job).model_dump(mode="json"))


@router.get("/{job_id}/logs", response_model=dict)
async def get_job_logs(
    job_id: UUID,
    after_line: int = Query(
        default=0, ge=0, description="Only lines numbered above this one"
    ),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get the console lines a job has written so far."""
    lines = await JobService(settings).get_logs(
        session, principal, job_id, after_line=after_line
    )
    return create_success_response(
        data={
            "job_id": str(job_id),
            "lines": [
                JobLogLine.model_validate(line).model_dump(mode="json")
                for line in lines
            ],
        }
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a pending or running job."""
    job = await JobService(settings).cancel(session, principal, job_id)

    logger.info(
        "Job cancelled via API", job_id=str(job_id), user_id=principal.user_id
    )

    return create_success_response(data=to_job_response(job).model_dump(mode="json"))


@router.post("/{job_id}/retry", response_model=dict, status_code=201)
async def retry_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Resubmit a failed job as a new job."""
    result = await JobService(settings).retry(session, principal, job_id)
    return create_success_response(
        data={
            "job_id": str(result.job_id),
            "status": result.status,
            "retried_from": str(job_id),
        }
    )


# Administration


@admin_router.get("/workers", response_model=dict)
async def list_workers(
    include_dead: bool = Query(default=True, description="Include dead workers"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List registered workers."""
    workers = await JobService(settings).list_workers(
        session, principal, include_dead=include_dead
    )
    return create_success_response(
        data={
            "workers": [
                WorkerResponse.model_validate(worker).model_dump(mode="json")
                for worker in workers
            ]
        }
    )


@admin_router.post("/{job_id}/terminate", response_model=dict)
async def terminate_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Force-reclaim a job without waiting for cooperative cancellation."""
    job = await JobService(settings).terminate(session, principal, job_id)
    return create_success_response(data=to_job_response(job).model_dump(mode="json"))


@admin_router.get("/namespaces", response_model=dict)
async def list_namespaces(
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List namespaces that have job definitions."""
    namespaces = await JobService(settings).list_namespaces(session, principal)
    return create_success_response(data={"namespaces": namespaces})


@admin_router.get("/definitions", response_model=dict)
async def list_definitions(
    namespace: str | None = Query(default=None, description="Filter by namespace"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List job definitions."""
    definitions = await JobService(settings).list_definitions(
        session, principal, namespace
    )
    return create_success_response(
        data={
            "definitions": [
                JobDefinitionResponse.model_validate(d).model_dump(mode="json")
                for d in definitions
            ]
        }
    )


@admin_router.put("/definitions", response_model=dict)
async def upsert_definition(
    upsert: JobDefinitionUpsert,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Create or update a job definition."""
    definition, outcome = await JobService(settings).upsert_definition(
        session, principal, upsert
    )
    return create_success_response(
        data={
            "definition": JobDefinitionResponse.model_validate(definition).model_dump(
                mode="json"
            ),
            "outcome": outcome,
        }
    )


@admin_router.post("/definitions/sync", response_model=dict)
async def sync_definitions(
    request: DefinitionSyncRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Replace the definitions of one namespace."""
    result = await JobService(settings).sync_definitions(session, principal, request)
    return create_success_response(data=result.model_dump())
