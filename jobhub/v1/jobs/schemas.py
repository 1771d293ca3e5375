"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobhub.v1.jobs.models import JobStatus


class JobSubmitRequest(BaseModel):
    """Schema for submitting a job."""

    job_name: str = Field(..., min_length=1, description="Job definition name")
    namespace: str = Field(default="default", min_length=1, description="Namespace")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job input")
    priority: int = Field(
        default=0, ge=-1000, le=1000, description="Priority (higher runs sooner)"
    )
    scheduled_at: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )


class JobSubmitResponse(BaseModel):
    """Schema for job submission response."""

    job_id: UUID
    status: str


class JobResponse(BaseModel):
    """Schema for job API responses."""

    id: UUID
    job_name: str
    namespace: str
    status: str
    payload: dict[str, Any]
    priority: int
    scheduled_at: datetime
    retry_count: int
    max_retries: int
    progress_timeout_seconds: int | None = None

    # Lease
    worker_id: str | None = None
    lease_id: UUID | None = None

    # Outcome
    result: Any | None = None
    error_message: str | None = None
    error_code: str | None = None
    logs: str | None = None
    progress: dict[str, Any] | None = None
    progress_percent: int | None = None
    progress_message: str | None = None

    # Caller identity
    created_by: str
    caller_role: str | None = None
    caller_email: str | None = None

    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_progress_at: datetime | None = None

    class Config:
        from_attributes = True


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    namespace: str | None = Field(default=None, description="Filter by namespace")
    job_name: str | None = Field(default=None, description="Filter by job name")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_namespace: dict[str, int]
    queue_depth: int  # pending + running
    failed_last_hour: int


class JobLogLine(BaseModel):
    """One console line of a job."""

    line_number: int
    level: str
    message: str
    created_at: datetime

    class Config:
        from_attributes = True


class WorkerResponse(BaseModel):
    """Schema for worker listings."""

    worker_id: str
    hostname: str
    status: str
    current_job_count: int
    max_concurrent_jobs: int
    total_completed: int
    last_heartbeat_at: datetime
    started_at: datetime

    class Config:
        from_attributes = True


class JobDefinitionUpsert(BaseModel):
    """Schema for creating or updating a job definition."""

    name: str = Field(..., min_length=1)
    namespace: str = Field(default="default", min_length=1)
    description: str | None = None
    enabled: bool = True
    timeout_seconds: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=0)
    progress_timeout_seconds: int | None = Field(default=None, ge=1)
    required_role: str | None = None
    schedule: str | None = None


class JobDefinitionResponse(BaseModel):
    """Schema for job definition responses."""

    id: UUID
    name: str
    namespace: str
    description: str | None = None
    enabled: bool
    timeout_seconds: int
    max_retries: int
    progress_timeout_seconds: int | None = None
    required_role: str | None = None
    schedule: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DefinitionSyncRequest(BaseModel):
    """Replace the definitions of one namespace."""

    namespace: str = Field(default="default", min_length=1)
    definitions: list[JobDefinitionUpsert] = Field(default_factory=list)
    delete_missing: bool = Field(
        default=True, description="Delete definitions absent from the request"
    )


class DefinitionSyncSummary(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0


class DefinitionSyncResponse(BaseModel):
    namespace: str
    summary: DefinitionSyncSummary
