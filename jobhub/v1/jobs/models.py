"""
Job system models: jobs, job definitions, workers and execution log lines.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from jobhub.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class JobErrorCode(str, Enum):
    """Structured reason recorded alongside ``error_message``."""

    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIMEOUT = "TIMEOUT"
    WORKER_LOST = "WORKER_LOST"
    NO_PROGRESS = "NO_PROGRESS"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


class Job(Base):
    """
    A queued unit of work.

    The row is the only shared state between workers: claiming, progress,
    completion, retry and cancellation are all conditional updates on it.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(PG_UUID, primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job definition name"
    )
    namespace: Mapped[str] = mapped_column(
        Text, nullable=False, default="default", comment="Job definition namespace"
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|running|completed|failed|cancelled",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Job input",
    )

    # Outcome
    result: Mapped[Any | None] = mapped_column(
        JSON(none_as_null=True), nullable=True, comment="Set on completion"
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    logs: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Console output of the last attempt"
    )
    progress: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
        comment="Progress {percent, message, data}",
    )

    # Scheduling
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Higher runs sooner"
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Earliest time to run job",
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease
    worker_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the lease while running"
    )
    lease_id: Mapped[UUID | None] = mapped_column(
        PG_UUID, nullable=True, comment="Token of the current claim while running"
    )
    progress_timeout_seconds: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="No-progress limit copied from the definition"
    )

    # Caller identity
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    caller_role: Mapped[str | None] = mapped_column(Text, nullable=True)
    caller_email: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_progress_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "(status = 'running') = (worker_id IS NOT NULL)",
            name="jobs_worker_lease_check",
        ),
        CheckConstraint(
            "(status = 'running') = (lease_id IS NOT NULL)",
            name="jobs_lease_token_check",
        ),
        CheckConstraint("retry_count <= max_retries", name="jobs_retry_budget_check"),
        CheckConstraint(
            "completed_at IS NULL OR status IN ('completed', 'failed', 'cancelled')",
            name="jobs_completed_at_check",
        ),
        Index("ix_jobs_claim", "status", "priority", "created_at"),
        Index("ix_jobs_namespace_status", "namespace", "status"),
        Index("ix_jobs_created_by", "created_by", "created_at"),
        Index("ix_jobs_worker_id", "worker_id"),
    )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_retry(self) -> bool:
        """Check whether a failure of this attempt may be retried."""
        return self.retry_count < self.max_retries

    @property
    def progress_percent(self) -> int | None:
        if not self.progress or not isinstance(self.progress, dict):
            return None
        return self.progress.get("percent")

    @property
    def progress_message(self) -> str | None:
        if not self.progress or not isinstance(self.progress, dict):
            return None
        return self.progress.get("message")


class JobDefinition(Base):
    """Registered, named job logic a Job refers to by (namespace, name)."""

    __tablename__ = "job_definitions"

    id: Mapped[UUID] = mapped_column(PG_UUID, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    namespace: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_timeout_seconds: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Overrides the worker no-progress timeout"
    )
    required_role: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Role required to submit this job"
    )
    schedule: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Recurring-time expression for the external scheduler"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_job_definitions_namespace_name"),
        CheckConstraint("timeout_seconds > 0", name="job_definitions_timeout_check"),
        CheckConstraint("max_retries >= 0", name="job_definitions_retries_check"),
        CheckConstraint(
            "progress_timeout_seconds IS NULL OR progress_timeout_seconds > 0",
            name="job_definitions_progress_timeout_check",
        ),
    )


class Worker(Base):
    """A worker process registration, kept alive by heartbeats."""

    __tablename__ = "job_workers"

    worker_id: Mapped[str] = mapped_column(Text, primary_key=True)
    hostname: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=WorkerStatus.IDLE.value
    )
    current_job_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_concurrent_jobs: Mapped[int] = mapped_column(Integer, nullable=False)
    total_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_heartbeat_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('idle', 'busy', 'dead')", name="job_workers_status_check"
        ),
        Index("ix_job_workers_status_heartbeat", "status", "last_heartbeat_at"),
    )


class ExecutionLog(Base):
    """One console line written by a running job."""

    __tablename__ = "job_execution_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        PG_UUID, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[str] = mapped_column(Text, nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (Index("ix_job_execution_logs_job_line", "job_id", "line_number"),)
