"""create job tables

Revision ID: 3b7c2d9e41a0
Revises:
Create Date: 2026-10-19 09:12:40.118203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7c2d9e41a0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "job_definitions",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("namespace", sa.Text, nullable=False, server_default="default"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("timeout_seconds", sa.Integer, nullable=False, server_default="300"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "progress_timeout_seconds",
            sa.Integer,
            nullable=True,
            comment="Overrides the worker no-progress timeout",
        ),
        sa.Column(
            "required_role",
            sa.Text,
            nullable=True,
            comment="Role required to submit this job",
        ),
        sa.Column(
            "schedule",
            sa.Text,
            nullable=True,
            comment="Recurring-time expression for the external scheduler",
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "namespace", "name", name="uq_job_definitions_namespace_name"
        ),
        sa.CheckConstraint("timeout_seconds > 0", name="job_definitions_timeout_check"),
        sa.CheckConstraint("max_retries >= 0", name="job_definitions_retries_check"),
        sa.CheckConstraint(
            "progress_timeout_seconds IS NULL OR progress_timeout_seconds > 0",
            name="job_definitions_progress_timeout_check",
        ),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_name", sa.Text, nullable=False, comment="Job definition name"),
        sa.Column(
            "namespace",
            sa.Text,
            nullable=False,
            server_default="default",
            comment="Job definition namespace",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|running|completed|failed|cancelled",
        ),
        sa.Column("payload", sa.JSON, nullable=False, comment="Job input"),
        sa.Column("result", sa.JSON, nullable=True, comment="Set on completion"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "error_code", sa.Text, nullable=True, comment="Structured error identifier"
        ),
        sa.Column(
            "logs", sa.Text, nullable=True, comment="Console output of the last attempt"
        ),
        sa.Column(
            "progress",
            sa.JSON,
            nullable=True,
            comment="Progress {percent, message, data}",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher runs sooner",
        ),
        sa.Column(
            "scheduled_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
            comment="Earliest time to run job",
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "worker_id",
            sa.Text,
            nullable=True,
            comment="Worker holding the lease while running",
        ),
        sa.Column(
            "lease_id",
            sa.UUID(as_uuid=True),
            nullable=True,
            comment="Token of the current claim while running",
        ),
        sa.Column(
            "progress_timeout_seconds",
            sa.Integer,
            nullable=True,
            comment="No-progress limit copied from the definition",
        ),
        sa.Column("created_by", sa.Text, nullable=False),
        sa.Column("caller_role", sa.Text, nullable=True),
        sa.Column("caller_email", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_progress_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "(status = 'running') = (worker_id IS NOT NULL)",
            name="jobs_worker_lease_check",
        ),
        sa.CheckConstraint(
            "(status = 'running') = (lease_id IS NOT NULL)",
            name="jobs_lease_token_check",
        ),
        sa.CheckConstraint(
            "retry_count <= max_retries", name="jobs_retry_budget_check"
        ),
        sa.CheckConstraint(
            "completed_at IS NULL OR status IN ('completed', 'failed', 'cancelled')",
            name="jobs_completed_at_check",
        ),
    )

    # Claim order: eligible pending rows by priority, then age
    op.create_index("ix_jobs_claim", "jobs", ["status", "priority", "created_at"])
    op.create_index("ix_jobs_namespace_status", "jobs", ["namespace", "status"])
    op.create_index("ix_jobs_created_by", "jobs", ["created_by", "created_at"])
    op.create_index("ix_jobs_worker_id", "jobs", ["worker_id"])

    op.create_table(
        "job_workers",
        sa.Column("worker_id", sa.Text, primary_key=True),
        sa.Column("hostname", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="idle"),
        sa.Column("current_job_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_concurrent_jobs", sa.Integer, nullable=False),
        sa.Column("total_completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "last_heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status IN ('idle', 'busy', 'dead')", name="job_workers_status_check"
        ),
    )
    op.create_index(
        "ix_job_workers_status_heartbeat",
        "job_workers",
        ["status", "last_heartbeat_at"],
    )

    op.create_table(
        "job_execution_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_number", sa.Integer, nullable=False),
        sa.Column("level", sa.Text, nullable=False, server_default="info"),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_job_execution_logs_job_line",
        "job_execution_logs",
        ["job_id", "line_number"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_job_execution_logs_job_line", table_name="job_execution_logs")
    op.drop_table("job_execution_logs")
    op.drop_index("ix_job_workers_status_heartbeat", table_name="job_workers")
    op.drop_table("job_workers")
    op.drop_index("ix_jobs_worker_id", table_name="jobs")
    op.drop_index("ix_jobs_created_by", table_name="jobs")
    op.drop_index("ix_jobs_namespace_status", table_name="jobs")
    op.drop_index("ix_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("job_definitions")
