"""
Job runtime boundary.

The worker pool hands every claimed job to a ``JobRuntime`` together with a
``JobContext``. The context carries the payload, the submitting caller's
identity, progress reporting, console logging and a cooperative
cancellation token that long-running job code is expected to poll.
"""

import asyncio
import inspect
import threading
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobhub.config.logging import get_logger
from jobhub.v1.core.registries import JobRegistry, job_registry
from jobhub.v1.jobs.models import JobDefinition, JobStatus

logger = get_logger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")


class JobCancelled(Exception):
    """Raised by job code that observed a cancellation request."""


class CancellationToken:
    """Thread-safe cooperative cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Job was cancelled")


@dataclass(frozen=True)
class CallerIdentity:
    """Identity of the caller that submitted the job."""

    id: str
    role: str | None = None
    email: str | None = None


ProgressSink = Callable[[int, str | None, Any], None]
LogSink = Callable[[int, str, str], None]


def _noop_progress(percent: int, message: str | None, data: Any) -> None:
    return None


def _noop_log(line_number: int, level: str, message: str) -> None:
    return None


@dataclass
class JobContext:
    """Everything a job sees while it runs."""

    job_id: UUID
    job_name: str
    namespace: str
    retry_count: int
    payload: dict[str, Any]
    user: CallerIdentity | None
    token: CancellationToken = field(default_factory=CancellationToken)
    progress_sink: ProgressSink = _noop_progress
    log_sink: LogSink = _noop_log
    _lines: list[str] = field(default_factory=list)
    _lines_lock: threading.Lock = field(default_factory=threading.Lock)

    def report_progress(
        self, percent: float, message: str | None = None, data: Any = None
    ) -> None:
        """Report progress (clamped to 0-100). Never raises on delivery failure."""
        clamped = int(max(0, min(100, percent)))
        if clamped != percent:
            logger.debug(
                "Progress percent clamped", job_id=str(self.job_id), percent=percent
            )
        self.progress_sink(clamped, message, data)

    def check_cancellation(self) -> bool:
        """True once cancellation was requested for this job."""
        return self.token.is_cancelled

    def raise_if_cancelled(self) -> None:
        self.token.raise_if_cancelled()

    def log(self, message: str, level: str = "info") -> None:
        """Write a console line; kept in the job's logs and streamed as a row."""
        level = level if level in LOG_LEVELS else "info"
        with self._lines_lock:
            self._lines.append(f"[{level.upper()}] {message}")
            line_number = len(self._lines)
        self.log_sink(line_number, level, message)

    @property
    def logs(self) -> str:
        with self._lines_lock:
            return "\n".join(self._lines)

    def describe(self) -> dict[str, Any]:
        """Job metadata as exposed to job code."""
        return {
            "job_id": str(self.job_id),
            "job_name": self.job_name,
            "namespace": self.namespace,
            "retry_count": self.retry_count,
            "payload": self.payload,
            "user": (
                {"id": self.user.id, "role": self.user.role, "email": self.user.email}
                if self.user
                else None
            ),
        }


@dataclass
class RuntimeOutcome:
    """Terminal result of one invocation."""

    status: JobStatus
    result: Any = None
    error: str | None = None
    logs: str | None = None

    @classmethod
    def completed(cls, result: Any, logs: str | None = None) -> "RuntimeOutcome":
        return cls(status=JobStatus.COMPLETED, result=result, logs=logs)

    @classmethod
    def failed(cls, error: str, logs: str | None = None) -> "RuntimeOutcome":
        return cls(status=JobStatus.FAILED, error=error, logs=logs)

    @classmethod
    def cancelled(cls, logs: str | None = None) -> "RuntimeOutcome":
        return cls(status=JobStatus.CANCELLED, error="Job was cancelled", logs=logs)


class JobRuntime(Protocol):
    """Executes job code. Timeouts are enforced by the caller."""

    async def invoke(self, definition: JobDefinition, ctx: JobContext) -> RuntimeOutcome:
        ...


class RegistryRuntime:
    """
    In-process runtime dispatching to handlers registered by definition name.

    Coroutine handlers run on the worker's event loop with a database session.
    Plain functions run in a thread so they cannot block the other slots, and
    get None instead of a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobRegistry = job_registry,
    ):
        self.session_factory = session_factory
        self.registry = registry

    async def invoke(self, definition: JobDefinition, ctx: JobContext) -> RuntimeOutcome:
        if not self.registry.has(definition.name):
            return RuntimeOutcome.failed(
                f"No handler registered for job '{definition.name}'", logs=ctx.logs
            )

        handler = self.registry.get(definition.name)
        job_logger = logger.bind(
            job_id=str(ctx.job_id),
            job_name=definition.name,
            definition_version=definition.version,
        )

        try:
            if inspect.iscoroutinefunction(handler.handle):
                async with self.session_factory() as session:
                    result = await handler.handle(session, ctx)
            else:
                result = await asyncio.to_thread(handler.handle, None, ctx)
        except JobCancelled:
            job_logger.info("Job observed cancellation")
            return RuntimeOutcome.cancelled(logs=ctx.logs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job_logger.warning("Job raised", error=str(e))
            ctx.log(traceback.format_exc().rstrip(), level="error")
            return RuntimeOutcome.failed(f"{e.__class__.__name__}: {e}", logs=ctx.logs)

        return RuntimeOutcome.completed(result, logs=ctx.logs)
