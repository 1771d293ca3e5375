"""
Progress & state bridge.

Progress reports and console lines of running jobs become plain row writes,
which is also how change-notification subscribers see them. Writes are
fire-and-forget: a failed write is logged and never reaches the job.
"""

import asyncio
import threading
from concurrent.futures import Future
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobhub.config.logging import get_logger
from jobhub.v1.jobs.models import utcnow
from jobhub.v1.jobs.store import JobStore

logger = get_logger(__name__)


class JobReporter:
    """Schedules progress and log writes for one running job.

    The sinks may be called from the event loop or from a handler thread,
    so the set of pending writes is guarded by a lock.
    """

    def __init__(
        self,
        bridge: "ProgressBridge",
        job_id: UUID,
        lease_id: UUID,
        loop: asyncio.AbstractEventLoop,
    ):
        self.bridge = bridge
        self.job_id = job_id
        self.lease_id = lease_id
        self.loop = loop
        self._pending: set[asyncio.Future[Any] | Future[Any]] = set()
        self._pending_lock = threading.Lock()

    def _schedule(self, coro) -> None:
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self.loop:
            future = self.loop.create_task(coro)
        else:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def progress(self, percent: int, message: str | None, data: Any) -> None:
        payload = {"percent": percent, "message": message, "data": data}
        self._schedule(
            self.bridge.report_progress(self.job_id, self.lease_id, payload, utcnow())
        )

    def log_line(self, line_number: int, level: str, message: str) -> None:
        self._schedule(
            self.bridge.append_log(self.job_id, line_number, level, message)
        )

    async def flush(self) -> None:
        """Wait for writes scheduled so far."""
        with self._pending_lock:
            snapshot = list(self._pending)
        pending = [
            asyncio.wrap_future(f) if isinstance(f, Future) else f for f in snapshot
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class ProgressBridge:
    """Persists progress and console output of running jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: JobStore,
    ):
        self.session_factory = session_factory
        self.store = store

    def reporter(
        self,
        job_id: UUID,
        lease_id: UUID,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> JobReporter:
        return JobReporter(self, job_id, lease_id, loop or asyncio.get_running_loop())

    async def report_progress(
        self,
        job_id: UUID,
        lease_id: UUID,
        progress: dict[str, Any],
        reported_at,
    ) -> bool:
        try:
            async with self.session_factory() as session:
                written = await self.store.write_progress(
                    session, job_id, lease_id, progress, reported_at
                )
        except Exception:
            logger.exception("Progress write failed", job_id=str(job_id))
            return False

        if not written:
            logger.debug(
                "Progress dropped (stale or lease lost)",
                job_id=str(job_id),
                percent=progress.get("percent"),
            )
        return written

    async def append_log(
        self, job_id: UUID, line_number: int, level: str, message: str
    ) -> None:
        try:
            async with self.session_factory() as session:
                await self.store.append_log_line(
                    session, job_id, line_number, level, message
                )
        except Exception:
            logger.exception(
                "Execution log write failed", job_id=str(job_id), line_number=line_number
            )
