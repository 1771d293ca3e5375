"""
Job registry initialization.

Registers the built-in job handlers with the global job registry.
"""

from jobhub.config.logging import get_logger
from jobhub.config.settings import settings
from jobhub.v1.core.registries import job_registry
from jobhub.v1.jobs.handlers import (
    MaintenanceCleanupHandler,
    SleepHandler,
    SumHandler,
)

logger = get_logger(__name__)


def register_job_handlers() -> None:
    """Register all built-in job handlers with the job registry."""
    if job_registry.is_frozen():
        return

    job_registry.register("sum", SumHandler())
    job_registry.register("sleep", SleepHandler())
    job_registry.register("maintenance_cleanup", MaintenanceCleanupHandler(settings))

    logger.info("Job handlers registered", registered_handlers=job_registry.list())


# Auto-register handlers when module is imported
register_job_handlers()
