"""
Access control for job operations.

Callers see and manage their own jobs. Privileged roles bypass ownership
and role requirements and may use the administrative operations.
"""

from jobhub.config.settings import Settings
from jobhub.v1.core.exceptions import ForbiddenError, UnauthorizedError
from jobhub.v1.core.security import Principal
from jobhub.v1.jobs.models import JobDefinition


class AccessControl:
    """Authorization decisions for submit, read, cancel and admin actions."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def require_authenticated(self, principal: Principal | None) -> Principal:
        if principal is None or not principal.user_id:
            raise UnauthorizedError("Authentication required")
        return principal

    def is_privileged(self, principal: Principal) -> bool:
        return principal.role in self.settings.job_privileged_roles

    def check_submit(self, principal: Principal, definition: JobDefinition) -> None:
        """The caller needs the definition's required role, if it has one."""
        if not definition.required_role or self.is_privileged(principal):
            return
        if principal.role != definition.required_role:
            raise ForbiddenError(
                f"Role '{definition.required_role}' is required to submit this job",
                details={
                    "job_name": definition.name,
                    "namespace": definition.namespace,
                    "required_role": definition.required_role,
                },
            )

    def owner_filter(self, principal: Principal) -> str | None:
        """Owner to scope reads to; None means unrestricted."""
        if self.is_privileged(principal):
            return None
        return principal.user_id

    def require_privileged(self, principal: Principal) -> None:
        if not self.is_privileged(principal):
            raise ForbiddenError("Administrator privileges required")
