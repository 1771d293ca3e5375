from unittest.mock import patch

import pytest

from jobhub.config.settings import AuthMode, Settings
from jobhub.v1.core.exceptions import ForbiddenError, UnauthorizedError
from jobhub.v1.core.security import DEFAULT_ROLE, Principal, get_principal
from jobhub.v1.jobs.access import AccessControl
from jobhub.v1.jobs.models import JobDefinition


async def test_get_principal_auth_mode_none():
    """AUTH_MODE=none returns the configured dev principal."""
    with patch("jobhub.v1.core.security.settings.auth_mode", AuthMode.NONE):
        principal = await get_principal()

    assert isinstance(principal, Principal)
    assert principal.user_id == "DEV_USER"
    assert principal.role == "admin"


async def test_get_principal_auth_mode_dev_requires_user_header():
    """AUTH_MODE=dev rejects requests without X-User-ID."""
    with patch("jobhub.v1.core.security.settings.auth_mode", AuthMode.DEV):
        with pytest.raises(UnauthorizedError, match="X-User-ID header is required"):
            await get_principal(x_user_id=None, x_user_role=None, x_user_email=None)


async def test_get_principal_auth_mode_dev_reads_headers():
    with patch("jobhub.v1.core.security.settings.auth_mode", AuthMode.DEV):
        principal = await get_principal(
            x_user_id="alice", x_user_role=None, x_user_email="alice@example.com"
        )

    assert principal.user_id == "alice"
    assert principal.role == DEFAULT_ROLE
    assert principal.email == "alice@example.com"


async def test_get_principal_auth_mode_oidc_not_implemented():
    with patch("jobhub.v1.core.security.settings.auth_mode", AuthMode.OIDC):
        with pytest.raises(NotImplementedError, match="OIDC auth mode not implemented"):
            await get_principal()


async def test_get_principal_unknown_auth_mode():
    with patch("jobhub.v1.core.security.settings.auth_mode", "invalid_mode"):
        with pytest.raises(ValueError, match="Unknown auth mode: invalid_mode"):
            await get_principal()


class TestAccessControl:
    """Authorization decisions for job operations."""

    @pytest.fixture
    def access(self):
        return AccessControl(Settings())

    @pytest.fixture
    def definition(self):
        return JobDefinition(name="report", namespace="billing", required_role="analyst")

    def test_require_authenticated(self, access):
        with pytest.raises(UnauthorizedError):
            access.require_authenticated(None)
        with pytest.raises(UnauthorizedError):
            access.require_authenticated(Principal(user_id=""))

        principal = Principal(user_id="alice")
        assert access.require_authenticated(principal) is principal

    def test_privileged_roles(self, access):
        assert access.is_privileged(Principal(user_id="a", role="admin"))
        assert access.is_privileged(Principal(user_id="a", role="service_role"))
        assert not access.is_privileged(Principal(user_id="a", role="authenticated"))

    def test_check_submit_requires_role(self, access, definition):
        with pytest.raises(ForbiddenError) as exc_info:
            access.check_submit(Principal(user_id="bob"), definition)
        assert exc_info.value.details["required_role"] == "analyst"

    def test_check_submit_allows_matching_role(self, access, definition):
        access.check_submit(Principal(user_id="bob", role="analyst"), definition)

    def test_check_submit_privileged_bypass(self, access, definition):
        access.check_submit(Principal(user_id="root", role="admin"), definition)

    def test_check_submit_without_required_role(self, access):
        open_definition = JobDefinition(name="sum", namespace="default")
        access.check_submit(Principal(user_id="bob"), open_definition)

    def test_owner_filter(self, access):
        assert access.owner_filter(Principal(user_id="bob")) == "bob"
        assert access.owner_filter(Principal(user_id="root", role="admin")) is None

    def test_require_privileged(self, access):
        with pytest.raises(ForbiddenError):
            access.require_privileged(Principal(user_id="bob"))
        access.require_privileged(Principal(user_id="root", role="service_role"))
