from dataclasses import dataclass

from fastapi import Depends, Header

from jobhub.config.settings import AuthMode, settings
from jobhub.v1.core.exceptions import UnauthorizedError

DEFAULT_ROLE = "authenticated"


@dataclass
class Principal:
    """Represents the current authenticated caller."""

    user_id: str
    role: str = DEFAULT_ROLE
    email: str | None = None


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
    x_user_email: str | None = Header(None, alias="X-User-Email"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the configured dev principal
    - dev: Trust identity headers set by the gateway
    - oidc: not implemented
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(
            user_id=settings.dev_user_id,
            role=settings.dev_user_role,
            email=settings.dev_user_email,
        )
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id:
            raise UnauthorizedError("X-User-ID header is required in dev auth mode")

        return Principal(
            user_id=x_user_id,
            role=x_user_role or DEFAULT_ROLE,
            email=x_user_email,
        )
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError("OIDC auth mode not implemented yet")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
