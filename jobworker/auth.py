"""Bearer-token authentication dependency."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from jobworker.settings import AuthSettings, settings as global_settings

__all__ = ["AuthContext", "ANONYMOUS", "check_bearer_token", "get_auth_context"]


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Who is calling; ``anonymous`` when auth is disabled."""

    principal: str
    authenticated: bool


ANONYMOUS = AuthContext(principal="anonymous", authenticated=False)
_BEARER_PREFIX = "bearer "


def check_bearer_token(authorization: str | None, auth: AuthSettings) -> AuthContext:
    """Validate an ``Authorization`` header value against the configured token.

    Raises ``HTTPException(401)`` with ``WWW-Authenticate: Bearer`` on failure.
    """

    if not auth.enabled:
        return ANONYMOUS

    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token. Provide an Authorization: Bearer <token> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization[len(_BEARER_PREFIX):].strip()
    expected = auth.api_token or ""
    if not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return AuthContext(principal="api-token", authenticated=True)


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """FastAPI dependency guarding every non-health route.

    Usage:
        @app.post("/protected")
        async def protected(auth: AuthContext = Depends(get_auth_context)):
            ...
    """

    active = getattr(request.app.state, "settings", None) or global_settings
    return check_bearer_token(authorization, active.auth)
