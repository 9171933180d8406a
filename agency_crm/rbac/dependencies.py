"""
Session & RBAC dependencies — the heart of request authentication.

`get_current_session` decodes the access token and validates its
session against the registry on every protected request.

`require_role` is a *dependency factory*: call it with one or more role
names and it returns a FastAPI dependency that will:

1. Resolve the current session (via `get_current_session`).
2. Check the role snapshotted into the session at login.
3. Return 403 on failure, without saying which roles would pass.

Usage in a route:
    @router.get("/stats", dependencies=[Depends(require_role("ADMIN"))])
    async def stats(...): ...

Or inject the session:
    @router.get("/me")
    async def me(session: Session = Depends(require_role("ADMIN"))): ...
"""

import logging

from fastapi import Depends, HTTPException, Request, status

from agency_crm.core.security import decode_access_token, oauth2_scheme
from agency_crm.services.session_registry import SessionRegistry
from agency_crm.services.session_store import Session

logger = logging.getLogger("rbac")


def get_session_registry(request: Request) -> SessionRegistry:
    """The registry is owned by the app instance, not by any module."""
    return request.app.state.session_registry


async def get_current_session(
    token: str = Depends(oauth2_scheme),
    registry: SessionRegistry = Depends(get_session_registry),
) -> Session:
    """
    FastAPI dependency — decodes the JWT **and** validates the session
    against the session registry.

    Checks performed on every protected request:
      1. JWT signature, expiry and `type: access`.
      2. Session exists in the registry and belongs to the token's user.
      3. Session has not exceeded the inactivity timeout (the registry
         deletes it on this access if it has).

    On success the registry has already bumped `last_activity`.
    A 401 with code SESSION_EXPIRED tells the client to re-authenticate.
    """
    payload = decode_access_token(
        token, secret_key=registry.secret_key, algorithm=registry.algorithm,
    )

    session_id = payload.get("session_id")
    user_id = payload.get("sub") or payload.get("user_id")
    if not session_id or not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload — missing session fields",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = registry.validate_session(session_id)
    if session is None or session.user_id != str(user_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Session expired", "code": "SESSION_EXPIRED"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


class require_role:
    """
    Dependency factory.

    Can be used as:
        Depends(require_role("ADMIN"))
        Depends(require_role("ADMIN", "SUPER_ADMIN"))
    """

    def __init__(self, *roles: str):
        self.allowed_roles = set(roles)

    async def __call__(
        self,
        session: Session = Depends(get_current_session),
    ) -> Session:
        if session.role not in self.allowed_roles:
            logger.warning(
                "Role denied for user %s — role: %s, allowed: %s",
                session.user_id,
                session.role,
                self.allowed_roles,
            )
            # Intentionally vague: do NOT reveal which roles would pass
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return session


require_admin = require_role("ADMIN", "SUPER_ADMIN")
