"""
Authentication service.

Handles:
- Login: credential check, then a new session in the registry
- Refresh-token rotation (delegated to the registry)

The registry answers "no such session" with None; this layer turns
that into the HTTP errors the controllers return.
"""

import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from agency_crm.core.security import verify_password
from agency_crm.models.user import UserStatus
from agency_crm.services import user_service
from agency_crm.services.session_registry import RequestContext, SessionRegistry

logger = logging.getLogger(__name__)


async def authenticate_user(
    email: str,
    password: str,
    context: RequestContext,
    registry: SessionRegistry,
    db: AsyncSession,
) -> dict:
    """Validate credentials, open a session, and return the token pair."""
    user = await user_service.get_user_by_email(email, db)

    if user is None or not verify_password(password, user.password_hash or ""):
        logger.info("Failed login for %s from %s", email, context.ip_address)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if user.status != UserStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled" if user.status == UserStatus.DISABLED else "Account is not active",
        )

    tokens = await registry.create_session(str(user.id), user.email, user.role, context)

    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "session_id": tokens.session_id,
        "token_type": "bearer",
        "user_id": str(user.id),
        "role": user.role,
    }


async def refresh_access_token(
    refresh_token_raw: str,
    context: RequestContext,
    registry: SessionRegistry,
) -> dict:
    """Rotate a refresh token.  401 if the token or its session is no good."""
    tokens = await registry.refresh_access_token(refresh_token_raw, context)
    if tokens is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Invalid or expired refresh token", "code": "REFRESH_FAILED"},
        )
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "session_id": tokens.session_id,
        "token_type": "bearer",
    }
