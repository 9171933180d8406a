"""
Auth controller — login, token refresh, logout & session listing.

Login and refresh are PUBLIC (no session dependency).
Everything else requires a live session.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from agency_crm.core.database import get_db
from agency_crm.rbac.dependencies import get_current_session, get_session_registry
from agency_crm.schemas import (
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RefreshTokenResponse,
    SessionOut,
    SessionsTerminatedResponse,
    TokenResponse,
)
from agency_crm.services import auth_service
from agency_crm.services.session_registry import RequestContext, SessionRegistry
from agency_crm.services.session_store import Session

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
    db: AsyncSession = Depends(get_db),
):
    """Authenticate with email + password → receive JWT pair + session id."""
    return await auth_service.authenticate_user(
        body.email, body.password, RequestContext.from_request(request), registry, db,
    )


@router.post("/refresh", response_model=RefreshTokenResponse)
async def refresh_token(
    body: RefreshTokenRequest,
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Exchange a valid refresh token for a new access + refresh pair."""
    return await auth_service.refresh_access_token(
        body.refresh_token, RequestContext.from_request(request), registry,
    )


@router.delete("/logout", response_model=MessageResponse)
async def logout(
    session: Session = Depends(get_current_session),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Destroy the current session (server-side logout)."""
    await registry.destroy_session(session.session_id)
    return MessageResponse(detail="Logged out successfully")


@router.get("/sessions", response_model=list[SessionOut])
async def list_my_sessions(
    session: Session = Depends(get_current_session),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """All live sessions of the current user, most recently active first."""
    sessions = sorted(
        registry.get_user_sessions(session.user_id),
        key=lambda s: s.last_activity,
        reverse=True,
    )
    return [
        SessionOut(**asdict(s), current=s.session_id == session.session_id)
        for s in sessions
    ]


@router.delete("/sessions", response_model=SessionsTerminatedResponse)
async def logout_everywhere(
    session: Session = Depends(get_current_session),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Log the current user out of every device, this one included."""
    count = await registry.destroy_all_user_sessions(session.user_id)
    return SessionsTerminatedResponse(detail="All sessions terminated", session_count=count)
