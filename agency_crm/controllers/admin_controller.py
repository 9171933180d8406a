"""
Admin controller — operational view of the session registry.

Every route uses `Depends(require_admin)` for enforcement.
Controllers are THIN — they delegate to the registry and return schemas.
"""

import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agency_crm.core.database import get_db
from agency_crm.rbac.dependencies import get_session_registry, require_admin
from agency_crm.schemas import SessionsTerminatedResponse, SessionStatsOut
from agency_crm.services import user_service
from agency_crm.services.session_registry import SessionRegistry
from agency_crm.services.session_store import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/sessions/stats", response_model=SessionStatsOut)
async def session_stats(
    admin: Session = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Registry-wide counters for the ops dashboard."""
    return SessionStatsOut(**registry.get_session_stats())


@router.delete("/users/{user_id}/sessions", response_model=SessionsTerminatedResponse)
async def force_logout(
    user_id: uuid.UUID,
    admin: Session = Depends(require_admin),
    registry: SessionRegistry = Depends(get_session_registry),
    db: AsyncSession = Depends(get_db),
):
    """Terminate every session of a user (404 if the user does not exist)."""
    await user_service.get_user_by_id(user_id, db)
    count = await registry.destroy_all_user_sessions(str(user_id))
    logger.info("Admin %s forced logout of user %s (%d sessions)", admin.user_id, user_id, count)
    return SessionsTerminatedResponse(detail="User sessions terminated", session_count=count)
