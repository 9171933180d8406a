"""
Activity service — persists account events to the `activities` table.

The session registry records through the `ActivityRecorder` protocol;
`DatabaseActivityRecorder` is the production implementation.  It opens
its own short-lived DB session per event because registry calls happen
outside (or after) the request's transaction.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_crm.models.activity import Activity, ActivityType
from agency_crm.models.user import User

logger = logging.getLogger(__name__)


class DatabaseActivityRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def record(
        self,
        activity_type: ActivityType,
        user_id: str,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        """Insert one activity row; a login also stamps `users.last_login_at`."""
        user_uuid = uuid.UUID(str(user_id))
        async with self.session_factory() as db:
            db.add(
                Activity(
                    type=activity_type,
                    description=description,
                    user_id=user_uuid,
                    details=metadata,
                )
            )
            if activity_type == ActivityType.USER_LOGIN:
                await db.execute(
                    update(User)
                    .where(User.id == user_uuid)
                    .values(last_login_at=datetime.now(timezone.utc))
                )
            await db.commit()
        logger.debug("Activity recorded: %s user=%s", activity_type.value, user_id)
