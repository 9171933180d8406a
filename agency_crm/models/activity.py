"""
Activity log model.

Append-only audit trail of account events (logins, logouts, forced
logouts).  `metadata` is a free-form JSON blob; the column is named
`metadata` in the table but mapped as `details` because `metadata` is
reserved on declarative classes.
"""

import enum
import uuid
from typing import Any

from sqlalchemy import JSON, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from agency_crm.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ActivityType(str, enum.Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_LOGOUT_ALL = "USER_LOGOUT_ALL"


class Activity(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "activities"

    type: Mapped[ActivityType] = mapped_column(
        Enum(ActivityType, name="activity_type"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<Activity {self.type.value} user={self.user_id}>"
