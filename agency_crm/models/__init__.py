"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for Alembic autogenerate).
"""

from agency_crm.models.activity import Activity, ActivityType
from agency_crm.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from agency_crm.models.user import User, UserRole, UserStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserRole",
    "UserStatus",
    "Activity",
    "ActivityType",
]
