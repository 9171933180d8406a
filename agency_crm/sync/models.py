"""
Offline sync models — operation records, enums and the stats snapshot.

Operations are persisted as JSON; `to_dict` / `from_dict` keep the
on-disk shape (camelCase `retryCount`) stable across releases.
"""

from __future__ import annotations

import enum
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any

_ID_ALPHABET = string.ascii_lowercase + string.digits


class SyncOperationType(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncEntity(str, enum.Enum):
    CUSTOMER = "customer"
    LEAD = "lead"
    PROJECT = "project"
    MESSAGE = "message"
    COMMUNICATION = "communication"


class ConflictStrategy(str, enum.Enum):
    SERVER = "server"
    LOCAL = "local"
    MERGE = "merge"


# Server endpoint per entity, relative to the API base URL.
ENTITY_ENDPOINTS: dict[SyncEntity, str] = {
    SyncEntity.CUSTOMER: "/crm/customers",
    SyncEntity.LEAD: "/crm/leads",
    SyncEntity.PROJECT: "/crm/projects",
    SyncEntity.MESSAGE: "/communication/messages",
    SyncEntity.COMMUNICATION: "/communication/logs",
}

# Collections pulled on every full sync: local cache key -> entity.
PULLED_COLLECTIONS: dict[str, SyncEntity] = {
    "customers": SyncEntity.CUSTOMER,
    "leads": SyncEntity.LEAD,
    "projects": SyncEntity.PROJECT,
    "messages": SyncEntity.MESSAGE,
}


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_operation_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{now_ms()}_{suffix}"


@dataclass
class SyncOperation:
    """
    A mutation captured while offline (or queued proactively).

    Attributes:
        id: Client-generated identifier (epoch ms + random suffix)
        type: CREATE / UPDATE / DELETE
        entity: Target domain entity
        data: Payload; UPDATE and DELETE carry the server-assigned `id`
        timestamp: Creation time in epoch milliseconds
        retry_count: Failed replay attempts so far (never decreases
            while the operation is queued)
    """

    id: str
    type: SyncOperationType
    entity: SyncEntity
    data: dict[str, Any]
    timestamp: int
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity": self.entity.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncOperation:
        return cls(
            id=data["id"],
            type=SyncOperationType(data["type"]),
            entity=SyncEntity(data["entity"]),
            data=data.get("data") or {},
            timestamp=int(data["timestamp"]),
            retry_count=int(data.get("retryCount", data.get("retry_count", 0))),
        )


@dataclass(frozen=True)
class SyncStats:
    """Snapshot for UI status indicators."""

    last_sync: int | None
    is_active: bool
    pending_operations: int
    failed_operations: int
    dead_letter_operations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSync": self.last_sync,
            "isActive": self.is_active,
            "pendingOperations": self.pending_operations,
            "failedOperations": self.failed_operations,
            "deadLetterOperations": self.dead_letter_operations,
        }
