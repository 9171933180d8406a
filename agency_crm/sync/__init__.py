"""
Offline sync client.

Quick start::

    from agency_crm.sync import create_sync_queue

    queue = create_sync_queue(access_token=token)   # SYNC_* settings
    await queue.initialize()                 # restore queue, start periodic sync
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    queue.api.set_access_token(rotated)      # after a token refresh
    await queue.set_connected(False)         # pushed by a network observer
    await queue.close()
"""

from agency_crm.sync.api_client import SyncApiClient, SyncResponseError, SyncTransportError
from agency_crm.sync.conflict import resolve_conflict
from agency_crm.sync.models import (
    ConflictStrategy,
    SyncEntity,
    SyncOperation,
    SyncOperationType,
    SyncStats,
)
from agency_crm.sync.service import OfflineSyncQueue, create_sync_queue
from agency_crm.sync.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    "OfflineSyncQueue",
    "create_sync_queue",
    "SyncApiClient",
    "SyncTransportError",
    "SyncResponseError",
    "SyncOperation",
    "SyncOperationType",
    "SyncEntity",
    "SyncStats",
    "ConflictStrategy",
    "resolve_conflict",
    "KeyValueStorage",
    "MemoryStorage",
    "JsonFileStorage",
]
