"""
Offline sync queue — client-side mutation queue with replay & pull.

Handles:
- Capturing CREATE / UPDATE / DELETE operations while offline and
  mirroring the queue to durable storage immediately
- Replaying the queue against the server with a bounded retry count;
  operations that exhaust it move to a dead-letter list the host app
  can show to the user
- Full syncs: replay first, then pull every tracked collection
  concurrently (incremental via `since=`), cache it locally, and stamp
  the last-sync time
- Conflict resolution between local and server records

Concurrency rules (single event loop):
- At most one full sync is in flight; later callers await the same task.
- Replay passes are serialised by a lock, so an immediate replay fired
  by `add_offline_operation` never double-submits an operation that a
  running full sync is already processing.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx

from agency_crm.core.config import settings
from agency_crm.sync.api_client import SyncApiClient, SyncResponseError, SyncTransportError
from agency_crm.sync.conflict import resolve_conflict
from agency_crm.sync.models import (
    ENTITY_ENDPOINTS,
    PULLED_COLLECTIONS,
    ConflictStrategy,
    SyncEntity,
    SyncOperation,
    SyncOperationType,
    SyncStats,
    generate_operation_id,
    now_ms,
)
from agency_crm.sync.storage import JsonFileStorage, KeyValueStorage

logger = logging.getLogger(__name__)

PENDING_OPERATIONS_KEY = "@pending_operations"
DEAD_LETTER_KEY = "@dead_letter_operations"
LAST_SYNC_KEY = "@last_sync"
LOCAL_DATA_PREFIX = "@local_"

DataListener = Callable[[str, list[Any]], Any]


class OfflineSyncQueue:
    def __init__(
        self,
        api: SyncApiClient,
        storage: KeyValueStorage,
        *,
        max_retries: int | None = None,
        sync_interval: float | None = None,
        on_data: DataListener | None = None,
        connected: bool = True,
    ) -> None:
        self.api = api
        self.storage = storage
        self.max_retries = settings.SYNC_MAX_RETRIES if max_retries is None else max_retries
        self.sync_interval = settings.SYNC_INTERVAL_SECONDS if sync_interval is None else sync_interval
        self.on_data = on_data

        self.queue: list[SyncOperation] = []
        self.dead_letters: list[SyncOperation] = []
        self.is_connected = connected
        self.is_active = False
        self.last_sync: int | None = None

        self._replay_lock = asyncio.Lock()
        self._sync_task: asyncio.Task | None = None
        self._periodic_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def initialize(self, *, start_periodic: bool = True) -> None:
        """Restore persisted state and start the periodic sync."""
        self.queue = await self._load_operations(PENDING_OPERATIONS_KEY)
        self.dead_letters = await self._load_operations(DEAD_LETTER_KEY)
        self.last_sync = await self.get_last_sync_time()
        logger.info(
            "Sync queue initialized (pending=%d dead_letters=%d)",
            len(self.queue),
            len(self.dead_letters),
        )
        if start_periodic:
            self.start_periodic_sync()

    async def set_connected(self, connected: bool) -> None:
        """Connectivity signal.  Coming back online triggers a full sync."""
        was_connected = self.is_connected
        self.is_connected = connected
        if connected and not was_connected:
            logger.info("Connection restored, starting full sync")
            await self.trigger_full_sync()

    def start_periodic_sync(self) -> None:
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if self.is_connected:
                await self.trigger_full_sync()

    async def close(self) -> None:
        """Stop the periodic sync and wait for any work already running."""
        task, self._periodic_task = self._periodic_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until no full sync or background replay is running."""
        pending = list(self._background)
        if self._sync_task is not None and not self._sync_task.done():
            pending.append(self._sync_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Queue ────────────────────────────────────────────────────────

    async def add_offline_operation(
        self,
        type: SyncOperationType | str,
        entity: SyncEntity | str,
        data: dict[str, Any],
    ) -> str:
        """
        Queue a mutation and persist the queue right away.

        Raises ValueError for an unknown type / entity, or when an UPDATE
        or DELETE payload has no server `id`.  A storage error propagates
        and the operation is not queued.
        """
        op_type = SyncOperationType(type)
        op_entity = SyncEntity(entity)
        if op_type != SyncOperationType.CREATE and data.get("id") is None:
            raise ValueError(f"{op_type.value} {op_entity.value} requires the record's server id")

        operation = SyncOperation(
            id=generate_operation_id(),
            type=op_type,
            entity=op_entity,
            data=dict(data),
            timestamp=now_ms(),
        )
        # Only a persisted operation counts as queued.
        await self._store_operations(PENDING_OPERATIONS_KEY, [*self.queue, operation])
        self.queue.append(operation)
        logger.debug("Queued %s %s (%s)", op_type.value, op_entity.value, operation.id)

        if self.is_connected:
            task = asyncio.get_running_loop().create_task(self._replay_in_background())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return operation.id

    async def _replay_in_background(self) -> None:
        try:
            await self.process_offline_actions()
        except Exception:
            logger.exception("Immediate replay failed")

    async def process_offline_actions(self) -> None:
        """
        Replay a snapshot of the queue.

        Operations queued while the pass runs wait for the next one.  A
        failed operation gets `retry_count += 1`; once it reaches
        `max_retries` it leaves the queue for the dead-letter list.  The
        queue is written to storage once, after the pass.
        """
        async with self._replay_lock:
            if not self.queue:
                return

            snapshot = list(self.queue)
            logger.info("Processing %d offline operations", len(snapshot))
            finished: set[str] = set()
            dead: list[SyncOperation] = []

            for operation in snapshot:
                try:
                    await self._process_single_operation(operation)
                except (SyncTransportError, SyncResponseError) as exc:
                    operation.retry_count += 1
                    logger.warning(
                        "Operation %s failed (attempt %d/%d): %s",
                        operation.id,
                        operation.retry_count,
                        self.max_retries,
                        exc,
                    )
                    if operation.retry_count >= self.max_retries:
                        logger.error(
                            "Operation %s (%s %s) exceeded max retries, moved to dead letters",
                            operation.id,
                            operation.type.value,
                            operation.entity.value,
                        )
                        finished.add(operation.id)
                        dead.append(operation)
                    continue
                finished.add(operation.id)

            self.queue = [op for op in self.queue if op.id not in finished]
            await self._store_operations(PENDING_OPERATIONS_KEY, self.queue)
            if dead:
                self.dead_letters.extend(dead)
                await self._store_operations(DEAD_LETTER_KEY, self.dead_letters)

    async def _process_single_operation(self, operation: SyncOperation) -> None:
        endpoint = ENTITY_ENDPOINTS[operation.entity]

        if operation.type == SyncOperationType.CREATE:
            await self.api.post(endpoint, operation.data)
        elif operation.type == SyncOperationType.UPDATE:
            await self.api.put(f"{endpoint}/{operation.data['id']}", operation.data)
        elif operation.type == SyncOperationType.DELETE:
            await self.api.delete(f"{endpoint}/{operation.data['id']}")

    # ── Dead letters ─────────────────────────────────────────────────

    def get_dead_letters(self) -> list[SyncOperation]:
        return list(self.dead_letters)

    def _pop_dead_letter(self, operation_id: str) -> SyncOperation | None:
        for index, operation in enumerate(self.dead_letters):
            if operation.id == operation_id:
                return self.dead_letters.pop(index)
        return None

    async def requeue_dead_letter(self, operation_id: str) -> bool:
        """Give a dead-lettered operation a fresh retry budget."""
        operation = self._pop_dead_letter(operation_id)
        if operation is None:
            return False
        operation.retry_count = 0
        self.queue.append(operation)
        await self._store_operations(PENDING_OPERATIONS_KEY, self.queue)
        await self._store_operations(DEAD_LETTER_KEY, self.dead_letters)
        logger.info("Operation %s requeued from dead letters", operation_id)
        return True

    async def discard_dead_letter(self, operation_id: str) -> bool:
        operation = self._pop_dead_letter(operation_id)
        if operation is None:
            return False
        await self._store_operations(DEAD_LETTER_KEY, self.dead_letters)
        logger.info("Operation %s discarded from dead letters", operation_id)
        return True

    # ── Full sync ────────────────────────────────────────────────────

    async def trigger_full_sync(self) -> None:
        """
        Replay the queue, then pull every collection.  No-op while offline.

        If a pass is already running, wait for it instead of starting a
        second one.
        """
        if not self.is_connected:
            logger.info("Skipping sync - no network connection")
            return

        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.get_running_loop().create_task(self._run_full_sync())
        await asyncio.shield(self._sync_task)

    async def _run_full_sync(self) -> None:
        self.is_active = True
        try:
            await self.process_offline_actions()

            since = await self.get_last_sync_time()
            async with asyncio.TaskGroup() as group:
                for collection, entity in PULLED_COLLECTIONS.items():
                    group.create_task(self._pull_collection(collection, entity, since))

            self.last_sync = now_ms()
            await self.storage.set_item(LAST_SYNC_KEY, str(self.last_sync))
            logger.info("Full sync completed %s", self.get_sync_stats().to_dict())
        except Exception:
            # The queue is untouched beyond what replay already settled;
            # the next periodic pass picks up from here.
            logger.exception("Full sync failed (pending=%d)", len(self.queue))
        finally:
            self.is_active = False

    async def _pull_collection(self, collection: str, entity: SyncEntity, since: int | None) -> None:
        params = None
        if since:
            params = {"since": datetime.fromtimestamp(since / 1000, tz=timezone.utc).isoformat()}

        try:
            response = await self.api.get(ENTITY_ENDPOINTS[entity], params)
        except SyncTransportError as exc:
            logger.warning("%s sync failed, falling back to local cache: %s", collection, exc)
            cached = await self.get_local_data(collection)
            if cached is not None:
                self._emit(collection, cached)
            return

        if not response.get("success"):
            logger.warning("%s sync rejected by server: %s", collection, response.get("error"))
            return

        records = (response.get("data") or {}).get(collection)
        if not isinstance(records, list):
            raise SyncResponseError(f"{collection} response has no '{collection}' list")

        self._emit(collection, records)
        await self.store_local_data(collection, records)

    def _emit(self, collection: str, records: list[Any]) -> None:
        if self.on_data is not None:
            self.on_data(collection, records)

    # ── Conflicts ────────────────────────────────────────────────────

    def resolve_conflict(
        self,
        local_data: dict[str, Any],
        server_data: dict[str, Any],
        strategy: ConflictStrategy | str = ConflictStrategy.SERVER,
    ) -> dict[str, Any]:
        return resolve_conflict(local_data, server_data, strategy)

    # ── Stats ────────────────────────────────────────────────────────

    def get_sync_stats(self) -> SyncStats:
        return SyncStats(
            last_sync=self.last_sync,
            is_active=self.is_active,
            pending_operations=len(self.queue),
            failed_operations=sum(1 for op in self.queue if op.retry_count >= self.max_retries),
            dead_letter_operations=len(self.dead_letters),
        )

    # ── Storage ──────────────────────────────────────────────────────

    async def get_last_sync_time(self) -> int | None:
        raw = await self.storage.get_item(LAST_SYNC_KEY)
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.error("Ignoring unreadable last-sync value %r", raw)
            return None

    async def store_local_data(self, collection: str, records: list[Any]) -> None:
        await self.storage.set_item(f"{LOCAL_DATA_PREFIX}{collection}", json.dumps(records))

    async def get_local_data(self, collection: str) -> list[Any] | None:
        raw = await self.storage.get_item(f"{LOCAL_DATA_PREFIX}{collection}")
        return json.loads(raw) if raw else None

    async def _store_operations(self, key: str, operations: list[SyncOperation]) -> None:
        await self.storage.set_item(key, json.dumps([op.to_dict() for op in operations]))

    async def _load_operations(self, key: str) -> list[SyncOperation]:
        raw = await self.storage.get_item(key)
        if not raw:
            return []
        try:
            return [SyncOperation.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError):
            logger.exception("Could not restore %s from storage", key)
            return []


def create_sync_queue(
    access_token: str | None = None,
    *,
    storage: KeyValueStorage | None = None,
    on_data: DataListener | None = None,
    client: httpx.AsyncClient | None = None,
) -> OfflineSyncQueue:
    """Build a queue from `SYNC_*` settings.  Call `initialize()` on it next."""
    api = SyncApiClient(settings.SYNC_API_BASE_URL, access_token=access_token, client=client)
    return OfflineSyncQueue(
        api,
        storage if storage is not None else JsonFileStorage(settings.SYNC_STORAGE_PATH),
        on_data=on_data,
    )
