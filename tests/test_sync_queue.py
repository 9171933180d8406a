"""
Offline sync queue: capture, replay with bounded retries, dead letters,
full-sync ordering, the single-flight guard and local cache fallback.

The backend is an `httpx.MockTransport`; storage is in memory unless a
test exercises the JSON file store.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from agency_crm.core.config import settings
from agency_crm.sync import (
    JsonFileStorage,
    MemoryStorage,
    OfflineSyncQueue,
    SyncApiClient,
    SyncOperation,
    create_sync_queue,
)

BASE_URL = "http://crm.test/api"

COLLECTION_BY_PATH = {
    "/api/crm/customers": "customers",
    "/api/crm/leads": "leads",
    "/api/crm/projects": "projects",
    "/api/communication/messages": "messages",
}


class FakeBackend:
    """Records every request; `fail_writes` / `fail_reads` simulate outages."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict]] = []
        self.fail_writes = False
        self.fail_reads = False
        self.malformed_reads = False
        self.write_delay = 0.0
        self.authorizations: list[str | None] = []

    def writes(self) -> list[tuple[str, str]]:
        return [(m, p) for m, p, _ in self.requests if m != "GET"]

    def reads(self) -> list[tuple[str, dict]]:
        return [(p, q) for m, p, q in self.requests if m == "GET"]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path, dict(request.url.params)))
        self.authorizations.append(request.headers.get("authorization"))

        if request.method == "GET":
            if self.fail_reads:
                raise httpx.ConnectError("network down", request=request)
            collection = COLLECTION_BY_PATH[request.url.path]
            if self.malformed_reads:
                return httpx.Response(200, json={"success": True, "data": {}})
            return httpx.Response(
                200,
                json={"success": True, "data": {collection: [{"id": 1, "kind": collection}]}},
            )

        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise httpx.ConnectError("network down", request=request)
        return httpx.Response(200, json={"success": True})


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest_asyncio.fixture
async def api(backend):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))
    yield SyncApiClient(BASE_URL, client=client)
    await client.aclose()


@pytest.fixture
def pulled() -> list[tuple[str, list]]:
    return []


@pytest_asyncio.fixture
async def queue(api, storage, pulled):
    q = OfflineSyncQueue(
        api,
        storage,
        max_retries=3,
        connected=False,
        on_data=lambda collection, records: pulled.append((collection, records)),
    )
    yield q
    await q.close()


def _persisted(storage: MemoryStorage, key: str = "@pending_operations") -> list[dict]:
    return json.loads(storage.items.get(key, "[]"))


class DiskFullStorage(MemoryStorage):
    async def set_item(self, key: str, value: str) -> None:
        raise OSError("disk full")


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_offline_operation_is_persisted_immediately(queue, storage, backend) -> None:
    op_id = await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})

    persisted = _persisted(storage)
    assert [item["id"] for item in persisted] == [op_id]
    assert persisted[0]["retryCount"] == 0
    assert persisted[0]["entity"] == "lead"
    assert backend.requests == []


@pytest.mark.asyncio
async def test_update_and_delete_need_server_id(queue) -> None:
    with pytest.raises(ValueError):
        await queue.add_offline_operation("UPDATE", "customer", {"name": "No id"})
    with pytest.raises(ValueError):
        await queue.add_offline_operation("DELETE", "project", {})
    with pytest.raises(ValueError):
        await queue.add_offline_operation("CREATE", "invoice", {"total": 10})
    with pytest.raises(ValueError):
        await queue.add_offline_operation("UPSERT", "lead", {"id": 1})

    assert queue.queue == []


@pytest.mark.asyncio
async def test_failed_persist_leaves_operation_unqueued(api, backend) -> None:
    queue = OfflineSyncQueue(api, DiskFullStorage(), connected=True)

    with pytest.raises(OSError):
        await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    await queue.wait_idle()

    assert queue.queue == []
    assert backend.requests == []


@pytest.mark.asyncio
async def test_zero_is_a_valid_server_id(queue, storage) -> None:
    await queue.add_offline_operation("UPDATE", "customer", {"id": 0, "name": "Zero"})

    assert _persisted(storage)[0]["data"] == {"id": 0, "name": "Zero"}


@pytest.mark.asyncio
async def test_queued_payload_is_a_copy(queue) -> None:
    payload = {"name": "Acme"}
    await queue.add_offline_operation("CREATE", "lead", payload)
    payload["name"] = "Changed after queueing"

    assert queue.queue[0].data == {"name": "Acme"}


@pytest.mark.asyncio
async def test_add_while_connected_replays_right_away(queue, backend) -> None:
    queue.is_connected = True

    await queue.add_offline_operation("CREATE", "message", {"body": "hi"})
    await queue.wait_idle()

    assert backend.writes() == [("POST", "/api/communication/messages")]
    assert queue.queue == []


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_replay_dispatches_by_type(queue, backend, storage) -> None:
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    await queue.add_offline_operation("UPDATE", "customer", {"id": 42, "name": "Bo"})
    await queue.add_offline_operation("DELETE", "project", {"id": 7})
    await queue.add_offline_operation("CREATE", "communication", {"channel": "email"})

    await queue.process_offline_actions()

    assert backend.writes() == [
        ("POST", "/api/crm/leads"),
        ("PUT", "/api/crm/customers/42"),
        ("DELETE", "/api/crm/projects/7"),
        ("POST", "/api/communication/logs"),
    ]
    assert queue.queue == []
    assert _persisted(storage) == []


@pytest.mark.asyncio
async def test_retry_count_then_dead_letter(queue, backend, storage) -> None:
    backend.fail_writes = True
    op_id = await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})

    for expected in (1, 2):
        await queue.process_offline_actions()
        assert [op.retry_count for op in queue.queue] == [expected]
        assert _persisted(storage)[0]["retryCount"] == expected

    await queue.process_offline_actions()

    assert queue.queue == []
    stats = queue.get_sync_stats()
    assert stats.pending_operations == 0
    assert stats.failed_operations == 0
    assert stats.dead_letter_operations == 1
    assert [op.id for op in queue.get_dead_letters()] == [op_id]
    assert _persisted(storage, "@dead_letter_operations")[0]["retryCount"] == 3
    assert len(backend.writes()) == 3


@pytest.mark.asyncio
async def test_server_error_counts_as_failure(storage) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"success": False})

    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    queue = OfflineSyncQueue(SyncApiClient(BASE_URL, client=client), storage, connected=False)
    await queue.add_offline_operation("UPDATE", "lead", {"id": 3, "status": "WON"})

    await queue.process_offline_actions()

    assert queue.queue[0].retry_count == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_only_failed_operations_stay_queued(queue, backend) -> None:
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    await queue.process_offline_actions()
    backend.fail_writes = True
    await queue.add_offline_operation("CREATE", "lead", {"name": "Globex"})

    await queue.process_offline_actions()

    assert [op.data["name"] for op in queue.queue] == ["Globex"]


@pytest.mark.asyncio
async def test_requeue_and_discard_dead_letters(queue, backend, storage) -> None:
    backend.fail_writes = True
    first = await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    second = await queue.add_offline_operation("CREATE", "lead", {"name": "Globex"})
    for _ in range(3):
        await queue.process_offline_actions()

    assert await queue.requeue_dead_letter(first) is True
    assert await queue.discard_dead_letter(second) is True
    assert await queue.discard_dead_letter("missing") is False

    assert [op.id for op in queue.queue] == [first]
    assert queue.queue[0].retry_count == 0
    assert queue.get_dead_letters() == []
    assert _persisted(storage, "@dead_letter_operations") == []

    backend.fail_writes = False
    await queue.process_offline_actions()
    assert queue.queue == []


# ---------------------------------------------------------------------------
# Full sync
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_full_sync_while_offline_does_nothing(queue, backend, storage) -> None:
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    before = _persisted(storage)

    await queue.trigger_full_sync()

    assert backend.requests == []
    assert _persisted(storage) == before
    assert len(queue.queue) == 1
    assert queue.get_sync_stats().last_sync is None


@pytest.mark.asyncio
async def test_full_sync_replays_before_pulling(queue, backend, storage, pulled) -> None:
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    queue.is_connected = True

    await queue.trigger_full_sync()

    methods = [m for m, _, _ in backend.requests]
    assert methods[0] == "POST"
    assert sorted(methods[1:]) == ["GET"] * 4
    assert {p for p, _ in backend.reads()} == set(COLLECTION_BY_PATH)
    assert all(q == {} for _, q in backend.reads())

    assert {c for c, _ in pulled} == {"customers", "leads", "projects", "messages"}
    assert json.loads(storage.items["@local_leads"]) == [{"id": 1, "kind": "leads"}]
    stats = queue.get_sync_stats()
    assert stats.last_sync is not None
    assert storage.items["@last_sync"] == str(stats.last_sync)
    assert stats.is_active is False


@pytest.mark.asyncio
async def test_second_sync_is_incremental(queue, backend) -> None:
    queue.is_connected = True
    await queue.trigger_full_sync()
    backend.requests.clear()

    await queue.trigger_full_sync()

    assert len(backend.reads()) == 4
    assert all("since" in q for _, q in backend.reads())


@pytest.mark.asyncio
async def test_pull_failure_falls_back_to_local_cache(queue, backend, pulled) -> None:
    queue.is_connected = True
    await queue.trigger_full_sync()
    pulled.clear()
    backend.fail_reads = True

    await queue.trigger_full_sync()

    assert sorted(c for c, _ in pulled) == ["customers", "leads", "messages", "projects"]
    assert dict(pulled)["customers"] == [{"id": 1, "kind": "customers"}]


@pytest.mark.asyncio
async def test_malformed_response_aborts_pass_and_keeps_queue(queue, backend, storage) -> None:
    backend.fail_writes = True
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    backend.malformed_reads = True
    queue.is_connected = True

    await queue.trigger_full_sync()

    assert len(queue.queue) == 1
    assert "@last_sync" not in storage.items
    assert queue.get_sync_stats().is_active is False


@pytest.mark.asyncio
async def test_concurrent_syncs_share_one_pass(queue, backend) -> None:
    backend.write_delay = 0.05
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    queue.is_connected = True

    await asyncio.gather(queue.trigger_full_sync(), queue.trigger_full_sync())

    assert backend.writes() == [("POST", "/api/crm/leads")]
    assert len(backend.reads()) == 4


@pytest.mark.asyncio
async def test_immediate_replay_and_full_sync_do_not_double_submit(queue, backend) -> None:
    backend.write_delay = 0.05
    queue.is_connected = True

    await queue.add_offline_operation("CREATE", "customer", {"name": "Acme"})
    await queue.trigger_full_sync()
    await queue.wait_idle()

    assert backend.writes() == [("POST", "/api/crm/customers")]


@pytest.mark.asyncio
async def test_reconnect_triggers_full_sync(queue, backend) -> None:
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})

    await queue.set_connected(True)

    assert backend.writes() == [("POST", "/api/crm/leads")]
    assert queue.get_sync_stats().last_sync is not None


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_initialize_restores_persisted_state(api) -> None:
    stored = SyncOperation.from_dict({
        "id": "1700000000000_abc123xyz",
        "type": "UPDATE",
        "entity": "customer",
        "data": {"id": 9},
        "timestamp": 1700000000000,
        "retryCount": 2,
    })
    storage = MemoryStorage({
        "@pending_operations": json.dumps([stored.to_dict()]),
        "@dead_letter_operations": "not json",
        "@last_sync": "1700000000500",
    })
    queue = OfflineSyncQueue(api, storage, connected=False)

    await queue.initialize(start_periodic=False)

    assert queue.queue == [stored]
    assert queue.dead_letters == []
    assert queue.get_sync_stats().last_sync == 1700000000500


@pytest.mark.asyncio
async def test_periodic_sync_runs_when_connected(api, storage, backend) -> None:
    queue = OfflineSyncQueue(api, storage, sync_interval=0.01, connected=True)
    await queue.initialize()

    for _ in range(50):
        if backend.reads():
            break
        await asyncio.sleep(0.01)
    await queue.close()

    assert backend.reads()


@pytest.mark.asyncio
async def test_initialize_survives_corrupt_store_file(api, tmp_path) -> None:
    path = tmp_path / "store.json"
    path.write_text('{"@pending_operations": "[]"')
    queue = OfflineSyncQueue(api, JsonFileStorage(path), connected=False)

    await queue.initialize(start_periodic=False)

    assert queue.queue == []
    assert queue.last_sync is None

    op_id = await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    pending = json.loads(json.loads(path.read_text())["@pending_operations"])
    assert [item["id"] for item in pending] == [op_id]


@pytest.mark.asyncio
async def test_zero_max_retries_dead_letters_on_first_failure(api, storage, backend) -> None:
    backend.fail_writes = True
    queue = OfflineSyncQueue(api, storage, max_retries=0, connected=False)
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})

    await queue.process_offline_actions()

    assert queue.queue == []
    assert len(queue.dead_letters) == 1


@pytest.mark.asyncio
async def test_sync_stats_serialise_for_status_indicators(queue, backend) -> None:
    backend.fail_writes = True
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})
    await queue.process_offline_actions()

    assert queue.get_sync_stats().to_dict() == {
        "lastSync": None,
        "isActive": False,
        "pendingOperations": 1,
        "failedOperations": 0,
        "deadLetterOperations": 0,
    }


# ---------------------------------------------------------------------------
# Factory / auth
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_sync_queue_reads_sync_settings(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "SYNC_API_BASE_URL", BASE_URL)
    monkeypatch.setattr(settings, "SYNC_STORAGE_PATH", str(tmp_path / "store.json"))
    monkeypatch.setattr(settings, "SYNC_MAX_RETRIES", 5)
    monkeypatch.setattr(settings, "SYNC_INTERVAL_SECONDS", 45)

    queue = create_sync_queue("token-1")
    try:
        assert isinstance(queue.storage, JsonFileStorage)
        assert queue.storage.path == tmp_path / "store.json"
        assert queue.max_retries == 5
        assert queue.sync_interval == 45
        assert queue.api.access_token == "token-1"
        assert str(queue.api._client.base_url) == "http://crm.test/api/"
    finally:
        await queue.api.aclose()


@pytest.mark.asyncio
async def test_rotated_access_token_is_sent_on_replay(backend, storage) -> None:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))
    queue = create_sync_queue("old-token", storage=storage, client=client)
    queue.is_connected = False
    await queue.add_offline_operation("CREATE", "lead", {"name": "Acme"})

    queue.api.set_access_token("new-token")
    await queue.process_offline_actions()

    assert backend.authorizations == ["Bearer new-token"]
    await queue.close()
    await client.aclose()
