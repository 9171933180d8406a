"""
Conflict resolution strategies and the durable JSON file storage.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from agency_crm.sync import ConflictStrategy, JsonFileStorage, resolve_conflict
from agency_crm.sync.conflict import latest_timestamp


# ---------------------------------------------------------------------------
# resolve_conflict
# ---------------------------------------------------------------------------

LOCAL = {"id": 5, "name": "Local name", "x": 1, "updatedAt": "2026-03-01T10:00:00Z"}
SERVER = {"id": 5, "name": "Server name", "y": 2, "updatedAt": "2026-03-01T12:00:00Z"}


def test_server_strategy_is_default() -> None:
    assert resolve_conflict(LOCAL, SERVER) == SERVER


def test_local_strategy() -> None:
    assert resolve_conflict(LOCAL, SERVER, "local") == LOCAL


def test_merge_local_fields_win_and_latest_timestamp_kept() -> None:
    merged = resolve_conflict(LOCAL, SERVER, ConflictStrategy.MERGE)

    assert merged == {
        "id": 5,
        "name": "Local name",
        "x": 1,
        "y": 2,
        "updatedAt": "2026-03-01T12:00:00Z",
    }


def test_merge_with_epoch_millis() -> None:
    t1, t2 = 1_700_000_000_000, 1_700_000_360_000

    merged = resolve_conflict({"updatedAt": t1, "x": 1}, {"updatedAt": t2, "y": 2}, "merge")

    assert merged == {"x": 1, "y": 2, "updatedAt": t2}


def test_merge_prefers_local_timestamp_when_newer() -> None:
    local = {"updatedAt": datetime(2026, 5, 2, tzinfo=timezone.utc)}
    server = {"updatedAt": "2026-05-01T00:00:00+00:00"}

    assert resolve_conflict(local, server, "merge")["updatedAt"] == local["updatedAt"]


def test_latest_timestamp_with_missing_side() -> None:
    assert latest_timestamp(None, "2026-01-01T00:00:00Z") == "2026-01-01T00:00:00Z"
    assert latest_timestamp(1_700_000_000_000, None) == 1_700_000_000_000


def test_unknown_strategy_keeps_server_copy() -> None:
    assert resolve_conflict(LOCAL, SERVER, "newest") is SERVER


# ---------------------------------------------------------------------------
# JsonFileStorage
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_file_storage_survives_restart(tmp_path) -> None:
    path = tmp_path / "sync" / "store.json"
    storage = JsonFileStorage(path)

    await storage.set_item("@pending_operations", "[]")
    await storage.set_item("@last_sync", "1700000000000")
    await storage.remove_item("@pending_operations")

    reopened = JsonFileStorage(path)
    assert await reopened.get_item("@last_sync") == "1700000000000"
    assert await reopened.get_item("@pending_operations") is None
    assert json.loads(path.read_text()) == {"@last_sync": "1700000000000"}


@pytest.mark.asyncio
async def test_file_storage_missing_file_is_empty(tmp_path) -> None:
    storage = JsonFileStorage(tmp_path / "absent.json")

    assert await storage.get_item("@last_sync") is None
    await storage.remove_item("@last_sync")
    assert not (tmp_path / "absent.json").exists()


@pytest.mark.asyncio
async def test_file_storage_moves_corrupt_file_aside(tmp_path) -> None:
    path = tmp_path / "store.json"
    path.write_text('{"@pending_operations": "[]"')
    storage = JsonFileStorage(path)

    assert await storage.get_item("@pending_operations") is None

    moved = list(tmp_path.glob("store.json.corrupt-*"))
    assert len(moved) == 1
    assert moved[0].read_text() == '{"@pending_operations": "[]"'

    await storage.set_item("@last_sync", "1700000000000")
    assert json.loads(path.read_text()) == {"@last_sync": "1700000000000"}


@pytest.mark.asyncio
async def test_file_storage_non_object_document_is_moved_aside(tmp_path) -> None:
    path = tmp_path / "store.json"
    path.write_text("[1, 2, 3]")

    assert await JsonFileStorage(path).get_item("@last_sync") is None
    assert not path.exists()
    assert len(list(tmp_path.glob("store.json.corrupt-*"))) == 1


@pytest.mark.asyncio
async def test_file_storage_failed_write_leaves_cache_untouched(tmp_path, monkeypatch) -> None:
    path = tmp_path / "store.json"
    storage = JsonFileStorage(path)
    await storage.set_item("@last_sync", "1")

    async def disk_full(data):
        raise OSError("disk full")

    monkeypatch.setattr(storage, "_write", disk_full)

    with pytest.raises(OSError):
        await storage.set_item("@last_sync", "2")
    with pytest.raises(OSError):
        await storage.remove_item("@last_sync")

    assert await storage.get_item("@last_sync") == "1"
    assert json.loads(path.read_text()) == {"@last_sync": "1"}
