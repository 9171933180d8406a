"""
Durable key-value storage for the sync client.

The queue only needs three async calls: `get_item`, `set_item`,
`remove_item`, all string-valued.  `JsonFileStorage` keeps every key in
one JSON document and replaces it atomically on each write, so a killed
process leaves either the old or the new document behind.  A file that
no longer parses is moved aside and the store starts empty.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage.  Handy for tests and ephemeral clients."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    async def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class JsonFileStorage:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._cache: dict[str, str] | None = None

    async def _read(self) -> dict[str, str]:
        if not await aiofiles.os.path.exists(self.path):
            return {}
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as fh:
                data = json.loads(await fh.read())
            if not isinstance(data, dict):
                raise ValueError("top level is not a JSON object")
        except ValueError as exc:
            corrupt = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
            logger.error("Unreadable sync store %s (%s), moved to %s", self.path, exc, corrupt)
            await aiofiles.os.replace(self.path, corrupt)
            return {}
        return data

    async def _write(self, data: dict[str, str]) -> None:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(data))
            await fh.flush()
            os.fsync(fh.fileno())
        await aiofiles.os.replace(tmp, self.path)

    async def _load(self) -> dict[str, str]:
        if self._cache is None:
            self._cache = await self._read()
            logger.debug("Loaded %d keys from %s", len(self._cache), self.path)
        return self._cache

    async def get_item(self, key: str) -> str | None:
        async with self._lock:
            return (await self._load()).get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            data = {**await self._load(), key: value}
            await self._write(data)
            self._cache = data

    async def remove_item(self, key: str) -> None:
        async with self._lock:
            current = await self._load()
            if key not in current:
                return
            data = {k: v for k, v in current.items() if k != key}
            await self._write(data)
            self._cache = data
