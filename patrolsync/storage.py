"""
Device-side durable key/value storage.

Documents are whole JSON strings, read and written as a unit. Callers that
read-modify-write a document hold that key's lock from `DocumentLocks` for
the whole cycle, since every `await` between the read and the write is a
point where another coroutine could interleave.
"""

import asyncio
import os
import tempfile
from collections.abc import MutableMapping
from pathlib import Path
from typing import Protocol

from patrolsync.errors import StorageError

ACTIVE_SHIFT_KEY = "activeShift"
SHIFT_HISTORY_KEY = "shiftHistory"
SYNC_QUEUE_KEY = "syncQueue"
SETTINGS_KEY = "settings"
CONSENT_KEY = "privacyConsent"
TEMPLATES_KEY = "shiftTemplates"
LAST_SYNC_KEY = "lastSync"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._store: MutableMapping[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def put(self, key: str, value: str) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)


class JsonFileKeyValueStore:
    """
    One file per key under `directory`. Writes go to a temp file in the same
    directory and are moved into place with os.replace, so a crash mid-write
    leaves the previous document intact.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    async def get(self, key: str) -> str | None:
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as exc:
            raise StorageError(f"could not read {key}: {exc}") from exc

    async def put(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._write, key, value)
        except OSError as exc:
            raise StorageError(f"could not write {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete, key)
        except OSError as exc:
            raise StorageError(f"could not delete {key}: {exc}") from exc


class DocumentLocks:
    """One asyncio.Lock per document key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock
