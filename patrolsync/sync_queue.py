"""
Durable outbox of events waiting to reach the sync API.

The queue is one JSON document (a list of items in creation order). Items
leave it only through `remove`, which the dispatcher calls after a
confirmed delivery. Items that reach the attempt ceiling stay in the
document as "failed" and are skipped by `retryable_items`.
"""

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from patrolsync.errors import StorageError
from patrolsync.models import (
    QueueStats,
    SyncItemType,
    SyncQueueItem,
    SyncStatus,
    utcnow,
)
from patrolsync.storage import (
    LAST_SYNC_KEY,
    SYNC_QUEUE_KEY,
    DocumentLocks,
    KeyValueStore,
)

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 5

NowFn = Callable[[], datetime]
EnqueueListener = Callable[[SyncQueueItem], Any]

_items_adapter = TypeAdapter(list[SyncQueueItem])


class SyncQueue:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        locks: DocumentLocks | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        now_fn: NowFn = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.now_fn = now_fn
        self._locks = locks or DocumentLocks()
        self._listeners: list[EnqueueListener] = []

    @property
    def _lock(self):
        return self._locks(SYNC_QUEUE_KEY)

    def add_listener(self, listener: EnqueueListener) -> None:
        self._listeners.append(listener)

    async def _load(self) -> list[SyncQueueItem]:
        raw = await self.store.get(SYNC_QUEUE_KEY)
        if not raw:
            return []
        try:
            return _items_adapter.validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"sync queue document is corrupt: {exc}") from exc

    async def _save(self, items: list[SyncQueueItem]) -> None:
        doc = json.dumps([item.to_json_dict() for item in items])
        await self.store.put(SYNC_QUEUE_KEY, doc)

    async def enqueue(
        self, item_type: SyncItemType, payload: dict[str, Any]
    ) -> SyncQueueItem:
        now = self.now_fn()
        item = SyncQueueItem(
            type=item_type,
            payload=payload,
            created_at=now,
            last_attempt=now,
        )
        async with self._lock:
            items = await self._load()
            items.append(item)
            await self._save(items)
        logger.info("sync_queue.enqueued", item_id=item.id, item_type=item.type)

        for listener in self._listeners:
            listener(item)
        return item

    async def remove(self, item_id: str) -> None:
        async with self._lock:
            items = await self._load()
            remaining = [i for i in items if i.id != item_id]
            if len(remaining) == len(items):
                return
            await self._save(remaining)
        logger.debug("sync_queue.removed", item_id=item_id)

    async def record_attempt(self, item_id: str) -> SyncQueueItem | None:
        async with self._lock:
            items = await self._load()
            item = next((i for i in items if i.id == item_id), None)
            if item is None:
                return None
            item.attempts += 1
            item.last_attempt = self.now_fn()
            await self._save(items)

        if item.attempts >= self.max_attempts:
            logger.warning(
                "sync_queue.item_failed_permanently",
                item_id=item.id,
                item_type=item.type,
                attempts=item.attempts,
            )
        return item

    async def retryable_items(self) -> list[SyncQueueItem]:
        return [i for i in await self.list() if i.attempts < self.max_attempts]

    async def stats(self) -> QueueStats:
        items = await self.list()
        failed = sum(1 for i in items if i.attempts >= self.max_attempts)
        return QueueStats(
            total=len(items),
            pending=len(items) - failed,
            failed=failed,
            last_sync=await self.get_last_sync(),
        )

    def _status_of(
        self, item: SyncQueueItem | None, draining: bool
    ) -> SyncStatus:
        if item is None:
            return SyncStatus.SYNCED
        if item.attempts >= self.max_attempts:
            return SyncStatus.FAILED
        if draining:
            return SyncStatus.SYNCING
        return SyncStatus.PENDING

    async def item_status(
        self, item_id: str, *, draining: bool = False
    ) -> SyncStatus:
        """An item no longer in the queue has been delivered."""
        items = await self.list()
        item = next((i for i in items if i.id == item_id), None)
        return self._status_of(item, draining)

    async def photo_sync_status(
        self, photo_id: str, *, draining: bool = False
    ) -> SyncStatus:
        items = await self.list()
        item = next(
            (
                i
                for i in items
                if i.type == SyncItemType.PHOTO
                and i.payload.get("photoId") == photo_id
            ),
            None,
        )
        return self._status_of(item, draining)

    async def update_last_sync(self) -> datetime:
        now = self.now_fn()
        await self.store.put(LAST_SYNC_KEY, now.isoformat())
        return now

    async def get_last_sync(self) -> datetime | None:
        raw = await self.store.get(LAST_SYNC_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError as exc:
            raise StorageError(f"corrupt last sync time: {raw!r}") from exc

    async def requeue_failed(self) -> int:
        """
        Reset the attempt count of every permanently failed item. Nothing
        calls this automatically; it is the repair path for items that ran
        out of attempts.
        """
        async with self._lock:
            items = await self._load()
            failed = [i for i in items if i.attempts >= self.max_attempts]
            for item in failed:
                item.attempts = 0
            if failed:
                await self._save(items)
        if failed:
            logger.info("sync_queue.requeued_failed", count=len(failed))
        return len(failed)

    async def clear(self) -> None:
        async with self._lock:
            await self.store.delete(SYNC_QUEUE_KEY)
        logger.info("sync_queue.cleared")

    async def list(self) -> list[SyncQueueItem]:
        async with self._lock:
            return await self._load()
