import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from patrolsync.client import INLINE_TIMEOUT, SyncApiClient
from patrolsync.errors import PatrolSyncError, SyncDeliveryError
from patrolsync.models import SyncQueueItem, SyncStatus
from patrolsync.sync_queue import SyncQueue

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
PhotoUploadedFn = Callable[[str, str], Awaitable[object]]

DRAIN_INTERVAL = 30.0


@dataclass
class DrainResult:
    delivered: int = 0
    failed: int = 0
    skipped: bool = False  # another drain was already running


class SyncDispatcher:
    """
    Drains the sync queue into the remote API.

    One item failing never stops the rest of the batch. Nothing raised by a
    delivery escapes `drain`; failures only show up as attempt counts on
    the queue items.
    """

    def __init__(
        self,
        queue: SyncQueue,
        client: SyncApiClient,
        *,
        inline_timeout: float = INLINE_TIMEOUT,
        sleep_fn: SleepFn = asyncio.sleep,
        on_photo_uploaded: PhotoUploadedFn | None = None,
    ) -> None:
        self.queue = queue
        self.client = client
        self.inline_timeout = inline_timeout
        self.sleep_fn = sleep_fn
        # called with (photo_id, public_url) after a direct upload
        self.on_photo_uploaded = on_photo_uploaded

        self._draining = False
        self._rerun = False
        self._tasks: set[asyncio.Task] = set()
        self._periodic: asyncio.Task | None = None

    @property
    def is_draining(self) -> bool:
        return self._draining

    def attach(self) -> None:
        """Drain after every enqueue."""
        self.queue.add_listener(lambda _item: self.trigger())

    async def drain(self, *, timeout: float | None = None) -> DrainResult:
        if self._draining:
            # the running drain picks up whatever was just enqueued
            self._rerun = True
            return DrainResult(skipped=True)

        self._draining = True
        result = DrainResult()
        attempted: set[str] = set()
        try:
            while True:
                self._rerun = False
                items = [
                    i
                    for i in await self.queue.retryable_items()
                    if i.id not in attempted
                ]
                if not items and not attempted:
                    return result

                for item in items:
                    attempted.add(item.id)
                    if await self._deliver_one(item, timeout):
                        result.delivered += 1
                    else:
                        result.failed += 1

                if not self._rerun:
                    break

            if result.delivered:
                await self.queue.update_last_sync()
        except PatrolSyncError:
            logger.exception("dispatcher.drain_aborted")
        finally:
            self._draining = False

        logger.info(
            "dispatcher.drained",
            delivered=result.delivered,
            failed=result.failed,
        )
        return result

    async def _deliver_one(
        self, item: SyncQueueItem, timeout: float | None
    ) -> bool:
        try:
            remote_url = await self.client.deliver(item, timeout=timeout)
        except SyncDeliveryError as exc:
            updated = await self.queue.record_attempt(item.id)
            logger.info(
                "dispatcher.delivery_failed",
                item_id=item.id,
                item_type=item.type,
                attempts=updated.attempts if updated else item.attempts + 1,
                error=str(exc),
            )
            return False

        await self.queue.remove(item.id)
        logger.debug("dispatcher.delivered", item_id=item.id, item_type=item.type)
        if remote_url and self.on_photo_uploaded is not None:
            await self._record_remote_photo(item, remote_url)
        return True

    async def _record_remote_photo(self, item: SyncQueueItem, url: str) -> None:
        photo_id = item.payload.get("photoId")
        if not photo_id:
            return
        try:
            await self.on_photo_uploaded(photo_id, url)
        except PatrolSyncError:
            # the upload itself succeeded; the local uri stays as it was
            logger.exception(
                "dispatcher.remote_photo_not_recorded", photo_id=photo_id
            )

    async def photo_sync_status(self, photo_id: str) -> SyncStatus:
        return await self.queue.photo_sync_status(
            photo_id, draining=self._draining
        )

    def trigger(self) -> asyncio.Task:
        """Schedule a background drain using the short inline timeout."""
        task = asyncio.get_running_loop().create_task(
            self.drain(timeout=self.inline_timeout)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def connectivity_restored(self) -> asyncio.Task:
        logger.info("dispatcher.connectivity_restored")
        return self.trigger()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_periodic(self, interval: float = DRAIN_INTERVAL) -> None:
        try:
            while True:
                await self.drain()
                await self.sleep_fn(interval)
        except asyncio.CancelledError:
            return

    def start(self, interval: float = DRAIN_INTERVAL) -> asyncio.Task:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.get_running_loop().create_task(
                self.run_periodic(interval)
            )
            logger.info("dispatcher.started", interval=interval)
        return self._periodic

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._periodic is not None:
            tasks.append(self._periodic)
            self._periodic = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("dispatcher.stopped")
