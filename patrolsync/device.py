from dataclasses import dataclass

import httpx
import structlog

from patrolsync.client import SyncApiClient
from patrolsync.config import Settings, get_settings
from patrolsync.dispatcher import SyncDispatcher
from patrolsync.preferences import ConsentStore, PreferencesStore, TemplateStore
from patrolsync.storage import (
    DocumentLocks,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
)
from patrolsync.store import ShiftStore
from patrolsync.sync_queue import SyncQueue
from patrolsync.viewer import LiveViewer

logger = structlog.get_logger(__name__)


@dataclass
class FieldDevice:
    settings: Settings
    store: KeyValueStore
    queue: SyncQueue
    client: SyncApiClient
    dispatcher: SyncDispatcher
    shifts: ShiftStore
    preferences: PreferencesStore
    templates: TemplateStore
    consent: ConsentStore

    def start_background_sync(self):
        return self.dispatcher.start(self.settings.drain_interval_seconds)

    def viewer(self, pair_code: str) -> LiveViewer:
        return LiveViewer(
            self.client, pair_code, interval=self.settings.viewer_poll_seconds
        )

    async def aclose(self) -> None:
        await self.dispatcher.stop()
        await self.client.aclose()


def create_device(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FieldDevice:
    settings = settings or get_settings()
    if store is None:
        if settings.storage_dir:
            store = JsonFileKeyValueStore(settings.storage_dir)
        else:
            store = InMemoryKeyValueStore()

    locks = DocumentLocks()
    queue = SyncQueue(store, locks=locks, max_attempts=settings.max_attempts)
    client = SyncApiClient(
        settings.api_base_url,
        http_client=http_client,
        timeout=settings.sync_timeout_seconds,
    )
    preferences = PreferencesStore(store, locks=locks)
    templates = TemplateStore(store, locks=locks)
    shifts = ShiftStore(
        store, queue, locks=locks, templates=templates, preferences=preferences
    )
    dispatcher = SyncDispatcher(
        queue,
        client,
        inline_timeout=settings.inline_timeout_seconds,
        on_photo_uploaded=shifts.set_photo_remote_uri,
    )
    dispatcher.attach()

    logger.info(
        "device.created",
        api_base_url=settings.api_base_url,
        durable=settings.storage_dir is not None,
    )
    return FieldDevice(
        settings=settings,
        store=store,
        queue=queue,
        client=client,
        dispatcher=dispatcher,
        shifts=shifts,
        preferences=preferences,
        templates=templates,
        consent=ConsentStore(store),
    )
