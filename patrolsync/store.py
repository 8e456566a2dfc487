"""
Local event store for the device's shift.

`ShiftStore` is the only thing that writes the active shift and the shift
history. Each mutation updates the local documents and enqueues exactly one
sync item; if either half fails the local documents are put back the way
they were and `ShiftStorageError` is raised.
"""

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from patrolsync.errors import (
    ActiveShiftExistsError,
    ShiftStorageError,
    StorageError,
)
from patrolsync.geofence import (
    generate_geofence_alert,
    has_entered_geofence,
    has_left_geofence,
)
from patrolsync.models import (
    GeofenceArea,
    LocationPoint,
    Shift,
    ShiftNote,
    ShiftPhoto,
    SyncItemType,
    new_id,
    utcnow,
)
from patrolsync.pair_code import generate_pair_code
from patrolsync.preferences import PreferencesStore, TemplateStore
from patrolsync.storage import (
    ACTIVE_SHIFT_KEY,
    SHIFT_HISTORY_KEY,
    DocumentLocks,
    KeyValueStore,
)
from patrolsync.sync_queue import SyncQueue

logger = structlog.get_logger(__name__)

NowFn = Callable[[], datetime]

_history_adapter = TypeAdapter(list[Shift])


def shift_start_payload(shift: Shift) -> dict[str, Any]:
    payload = {
        "pairCode": shift.pair_code,
        "shiftId": shift.id,
        "staffName": shift.staff_name,
        "siteName": shift.site_name,
        "startTime": shift.to_json_dict()["startTime"],
    }
    if shift.start_location is not None:
        payload["startLocation"] = shift.start_location.to_json_dict()
    return payload


def location_payload(shift: Shift, point: LocationPoint) -> dict[str, Any]:
    return {"pairCode": shift.pair_code, **point.to_json_dict()}


def photo_payload(shift: Shift, photo: ShiftPhoto) -> dict[str, Any]:
    data = photo.to_json_dict()
    payload = {
        "pairCode": shift.pair_code,
        "shiftId": shift.id,
        "photoId": photo.id,
        "photoUri": photo.uri,
        "timestamp": data["timestamp"],
    }
    if photo.location is not None:
        payload["latitude"] = photo.location.latitude
        payload["longitude"] = photo.location.longitude
        if photo.location.accuracy is not None:
            payload["accuracy"] = photo.location.accuracy
    address = photo.address
    if address is None and photo.location is not None:
        address = photo.location.address
    if address:
        payload["address"] = address
    if photo.note:
        payload["note"] = photo.note
    return payload


def note_payload(shift: Shift, note: ShiftNote) -> dict[str, Any]:
    data = note.to_json_dict()
    payload = {
        "pairCode": shift.pair_code,
        "noteId": note.id,
        "text": note.text,
        "timestamp": data["timestamp"],
    }
    if "location" in data:
        payload["location"] = data["location"]
    return payload


def shift_end_payload(shift: Shift) -> dict[str, Any]:
    return {
        "pairCode": shift.pair_code,
        "endTime": shift.to_json_dict()["endTime"],
    }


def shift_duration(shift: Shift, now: datetime | None = None) -> int:
    """Whole minutes from start to end (or to `now` while active)."""
    end = shift.end_time or now or utcnow()
    return int((end - shift.start_time).total_seconds() // 60)


def format_duration(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


def _replace_photo_uri(shift: Shift, photo_id: str, url: str) -> bool:
    for i, photo in enumerate(shift.photos):
        if photo.id == photo_id:
            shift.photos[i] = photo.with_remote_uri(url)
            return True
    return False


class ShiftStore:
    def __init__(
        self,
        store: KeyValueStore,
        queue: SyncQueue,
        *,
        locks: DocumentLocks | None = None,
        now_fn: NowFn = utcnow,
        pair_code_fn: Callable[[], str] = generate_pair_code,
        templates: TemplateStore | None = None,
        preferences: PreferencesStore | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.templates = templates
        self.preferences = preferences
        self.now_fn = now_fn
        self.pair_code_fn = pair_code_fn
        self._locks = locks or DocumentLocks()

    async def _read_active(self) -> Shift | None:
        raw = await self.store.get(ACTIVE_SHIFT_KEY)
        if not raw:
            return None
        try:
            return Shift.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"corrupt active shift: {exc}") from exc

    async def _read_history(self) -> list[Shift]:
        raw = await self.store.get(SHIFT_HISTORY_KEY)
        if not raw:
            return []
        try:
            return _history_adapter.validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"corrupt shift history: {exc}") from exc

    @staticmethod
    def _dump_history(history: list[Shift]) -> str:
        return json.dumps([s.to_json_dict() for s in history])

    async def _commit(
        self,
        action: str,
        changes: dict[str, str | None],
        item_type: SyncItemType,
        payload: dict[str, Any],
    ) -> None:
        """
        Apply `changes` (None deletes the key), then enqueue one sync item.
        Callers hold the locks of every key in `changes`.
        """
        previous: dict[str, str | None] = {}
        try:
            for key, value in changes.items():
                previous[key] = await self.store.get(key)
                if value is None:
                    await self.store.delete(key)
                else:
                    await self.store.put(key, value)
            await self.queue.enqueue(item_type, payload)
        except StorageError as exc:
            logger.error(
                "shift_store.write_failed", action=action, error=str(exc)
            )
            await self._restore(previous)
            raise ShiftStorageError(f"failed to {action}") from exc

    async def _restore(self, previous: dict[str, str | None]) -> None:
        for key, value in previous.items():
            try:
                if value is None:
                    await self.store.delete(key)
                else:
                    await self.store.put(key, value)
            except StorageError:
                logger.exception("shift_store.restore_failed", key=key)

    async def _load(self, action: str, reader):
        try:
            return await reader()
        except StorageError as exc:
            logger.error(
                "shift_store.read_failed", action=action, error=str(exc)
            )
            raise ShiftStorageError(f"failed to {action}") from exc

    async def get_active_shift(self) -> Shift | None:
        async with self._locks(ACTIVE_SHIFT_KEY):
            shift = await self._load("read active shift", self._read_active)
        if shift is None or not shift.is_active:
            return None
        return shift

    async def start_shift(
        self,
        staff_name: str,
        site_name: str,
        initial_location: LocationPoint | None = None,
        *,
        geofence: GeofenceArea | None = None,
    ) -> Shift:
        async with self._locks(ACTIVE_SHIFT_KEY):
            current = await self._load("start shift", self._read_active)
            if current is not None and current.is_active:
                raise ActiveShiftExistsError(current.id)

            shift = Shift(
                id=new_id(),
                staff_name=staff_name,
                site_name=site_name,
                pair_code=self.pair_code_fn(),
                start_time=self.now_fn(),
                start_location=initial_location,
                geofence=geofence,
            )
            await self._commit(
                "start shift",
                {ACTIVE_SHIFT_KEY: shift.model_dump_json(by_alias=True)},
                SyncItemType.SHIFT_START,
                shift_start_payload(shift),
            )

        logger.info(
            "shift_store.shift_started",
            shift_id=shift.id,
            pair_code=shift.pair_code,
            site=site_name,
        )
        await self._remember_template(shift)
        return shift

    async def _remember_template(self, shift: Shift) -> None:
        if self.templates is None:
            return
        try:
            if self.preferences is not None:
                settings = await self.preferences.get_settings()
                if not settings.auto_save_templates:
                    return
            await self.templates.save_template(shift.site_name, shift.staff_name)
        except StorageError:
            # the shift is already committed; only the shortcut is lost
            logger.exception("shift_store.template_not_saved", shift_id=shift.id)

    async def add_location_to_shift(self, point: LocationPoint) -> Shift | None:
        async with self._locks(ACTIVE_SHIFT_KEY):
            shift = await self._load("add location", self._read_active)
            if shift is None or not shift.is_active:
                return None

            previous = shift.last_location
            if previous is not None and point.timestamp < previous.timestamp:
                raise ValueError(
                    f"location at {point.timestamp.isoformat()} is older than "
                    f"the last fix at {previous.timestamp.isoformat()}"
                )

            shift.locations.append(point)
            if shift.geofence is not None:
                alert = self._geofence_alert(shift, previous, point)
                if alert:
                    shift.geofence_alerts.append(alert)
                    logger.warning(
                        "shift_store.geofence_alert",
                        shift_id=shift.id,
                        alert=alert,
                    )

            await self._commit(
                "add location",
                {ACTIVE_SHIFT_KEY: shift.model_dump_json(by_alias=True)},
                SyncItemType.LOCATION,
                location_payload(shift, point),
            )
        return shift

    @staticmethod
    def _geofence_alert(
        shift: Shift, previous: LocationPoint | None, current: LocationPoint
    ) -> str | None:
        fence = shift.geofence
        if has_left_geofence(previous, current, fence):
            return generate_geofence_alert(
                shift.staff_name, fence, "left", current.timestamp
            )
        if has_entered_geofence(previous, current, fence):
            return generate_geofence_alert(
                shift.staff_name, fence, "entered", current.timestamp
            )
        return None

    async def add_photo_to_shift(self, photo: ShiftPhoto) -> Shift | None:
        async with self._locks(ACTIVE_SHIFT_KEY):
            shift = await self._load("add photo", self._read_active)
            if shift is None or not shift.is_active:
                return None

            shift.photos.append(photo)
            await self._commit(
                "add photo",
                {ACTIVE_SHIFT_KEY: shift.model_dump_json(by_alias=True)},
                SyncItemType.PHOTO,
                photo_payload(shift, photo),
            )
        return shift

    async def set_photo_remote_uri(self, photo_id: str, url: str) -> bool:
        """
        Point an uploaded photo at its public url, in the active shift or in
        history. Nothing is enqueued; the server already has the photo.
        Returns False when no local photo has that id.
        """
        async with self._locks(ACTIVE_SHIFT_KEY):
            shift = await self._load("update photo", self._read_active)
            if shift is not None and _replace_photo_uri(shift, photo_id, url):
                await self.store.put(
                    ACTIVE_SHIFT_KEY, shift.model_dump_json(by_alias=True)
                )
                logger.debug("shift_store.photo_remote", photo_id=photo_id)
                return True

        async with self._locks(SHIFT_HISTORY_KEY):
            history = await self._load("update photo", self._read_history)
            for past in history:
                if _replace_photo_uri(past, photo_id, url):
                    await self.store.put(
                        SHIFT_HISTORY_KEY, self._dump_history(history)
                    )
                    logger.debug("shift_store.photo_remote", photo_id=photo_id)
                    return True
        return False

    async def add_note_to_shift(
        self, text: str, location: LocationPoint | None = None
    ) -> ShiftNote | None:
        async with self._locks(ACTIVE_SHIFT_KEY):
            shift = await self._load("add note", self._read_active)
            if shift is None or not shift.is_active:
                return None

            note = ShiftNote(text=text, timestamp=self.now_fn(), location=location)
            shift.notes.append(note)
            await self._commit(
                "add note",
                {ACTIVE_SHIFT_KEY: shift.model_dump_json(by_alias=True)},
                SyncItemType.NOTE,
                note_payload(shift, note),
            )
        return note

    async def end_shift(self) -> Shift | None:
        async with self._locks(ACTIVE_SHIFT_KEY), self._locks(SHIFT_HISTORY_KEY):
            shift = await self._load("end shift", self._read_active)
            if shift is None:
                return None

            shift.is_active = False
            shift.end_time = self.now_fn()

            history = await self._load("end shift", self._read_history)
            history.insert(0, shift)

            await self._commit(
                "end shift",
                {
                    SHIFT_HISTORY_KEY: self._dump_history(history),
                    ACTIVE_SHIFT_KEY: None,
                },
                SyncItemType.SHIFT_END,
                shift_end_payload(shift),
            )

        logger.info(
            "shift_store.shift_ended",
            shift_id=shift.id,
            pair_code=shift.pair_code,
            minutes=shift_duration(shift),
        )
        return shift

    async def get_shift_history(self) -> list[Shift]:
        async with self._locks(SHIFT_HISTORY_KEY):
            return await self._read_history()

    async def get_shift_by_id(self, shift_id: str) -> Shift | None:
        history = await self.get_shift_history()
        return next((s for s in history if s.id == shift_id), None)

    async def delete_shift(self, shift_id: str) -> None:
        async with self._locks(SHIFT_HISTORY_KEY):
            history = await self._read_history()
            remaining = [s for s in history if s.id != shift_id]
            if len(remaining) != len(history):
                await self.store.put(
                    SHIFT_HISTORY_KEY, self._dump_history(remaining)
                )
