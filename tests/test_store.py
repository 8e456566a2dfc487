import asyncio
import re
from datetime import timedelta

import pytest
from freezegun import freeze_time

from patrolsync.errors import ActiveShiftExistsError, ShiftStorageError
from patrolsync.models import GeofenceArea, LocationPoint, ShiftPhoto, SyncItemType
from patrolsync.preferences import PreferencesStore, TemplateStore
from patrolsync.storage import (
    ACTIVE_SHIFT_KEY,
    SHIFT_HISTORY_KEY,
    SYNC_QUEUE_KEY,
    TEMPLATES_KEY,
    JsonFileKeyValueStore,
)
from patrolsync.store import ShiftStore, format_duration, shift_duration
from patrolsync.sync_queue import SyncQueue
from conftest import FailingStore


def _point(clock, lat=51.5007, lon=-0.1246, **kwargs) -> LocationPoint:
    return LocationPoint(
        latitude=lat, longitude=lon, timestamp=clock(), **kwargs
    )


@pytest.mark.asyncio
async def test_no_active_shift_is_not_an_error(shifts) -> None:
    assert await shifts.get_active_shift() is None


@pytest.mark.asyncio
async def test_start_shift_persists_and_enqueues(shifts, queue, clock) -> None:
    start = _point(clock, accuracy=5.0)

    shift = await shifts.start_shift("Sam Patel", "North Gate", start)

    assert shift.is_active
    assert shift.end_time is None
    assert shift.start_time == clock.now
    assert re.fullmatch(r"[A-Z0-9]{6}", shift.pair_code)
    assert shift.start_location == start
    assert shift.locations == []

    assert (await shifts.get_active_shift()).model_dump() == shift.model_dump()

    items = await queue.list()
    assert [i.type for i in items] == [SyncItemType.SHIFT_START]
    payload = items[0].payload
    assert payload["pairCode"] == shift.pair_code
    assert payload["shiftId"] == shift.id
    assert payload["staffName"] == "Sam Patel"
    assert payload["siteName"] == "North Gate"
    assert payload["startLocation"]["accuracy"] == 5.0


@pytest.mark.asyncio
async def test_only_one_active_shift(shifts, queue) -> None:
    first = await shifts.start_shift("Sam", "North Gate")

    with pytest.raises(ActiveShiftExistsError) as exc_info:
        await shifts.start_shift("Sam", "South Gate")

    assert exc_info.value.shift_id == first.id
    assert len(await queue.list()) == 1


@pytest.mark.asyncio
async def test_appends_without_active_shift_return_none(shifts, queue, clock) -> None:
    assert await shifts.add_location_to_shift(_point(clock)) is None
    assert (
        await shifts.add_photo_to_shift(
            ShiftPhoto(uri="file:///tmp/a.jpg", timestamp=clock())
        )
        is None
    )
    assert await shifts.add_note_to_shift("gate locked") is None
    assert await shifts.end_shift() is None
    assert await queue.list() == []


@pytest.mark.asyncio
async def test_add_location_appends_and_enqueues(shifts, queue, clock) -> None:
    shift = await shifts.start_shift("Sam", "North Gate")
    clock.advance(seconds=30)
    point = _point(clock, address="1 Parliament Sq")

    updated = await shifts.add_location_to_shift(point)

    assert updated.locations == [point]
    stored = (await shifts.get_active_shift()).locations
    assert [p.model_dump() for p in stored] == [point.model_dump()]
    item = (await queue.list())[-1]
    assert item.type == SyncItemType.LOCATION
    assert item.payload["pairCode"] == shift.pair_code
    assert item.payload["latitude"] == point.latitude
    assert item.payload["address"] == "1 Parliament Sq"
    assert "accuracy" not in item.payload


@pytest.mark.asyncio
async def test_out_of_order_location_is_rejected(shifts, queue, clock) -> None:
    await shifts.start_shift("Sam", "North Gate")
    clock.advance(minutes=1)
    await shifts.add_location_to_shift(_point(clock))
    before = len(await queue.list())

    stale = LocationPoint(
        latitude=1.0, longitude=1.0, timestamp=clock() - timedelta(seconds=5)
    )
    with pytest.raises(ValueError):
        await shifts.add_location_to_shift(stale)

    assert len(await queue.list()) == before
    assert len((await shifts.get_active_shift()).locations) == 1


@pytest.mark.asyncio
async def test_photo_and_note_events(shifts, queue, clock) -> None:
    shift = await shifts.start_shift("Sam", "North Gate")
    where = _point(clock, accuracy=8.0, address="North Gate")
    photo = ShiftPhoto(
        uri="https://cdn.example/p1.jpg",
        timestamp=clock(),
        location=where,
        note="fence damage",
    )

    await shifts.add_photo_to_shift(photo)
    note = await shifts.add_note_to_shift("padlock replaced", location=where)

    active = await shifts.get_active_shift()
    assert [p.model_dump() for p in active.photos] == [photo.model_dump()]
    assert [n.text for n in active.notes] == ["padlock replaced"]

    photo_item, note_item = (await queue.list())[1:]
    assert photo_item.type == SyncItemType.PHOTO
    assert photo_item.payload == {
        "pairCode": shift.pair_code,
        "shiftId": shift.id,
        "photoId": photo.id,
        "photoUri": "https://cdn.example/p1.jpg",
        "timestamp": photo_item.payload["timestamp"],
        "latitude": where.latitude,
        "longitude": where.longitude,
        "accuracy": 8.0,
        "address": "North Gate",
        "note": "fence damage",
    }
    assert note_item.type == SyncItemType.NOTE
    assert note_item.payload["noteId"] == note.id
    assert note_item.payload["location"]["latitude"] == where.latitude


@pytest.mark.asyncio
async def test_photo_uri_can_move_to_remote_keeping_id(clock) -> None:
    photo = ShiftPhoto(uri="file:///tmp/p.jpg", timestamp=clock())
    remote = photo.with_remote_uri("https://cdn.example/p.jpg")

    assert remote.id == photo.id
    assert remote.uri == "https://cdn.example/p.jpg"
    assert photo.uri == "file:///tmp/p.jpg"


@pytest.mark.asyncio
async def test_end_shift_archives_into_history(shifts, queue, clock) -> None:
    shift = await shifts.start_shift("Sam", "North Gate")
    clock.advance(hours=8, minutes=5)

    ended = await shifts.end_shift()

    assert ended.id == shift.id
    assert ended.is_active is False
    assert ended.end_time == clock.now
    assert await shifts.get_active_shift() is None
    history = await shifts.get_shift_history()
    assert [s.id for s in history] == [shift.id]
    assert history[0].end_time == clock.now

    item = (await queue.list())[-1]
    assert item.type == SyncItemType.SHIFT_END
    assert item.payload["pairCode"] == shift.pair_code

    assert shift_duration(ended) == 485
    assert format_duration(shift_duration(ended)) == "8h 5m"


@pytest.mark.asyncio
async def test_history_is_newest_first_and_deletable(shifts, clock) -> None:
    ids = []
    for site in ("North Gate", "South Gate"):
        ids.append((await shifts.start_shift("Sam", site)).id)
        clock.advance(hours=1)
        await shifts.end_shift()

    history = await shifts.get_shift_history()
    assert [s.id for s in history] == list(reversed(ids))
    assert (await shifts.get_shift_by_id(ids[0])).site_name == "North Gate"

    await shifts.delete_shift(ids[0])
    await shifts.delete_shift("unknown")
    assert [s.id for s in await shifts.get_shift_history()] == [ids[1]]
    assert await shifts.get_shift_by_id(ids[0]) is None


@pytest.mark.asyncio
async def test_failed_local_write_enqueues_nothing(clock) -> None:
    kv = FailingStore()
    queue = SyncQueue(kv, now_fn=clock)
    shifts = ShiftStore(kv, queue, now_fn=clock)
    kv.failing_keys.add(ACTIVE_SHIFT_KEY)

    with pytest.raises(ShiftStorageError):
        await shifts.start_shift("Sam", "North Gate")

    assert await queue.list() == []
    assert await shifts.get_active_shift() is None


@pytest.mark.asyncio
async def test_failed_enqueue_rolls_back_local_write(clock) -> None:
    kv = FailingStore()
    queue = SyncQueue(kv, now_fn=clock)
    shifts = ShiftStore(kv, queue, now_fn=clock)
    await shifts.start_shift("Sam", "North Gate")
    kv.failing_keys.add(SYNC_QUEUE_KEY)

    with pytest.raises(ShiftStorageError):
        await shifts.add_location_to_shift(_point(clock))
    with pytest.raises(ShiftStorageError):
        await shifts.end_shift()

    active = await shifts.get_active_shift()
    assert active is not None
    assert active.locations == []
    assert await kv.get(SHIFT_HISTORY_KEY) is None


@pytest.mark.asyncio
async def test_overlapping_location_ticks_are_all_kept(tmp_path, clock) -> None:
    kv = JsonFileKeyValueStore(tmp_path)
    queue = SyncQueue(kv, now_fn=clock)
    shifts = ShiftStore(kv, queue, now_fn=clock)
    await shifts.start_shift("Sam", "North Gate")

    points = [
        LocationPoint(latitude=51.5 + i / 1000, longitude=-0.12, timestamp=clock())
        for i in range(10)
    ]
    await asyncio.gather(*(shifts.add_location_to_shift(p) for p in points))

    active = await shifts.get_active_shift()
    assert sorted(p.latitude for p in active.locations) == sorted(
        p.latitude for p in points
    )
    assert len(await queue.list()) == 11


@pytest.mark.asyncio
async def test_leaving_geofence_records_alert(shifts, clock) -> None:
    fence = GeofenceArea(
        latitude=51.5007, longitude=-0.1246, radius_meters=200, name="Site A"
    )
    await shifts.start_shift("Sam", "Site A", _point(clock), geofence=fence)

    clock.advance(minutes=1)
    await shifts.add_location_to_shift(_point(clock, lat=51.5010))
    clock.advance(minutes=1)
    shift = await shifts.add_location_to_shift(_point(clock, lat=51.5200))
    clock.advance(minutes=1)
    shift = await shifts.add_location_to_shift(_point(clock, lat=51.5008))

    assert len(shift.geofence_alerts) == 2
    assert shift.geofence_alerts[0].startswith("Sam left Site A")
    assert shift.geofence_alerts[1].startswith("Sam entered Site A")


@pytest.mark.asyncio
async def test_active_shift_duration_runs_on_wall_clock(kv) -> None:
    with freeze_time("2025-07-02 08:00:00", real_asyncio=True) as frozen:
        shifts = ShiftStore(kv, SyncQueue(kv))
        shift = await shifts.start_shift("Sam", "North Gate")

        frozen.tick(delta=timedelta(minutes=95))

        assert shift_duration(shift) == 95
        assert format_duration(shift_duration(shift)) == "1h 35m"


@pytest.mark.asyncio
async def test_started_shift_is_remembered_as_template(kv, queue, clock) -> None:
    templates = TemplateStore(kv, now_fn=clock)
    preferences = PreferencesStore(kv)
    shifts = ShiftStore(
        kv, queue, now_fn=clock, templates=templates, preferences=preferences
    )

    await shifts.start_shift("Sam Patel", "North Gate")
    await shifts.end_shift()
    await shifts.start_shift("sam patel", "NORTH GATE")

    saved = await templates.get_templates()
    assert [(t.site_name, t.usage_count) for t in saved] == [("North Gate", 2)]


@pytest.mark.asyncio
async def test_no_template_when_auto_save_is_off(kv, queue, clock) -> None:
    templates = TemplateStore(kv, now_fn=clock)
    preferences = PreferencesStore(kv)
    await preferences.save_settings(auto_save_templates=False)
    shifts = ShiftStore(
        kv, queue, now_fn=clock, templates=templates, preferences=preferences
    )

    await shifts.start_shift("Sam", "North Gate")

    assert await templates.get_templates() == []


@pytest.mark.asyncio
async def test_template_write_failure_keeps_the_shift(clock) -> None:
    kv = FailingStore()
    kv.failing_keys.add(TEMPLATES_KEY)
    queue = SyncQueue(kv, now_fn=clock)
    shifts = ShiftStore(
        kv, queue, now_fn=clock, templates=TemplateStore(kv, now_fn=clock)
    )

    shift = await shifts.start_shift("Sam", "North Gate")

    assert (await shifts.get_active_shift()).id == shift.id
    assert [i.type for i in await queue.list()] == [SyncItemType.SHIFT_START]


@pytest.mark.asyncio
async def test_remote_photo_url_replaces_local_uri(shifts, queue, clock) -> None:
    await shifts.start_shift("Sam", "North Gate")
    photo = ShiftPhoto(uri="file:///tmp/gate.jpg", timestamp=clock())
    await shifts.add_photo_to_shift(photo)
    queued = len(await queue.list())

    assert await shifts.set_photo_remote_uri(photo.id, "https://cdn.example/g.jpg")

    active = await shifts.get_active_shift()
    assert [(p.id, p.uri) for p in active.photos] == [
        (photo.id, "https://cdn.example/g.jpg")
    ]
    assert len(await queue.list()) == queued


@pytest.mark.asyncio
async def test_remote_photo_url_reaches_history(shifts, clock) -> None:
    await shifts.start_shift("Sam", "North Gate")
    photo = ShiftPhoto(uri="file:///tmp/gate.jpg", timestamp=clock())
    await shifts.add_photo_to_shift(photo)
    ended = await shifts.end_shift()

    assert await shifts.set_photo_remote_uri(photo.id, "https://cdn.example/g.jpg")
    assert not await shifts.set_photo_remote_uri("unknown", "https://x/y.jpg")

    archived = await shifts.get_shift_by_id(ended.id)
    assert archived.photos[0].uri == "https://cdn.example/g.jpg"
