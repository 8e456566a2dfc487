"""
Reference implementation of the remote sync API.

Devices post shift events keyed by pair code; viewers read the aggregated
shift back with GET /api/sync/shift/{pair_code}. Replayed submissions
(same Idempotency-Key, or same photo/note id) are acknowledged without
being applied twice.
"""

import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog
from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, Response
from pydantic import BaseModel, Field

from patrolsync.config import Settings, get_settings
from patrolsync.database import InMemoryKeyValueDatabase
from patrolsync.logging_setup import configure_logging
from patrolsync.models import (
    CamelModel,
    LocationPoint,
    RemoteNote,
    RemotePhoto,
    RemoteShift,
)
from patrolsync.pair_code import is_expired, normalize_pair_code

logger = structlog.get_logger(__name__)

router = APIRouter()

NowFn = Callable[[], datetime]

CONTENT_TYPES = re.compile(r"^image/(jpeg|jpg|png|webp)$")
RATE_LIMIT_WINDOW = timedelta(minutes=1)
MAX_UPLOADS_PER_WINDOW = 30


class ShiftRecord(BaseModel):
    shift_id: str
    pair_code: str
    staff_name: str
    site_name: str
    start_time: datetime
    end_time: datetime | None = None
    issued_at: datetime
    expires_at: datetime
    updated_at: datetime
    locations: list[LocationPoint] = Field(default_factory=list)
    photos: list[RemotePhoto] = Field(default_factory=list)
    notes: list[RemoteNote] = Field(default_factory=list)

    def to_remote(self) -> RemoteShift:
        return RemoteShift(
            shift_id=self.shift_id,
            pair_code=self.pair_code,
            staff_name=self.staff_name,
            site_name=self.site_name,
            start_time=self.start_time,
            end_time=self.end_time,
            is_active=self.end_time is None,
            expires_at=self.expires_at,
            # ordered by capture time, not arrival
            locations=sorted(self.locations, key=lambda p: p.timestamp),
            photos=sorted(self.photos, key=lambda p: p.timestamp),
            notes=sorted(self.notes, key=lambda n: n.timestamp),
            last_updated=self.updated_at,
        )


class UploadedObject(BaseModel):
    object_key: str
    pair_code: str
    content_type: str
    data: bytes | None = None


class ShiftStartRequest(CamelModel):
    pair_code: str
    shift_id: str
    staff_name: str = "Staff"
    site_name: str
    start_time: datetime
    start_location: LocationPoint | None = None


class LocationRequest(CamelModel):
    pair_code: str
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: float | None = None
    address: str | None = None


class PhotoRequest(CamelModel):
    pair_code: str
    photo_uri: str
    timestamp: datetime
    shift_id: str | None = None
    photo_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    address: str | None = None
    note: str | None = None


class PhotoMetadataRequest(CamelModel):
    pair_code: str
    photo_id: str
    url: str
    timestamp: datetime
    shift_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    address: str | None = None
    note: str | None = None


class NoteRequest(CamelModel):
    pair_code: str
    note_id: str
    text: str
    timestamp: datetime
    location: LocationPoint | None = None


class ShiftEndRequest(CamelModel):
    pair_code: str
    end_time: datetime


class UploadUrlRequest(CamelModel):
    pair_code: str
    shift_id: str
    content_type: str = "image/jpeg"


def _db(request: Request) -> InMemoryKeyValueDatabase[str, Any]:
    return request.app.state.database


def _live_shift(request: Request, pair_code: str) -> ShiftRecord:
    code = normalize_pair_code(pair_code)
    record = _db(request).get(f"shift:{code}")
    if not isinstance(record, ShiftRecord):
        raise HTTPException(status_code=404, detail="Shift not found")
    now = request.app.state.now_fn()
    if is_expired(record.issued_at, now, request.app.state.pair_code_ttl):
        raise HTTPException(status_code=404, detail="Shift not found")
    return record


def _apply_once(
    request: Request,
    pair_code: str,
    idempotency_key: str | None,
    apply: Callable[[ShiftRecord], bool],
) -> dict:
    """
    Look up the live shift and run `apply` on it unless this submission was
    already applied. `apply` returns False when the event's natural key is
    already present.
    """
    db = _db(request)
    record = _live_shift(request, pair_code)

    if idempotency_key and not db.mark_processed_if_new(
        record.pair_code, idempotency_key
    ):
        return {"success": True, "duplicate": True}

    applied = apply(record)
    if applied:
        record.updated_at = request.app.state.now_fn()
        db.put(f"shift:{record.pair_code}", record)
    return {"success": True, "duplicate": not applied}


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _sweep_expired(request: Request, now: datetime) -> None:
    """
    Drop expired shifts with their replay keys and photos, and finished
    rate-limit windows.
    """
    db = _db(request)
    ttl = request.app.state.pair_code_ttl
    expired = {
        record.pair_code
        for record in db.all()
        if isinstance(record, ShiftRecord) and is_expired(record.issued_at, now, ttl)
    }
    for key, value in db.items():
        if isinstance(value, (ShiftRecord, UploadedObject)) and (
            value.pair_code in expired
        ):
            db.delete(key)
    for code in expired:
        db.forget_processed(code)

    windows = request.app.state.upload_windows
    for identifier in [i for i, w in windows.items() if now >= w["reset_at"]]:
        del windows[identifier]

    if expired:
        logger.info("sync_server.pair_codes_expired", count=len(expired))


@router.post("/api/sync/shift")
async def sync_shift_start(body: ShiftStartRequest, request: Request) -> dict:
    db = _db(request)
    now = request.app.state.now_fn()
    code = normalize_pair_code(body.pair_code)
    _sweep_expired(request, now)

    existing = db.get(f"shift:{code}")
    ttl = request.app.state.pair_code_ttl
    if isinstance(existing, ShiftRecord) and not is_expired(
        existing.issued_at, now, ttl
    ):
        existing.staff_name = body.staff_name
        existing.site_name = body.site_name
        existing.updated_at = now
        db.put(f"shift:{code}", existing)
        record = existing
    else:
        record = ShiftRecord(
            shift_id=body.shift_id,
            pair_code=code,
            staff_name=body.staff_name,
            site_name=body.site_name,
            start_time=body.start_time,
            issued_at=now,
            expires_at=now + ttl,
            updated_at=now,
        )
        if body.start_location is not None:
            record.locations.append(body.start_location)
        db.put(f"shift:{code}", record)
        logger.info("sync_server.shift_registered", pair_code=code)

    return {
        "success": True,
        "pairCode": code,
        "expiresAt": record.expires_at.isoformat(),
    }


@router.post("/api/sync/location")
async def sync_location(
    body: LocationRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> dict:
    point = LocationPoint(
        latitude=body.latitude,
        longitude=body.longitude,
        timestamp=body.timestamp,
        accuracy=body.accuracy,
        address=body.address,
    )

    def apply(record: ShiftRecord) -> bool:
        record.locations.append(point)
        return True

    return _apply_once(request, body.pair_code, idempotency_key, apply)


def _add_photo(photo: RemotePhoto) -> Callable[[ShiftRecord], bool]:
    def apply(record: ShiftRecord) -> bool:
        if any(p.id == photo.id for p in record.photos):
            return False
        record.photos.append(photo)
        return True

    return apply


@router.post("/api/sync/photo")
async def sync_photo(
    body: PhotoRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> dict:
    photo = RemotePhoto(
        id=body.photo_id or uuid4().hex,
        photo_uri=body.photo_uri,
        timestamp=body.timestamp,
        latitude=body.latitude,
        longitude=body.longitude,
        accuracy=body.accuracy,
        address=body.address,
        note=body.note,
    )
    return _apply_once(request, body.pair_code, idempotency_key, _add_photo(photo))


@router.post("/api/sync/photo-metadata")
async def sync_photo_metadata(
    body: PhotoMetadataRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> dict:
    photo = RemotePhoto(
        id=body.photo_id,
        photo_uri=body.url,
        timestamp=body.timestamp,
        latitude=body.latitude,
        longitude=body.longitude,
        accuracy=body.accuracy,
        address=body.address,
        note=body.note,
    )
    return _apply_once(request, body.pair_code, idempotency_key, _add_photo(photo))


@router.post("/api/sync/note")
async def sync_note(
    body: NoteRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> dict:
    note = RemoteNote(
        id=body.note_id,
        text=body.text,
        timestamp=body.timestamp,
        location=body.location,
    )

    def apply(record: ShiftRecord) -> bool:
        if any(n.id == note.id for n in record.notes):
            return False
        record.notes.append(note)
        return True

    return _apply_once(request, body.pair_code, idempotency_key, apply)


@router.post("/api/sync/shift-end")
async def sync_shift_end(
    body: ShiftEndRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> dict:
    def apply(record: ShiftRecord) -> bool:
        if record.end_time is not None:
            return False
        record.end_time = body.end_time
        return True

    return _apply_once(request, body.pair_code, idempotency_key, apply)


@router.get("/api/sync/shift/{pair_code}")
async def get_shift(pair_code: str, request: Request) -> dict:
    record = _live_shift(request, pair_code)
    return record.to_remote().to_json_dict()


def _check_rate_limit(request: Request, identifier: str) -> bool:
    now = request.app.state.now_fn()
    window = request.app.state.upload_windows.get(identifier)
    if window is None or now >= window["reset_at"]:
        request.app.state.upload_windows[identifier] = {
            "count": 1,
            "reset_at": now + RATE_LIMIT_WINDOW,
        }
        return True
    if window["count"] >= MAX_UPLOADS_PER_WINDOW:
        return False
    window["count"] += 1
    return True


@router.post("/api/upload-url")
async def create_upload_url(body: UploadUrlRequest, request: Request) -> dict:
    if not CONTENT_TYPES.match(body.content_type):
        raise HTTPException(
            status_code=400,
            detail=(
                "Invalid content type. "
                "Must be image/jpeg, image/png, or image/webp"
            ),
        )

    code = normalize_pair_code(body.pair_code)
    if not _check_rate_limit(request, code):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please wait before uploading more photos.",
        )

    photo_id = uuid4().hex
    ext = body.content_type.split("/")[1]
    ext = "jpg" if ext == "jpeg" else ext
    object_key = f"shifts/{code}/photos/{photo_id}.{ext}"
    _db(request).put(
        f"upload:{object_key}",
        UploadedObject(
            object_key=object_key, pair_code=code, content_type=body.content_type
        ),
    )

    return {
        "photoId": photo_id,
        "uploadUrl": str(request.url_for("put_upload", object_key=object_key)),
        "objectKey": object_key,
        "publicUrl": str(request.url_for("get_upload", object_key=object_key)),
        "expiresIn": 120,
    }


@router.put("/api/uploads/{object_key:path}", name="put_upload")
async def put_upload(object_key: str, request: Request) -> dict:
    db = _db(request)
    upload = db.get(f"upload:{object_key}")
    if not isinstance(upload, UploadedObject):
        raise HTTPException(status_code=404, detail="Unknown upload")
    upload.data = await request.body()
    db.put(f"upload:{object_key}", upload)
    return {"success": True, "size": len(upload.data)}


@router.get("/api/uploads/{object_key:path}", name="get_upload")
async def get_upload(object_key: str, request: Request) -> Response:
    upload = _db(request).get(f"upload:{object_key}")
    if not isinstance(upload, UploadedObject) or upload.data is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    return Response(content=upload.data, media_type=upload.content_type)


def create_app(
    *,
    now_fn: NowFn | None = None,
    pair_code_ttl: timedelta | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    if pair_code_ttl is None:
        pair_code_ttl = timedelta(hours=settings.pair_code_ttl_hours)

    app = FastAPI(title=settings.service_name)
    db: InMemoryKeyValueDatabase[str, ShiftRecord | UploadedObject] = (
        InMemoryKeyValueDatabase()
    )
    app.state.database = db

    app.state.now_fn = now_fn or (lambda: datetime.now(UTC))
    app.state.pair_code_ttl = pair_code_ttl
    app.state.upload_windows = {}

    app.include_router(router)
    return app


def create_app_from_env() -> FastAPI:
    """ASGI factory: logging and settings from PATROLSYNC_* env vars."""
    settings = get_settings()
    configure_logging(settings.service_name, settings.log_level, settings.json_logs)
    return create_app(settings=settings)
