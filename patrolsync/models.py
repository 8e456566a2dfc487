"""
Domain models for shifts, their evidence events and the sync outbox.

Everything is stored and sent as camelCase JSON, so every model accepts
both the python field name and the camelCase alias.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LocationPoint(CamelModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: float | None = None  # meters
    address: str | None = None  # best-effort reverse geocode


class ShiftPhoto(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    uri: str  # local file path / file:// uri, later the remote url
    timestamp: datetime
    location: LocationPoint | None = None
    address: str | None = None
    note: str | None = None

    def with_remote_uri(self, url: str) -> "ShiftPhoto":
        return self.model_copy(update={"uri": url})


class ShiftNote(CamelModel):
    id: str = Field(default_factory=new_id)
    text: str
    timestamp: datetime
    location: LocationPoint | None = None


class GeofenceArea(CamelModel):
    latitude: float
    longitude: float
    radius_meters: float
    name: str | None = None


class Shift(CamelModel):
    id: str
    staff_name: str
    site_name: str
    pair_code: str
    start_time: datetime
    end_time: datetime | None = None
    is_active: bool = True
    start_location: LocationPoint | None = None
    locations: list[LocationPoint] = Field(default_factory=list)
    photos: list[ShiftPhoto] = Field(default_factory=list)
    notes: list[ShiftNote] = Field(default_factory=list)
    geofence: GeofenceArea | None = None
    geofence_alerts: list[str] = Field(default_factory=list)

    @property
    def last_location(self) -> LocationPoint | None:
        if self.locations:
            return self.locations[-1]
        return self.start_location


class SyncItemType(StrEnum):
    SHIFT_START = "shift-start"
    LOCATION = "location"
    PHOTO = "photo"
    NOTE = "note"
    SHIFT_END = "shift-end"


class SyncQueueItem(CamelModel):
    id: str = Field(default_factory=new_id)  # doubles as the idempotency key
    type: SyncItemType
    payload: dict[str, Any]
    attempts: int = 0
    created_at: datetime
    last_attempt: datetime


class QueueStats(BaseModel):
    total: int
    pending: int
    failed: int
    last_sync: datetime | None = None


class SyncStatus(StrEnum):
    SYNCED = "synced"
    SYNCING = "syncing"
    PENDING = "pending"
    FAILED = "failed"


class AppSettings(CamelModel):
    dark_mode: Literal["system", "light", "dark"] = "system"
    auto_save_templates: bool = True
    location_interval: int = 30  # seconds
    user_name: str = ""


class ShiftTemplate(CamelModel):
    id: str = Field(default_factory=new_id)
    site_name: str
    staff_name: str
    created_at: datetime
    usage_count: int = 1

    def matches(self, site_name: str, staff_name: str) -> bool:
        return (
            self.site_name.casefold() == site_name.casefold()
            and self.staff_name.casefold() == staff_name.casefold()
        )


class ConsentRecord(CamelModel):
    privacy_accepted: bool = False
    privacy_policy_version: str = ""
    terms_accepted: bool = False
    bg_location_consent: bool = False
    analytics_consent: bool = False
    accepted_at: datetime | None = None


class RemotePhoto(CamelModel):
    id: str
    photo_uri: str
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    address: str | None = None
    note: str | None = None


class RemoteNote(CamelModel):
    id: str
    text: str
    timestamp: datetime
    location: LocationPoint | None = None


class RemoteShift(CamelModel):
    """Aggregated shift state served to viewers."""

    shift_id: str
    pair_code: str
    staff_name: str
    site_name: str
    start_time: datetime
    end_time: datetime | None = None
    is_active: bool
    expires_at: datetime
    locations: list[LocationPoint] = Field(default_factory=list)
    photos: list[RemotePhoto] = Field(default_factory=list)
    notes: list[RemoteNote] = Field(default_factory=list)
    last_updated: datetime
