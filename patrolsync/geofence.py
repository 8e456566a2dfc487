import math
from collections.abc import Sequence
from datetime import datetime
from typing import Literal

from patrolsync.models import GeofenceArea, LocationPoint

EARTH_RADIUS_METERS = 6_371_000


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle (haversine) distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_inside_geofence(location: LocationPoint, geofence: GeofenceArea) -> bool:
    distance = calculate_distance(
        location.latitude,
        location.longitude,
        geofence.latitude,
        geofence.longitude,
    )
    return distance <= geofence.radius_meters


def has_left_geofence(
    previous: LocationPoint | None,
    current: LocationPoint,
    geofence: GeofenceArea,
) -> bool:
    if previous is None:
        return False
    return is_inside_geofence(previous, geofence) and not is_inside_geofence(
        current, geofence
    )


def has_entered_geofence(
    previous: LocationPoint | None,
    current: LocationPoint,
    geofence: GeofenceArea,
) -> bool:
    if previous is None:
        return False
    return not is_inside_geofence(previous, geofence) and is_inside_geofence(
        current, geofence
    )


def generate_geofence_alert(
    staff_name: str,
    geofence: GeofenceArea,
    event: Literal["left", "entered"],
    at: datetime,
) -> str:
    area = geofence.name or "work area"
    return f"{staff_name} {event} {area} at {at:%H:%M:%S}"


def create_geofence_from_locations(
    locations: Sequence[LocationPoint], radius_meters: float = 500
) -> GeofenceArea | None:
    if not locations:
        return None
    return GeofenceArea(
        latitude=sum(loc.latitude for loc in locations) / len(locations),
        longitude=sum(loc.longitude for loc in locations) / len(locations),
        radius_meters=radius_meters,
        name="Work Area",
    )
