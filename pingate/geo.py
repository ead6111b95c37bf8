"""
Location resolution: nearest active geofence for a coordinate.

Two paths return the same answer in meters:

- PostgreSQL/PostGIS: a spatial query over the locations table.
- Anything else, or when the spatial query fails: a haversine scan over all
  active locations.

A candidate qualifies when its distance is within the effective radius
``max(global max distance, location.radius_m)``. The closest qualifying
location wins; exact ties go to the lowest id.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pingate.errors import ValidationError
from pingate.models import Location

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
# ST_DistanceSphere measures on this sphere; its results are rescaled to EARTH_RADIUS_M
POSTGIS_SPHERE_RADIUS_M = 6370986.0

_SPATIAL_NEAREST_SQL = text(
    """
    SELECT id, distance_m FROM (
        SELECT id,
               ST_DistanceSphere(
                   ST_SetSRID(ST_MakePoint(lng, lat), 4326),
                   ST_SetSRID(ST_MakePoint(:lng, :lat), 4326)
               ) * :sphere_scale AS distance_m,
               GREATEST(:max_distance_m, radius_m) AS effective_radius_m
        FROM locations
        WHERE is_active
    ) candidates
    WHERE distance_m <= effective_radius_m
    ORDER BY distance_m ASC, id ASC
    LIMIT 1
    """
)


@dataclass(frozen=True)
class ResolvedLocation:
    id: str
    slug: str
    name: str
    lat: float
    lng: float
    radius_m: int
    distance_m: float

    @classmethod
    def from_model(cls, location: Location, distance_m: float) -> "ResolvedLocation":
        return cls(
            id=location.id,
            slug=location.slug,
            name=location.name,
            lat=location.lat,
            lng=location.lng,
            radius_m=location.radius_m,
            distance_m=float(distance_m),
        )


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def is_valid_coordinate(lat, lng) -> bool:
    return _is_number(lat) and _is_number(lng) and -90 <= lat <= 90 and -180 <= lng <= 180


def find_nearest_location(
    lat: float, lng: float, locations: Iterable[Location], max_distance_m: float
) -> Optional[ResolvedLocation]:
    """Haversine scan used when no spatial index is available."""
    best: Optional[ResolvedLocation] = None
    for location in locations:
        distance = haversine_m(lat, lng, location.lat, location.lng)
        if distance > max(max_distance_m, location.radius_m):
            continue
        if best is None or (distance, location.id) < (best.distance_m, best.id):
            best = ResolvedLocation.from_model(location, distance)
    return best


class LocationResolver:
    def __init__(self, max_accuracy_m: float, max_distance_m: float):
        self.max_accuracy_m = max_accuracy_m
        self.max_distance_m = max_distance_m

    def validate(self, lat, lng, accuracy_m) -> None:
        if not is_valid_coordinate(lat, lng):
            raise ValidationError("Invalid coordinates")
        if not _is_number(accuracy_m) or accuracy_m < 0:
            raise ValidationError("Invalid accuracy value")
        if accuracy_m > self.max_accuracy_m:
            raise ValidationError(
                f"Location accuracy too low. Need {self.max_accuracy_m}m or better, got {round(accuracy_m)}m.",
                details={"max_accuracy_m": self.max_accuracy_m},
            )

    def resolve(self, session: Session, lat, lng, accuracy_m) -> Optional[ResolvedLocation]:
        """
        Return the closest qualifying location, or None when there is no board here.

        Raises:
            ValidationError: coordinates out of range or accuracy too coarse
        """
        self.validate(lat, lng, accuracy_m)

        if session.get_bind().dialect.name == "postgresql":
            try:
                return self._resolve_spatial(session, lat, lng)
            except SQLAlchemyError as e:
                logger.warning(f"Spatial query failed, using haversine fallback: {e}")
                session.rollback()

        active = session.query(Location).filter(Location.is_active.is_(True)).all()
        return find_nearest_location(lat, lng, active, self.max_distance_m)

    def _resolve_spatial(self, session: Session, lat: float, lng: float) -> Optional[ResolvedLocation]:
        params = {
            "lat": lat,
            "lng": lng,
            "max_distance_m": self.max_distance_m,
            "sphere_scale": EARTH_RADIUS_M / POSTGIS_SPHERE_RADIUS_M,
        }
        row = session.execute(_SPATIAL_NEAREST_SQL, params).first()
        if row is None:
            return None
        location = session.get(Location, row.id)
        return ResolvedLocation.from_model(location, row.distance_m)
