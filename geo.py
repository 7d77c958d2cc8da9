"""
Geographic value types and helpers.

All coordinates are WGS84 degrees. Distances use the Haversine formula
on a spherical Earth (R = 6,371 km); this is an approximation and is
accurate enough for neighbourhood-scale scoring.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from errors import ValidationError

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_320

# Decimal places used when comparing POIs for duplicates (~0.1 m)
DEDUP_PRECISION = 6


# =============================================================================
# Value types
# =============================================================================

@dataclass(frozen=True)
class Point:
    lat: float
    lng: float


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned lat/lng box. Does not cross the antimeridian."""
    north: float
    south: float
    east: float
    west: float

    def validate(self) -> "Bounds":
        values = (self.north, self.south, self.east, self.west)
        if not all(math.isfinite(v) for v in values):
            raise ValidationError(f"Bounds contain non-finite values: {self}")
        if self.south > self.north or self.west > self.east:
            raise ValidationError(f"Bounds are inverted: {self}")
        if self.south < -90 or self.north > 90:
            raise ValidationError(f"Latitude out of range: {self}")
        return self

    @property
    def center(self) -> Point:
        return Point(
            lat=(self.north + self.south) / 2,
            lng=(self.east + self.west) / 2,
        )

    def contains(self, lat: float, lng: float) -> bool:
        return (
            self.south <= lat <= self.north
            and self.west <= lng <= self.east
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


@dataclass(frozen=True)
class POI:
    """A point of interest. Never mutated after creation."""
    id: str
    lat: float
    lng: float
    tags: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "lat": self.lat,
            "lng": self.lng,
            "tags": dict(self.tags),
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "POI":
        return cls(
            id=str(data["id"]),
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            tags=dict(data.get("tags") or {}),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class HeatmapPoint:
    """A scored sample point. value is in [0, 1]; 0 is best."""
    lat: float
    lng: float
    value: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict) -> "HeatmapPoint":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            value=float(data["value"]),
        )


# =============================================================================
# Distance helpers
# =============================================================================

def haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance(a: Point, b: Point) -> float:
    return haversine(a.lat, a.lng, b.lat, b.lng)


def meters_per_degree_lng(lat: float) -> float:
    return METERS_PER_DEGREE_LAT * math.cos(math.radians(lat))


def meters_to_degrees(meters: float, lat: float) -> Tuple[float, float]:
    """Convert a distance in meters to (lat_degrees, lng_degrees) at lat."""
    lng_scale = max(meters_per_degree_lng(lat), 1e-9)
    return meters / METERS_PER_DEGREE_LAT, meters / lng_scale


def bounds_area_m2(bounds: Bounds) -> float:
    center_lat = (bounds.north + bounds.south) / 2
    height = (bounds.north - bounds.south) * METERS_PER_DEGREE_LAT
    width = (bounds.east - bounds.west) * meters_per_degree_lng(center_lat)
    return height * width


# =============================================================================
# Bounds helpers
# =============================================================================

def expand_bounds(bounds: Bounds, buffer_m: float) -> Bounds:
    """Grow bounds by buffer_m on every side (clamped to valid latitudes)."""
    lat_buffer, lng_buffer = meters_to_degrees(buffer_m, bounds.center.lat)
    return Bounds(
        north=min(90.0, bounds.north + lat_buffer),
        south=max(-90.0, bounds.south - lat_buffer),
        east=bounds.east + lng_buffer,
        west=bounds.west - lng_buffer,
    )


def filter_pois_to_bounds(pois: Iterable[POI], bounds: Bounds) -> List[POI]:
    return [p for p in pois if bounds.contains(p.lat, p.lng)]


def dedup_key(lat: float, lng: float) -> Tuple[float, float]:
    return (round(lat, DEDUP_PRECISION), round(lng, DEDUP_PRECISION))


def dedupe_pois(pois: Iterable[POI]) -> List[POI]:
    """Drop POIs whose rounded coordinates were already seen (first wins)."""
    seen = set()
    unique = []
    for poi in pois:
        key = dedup_key(poi.lat, poi.lng)
        if key in seen:
            continue
        seen.add(key)
        unique.append(poi)
    return unique
