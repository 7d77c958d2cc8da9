"""
Web-Mercator tile coordinates, cache-key hashing and key builders.

Every cache domain (POI tiles, property tiles, heatmap tiles) uses one
fixed zoom level so that a tile key always covers the same ground no
matter what viewport requested it.
"""

import json
import math
from dataclasses import asdict, dataclass, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from geo import Bounds

MAX_MERCATOR_LAT = 85.051128779807
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True, order=True)
class TileCoord:
    z: int
    x: int
    y: int

    @property
    def key(self) -> str:
        return f"{self.z}:{self.x}:{self.y}"

    def is_valid(self) -> bool:
        limit = 2 ** self.z
        return self.z >= 0 and 0 <= self.x < limit and 0 <= self.y < limit


# =============================================================================
# Projection
# =============================================================================

def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _tile_x(lng: float, zoom: int) -> int:
    n = 2 ** zoom
    return _clamp(math.floor((lng + 180.0) / 360.0 * n), 0, n - 1)


def _tile_y(lat: float, zoom: int) -> int:
    n = 2 ** zoom
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))
    lat_rad = math.radians(lat)
    y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n
    return _clamp(math.floor(y), 0, n - 1)


def normalize_lng(lng: float) -> float:
    """Wrap longitude into [-180, 180)."""
    return ((lng + 180.0) % 360.0) - 180.0


def lat_lng_to_tile(lat: float, lng: float, zoom: int) -> TileCoord:
    return TileCoord(z=zoom, x=_tile_x(normalize_lng(lng), zoom), y=_tile_y(lat, zoom))


def tile_to_bounds(tile: TileCoord) -> Bounds:
    n = 2 ** tile.z

    def _lat(y: int) -> float:
        return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))

    return Bounds(
        north=_lat(tile.y),
        south=_lat(tile.y + 1),
        east=(tile.x + 1) / n * 360.0 - 180.0,
        west=tile.x / n * 360.0 - 180.0,
    )


def tiles_for_bounds(bounds: Bounds, zoom: int) -> List[TileCoord]:
    """All tiles at zoom that intersect bounds."""
    min_x, max_x = _tile_x(bounds.west, zoom), _tile_x(bounds.east, zoom)
    min_y, max_y = _tile_y(bounds.north, zoom), _tile_y(bounds.south, zoom)
    return [
        TileCoord(z=zoom, x=x, y=y)
        for x in range(min_x, max_x + 1)
        for y in range(min_y, max_y + 1)
    ]


def combined_bounds(tiles: Iterable[TileCoord]) -> Bounds:
    """Smallest box covering every tile."""
    boxes = [tile_to_bounds(t) for t in tiles]
    if not boxes:
        raise ValueError("combined_bounds() requires at least one tile")
    return Bounds(
        north=max(b.north for b in boxes),
        south=min(b.south for b in boxes),
        east=max(b.east for b in boxes),
        west=min(b.west for b in boxes),
    )


def _single_zoom(tiles: Sequence[TileCoord]) -> int:
    zooms = {t.z for t in tiles}
    if len(zooms) > 1:
        raise ValueError(f"Tiles span multiple zoom levels: {sorted(zooms)}")
    return zooms.pop()


def expand_tiles(tiles: Sequence[TileCoord], radius: int) -> List[TileCoord]:
    """Grow the tiles' bounding box by radius rings (Chebyshev), clipped to the world."""
    if not tiles:
        return []
    z = _single_zoom(tiles)
    if radius <= 0:
        return sorted(set(tiles))

    max_index = 2 ** z - 1
    min_x = max(0, min(t.x for t in tiles) - radius)
    max_x = min(max_index, max(t.x for t in tiles) + radius)
    min_y = max(0, min(t.y for t in tiles) - radius)
    max_y = min(max_index, max(t.y for t in tiles) + radius)
    return [
        TileCoord(z=z, x=x, y=y)
        for x in range(min_x, max_x + 1)
        for y in range(min_y, max_y + 1)
    ]


def tiles_at_zoom(tiles: Sequence[TileCoord], zoom: int) -> List[TileCoord]:
    """The tiles at zoom covering the same ground, by index arithmetic only."""
    if not tiles:
        return []
    z = _single_zoom(tiles)
    if z == zoom:
        return sorted(set(tiles))
    if z > zoom:
        shift = z - zoom
        return sorted({TileCoord(zoom, t.x >> shift, t.y >> shift) for t in tiles})

    span = 1 << (zoom - z)
    return sorted({
        TileCoord(zoom, t.x * span + dx, t.y * span + dy)
        for t in tiles
        for dx in range(span)
        for dy in range(span)
    })


def poi_tile_radius(
    max_distance_m: float,
    buffer_scale: float = 2.0,
    tile_size_m: float = 2400.0,
    max_radius: int = 10,
) -> int:
    """Neighbour rings needed so POIs up to max_distance away are fetched."""
    radius = math.ceil(max_distance_m * buffer_scale / tile_size_m)
    return max(0, min(radius, max_radius))


def poi_tiles_for_heatmap_tiles(
    heatmap_tiles: Sequence[TileCoord],
    max_distance_m: float,
    buffer_scale: float = 2.0,
    tile_size_m: float = 2400.0,
    max_radius: int = 10,
) -> List[TileCoord]:
    radius = poi_tile_radius(max_distance_m, buffer_scale, tile_size_m, max_radius)
    return expand_tiles(heatmap_tiles, radius)


# =============================================================================
# Hashing
# =============================================================================

def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def djb2_hash(text: str) -> str:
    """djb2 over UTF-16 code units with 32-bit signed wraparound, base-36 encoded."""
    if not text:
        return "0"
    data = text.encode("utf-16-le")
    h = 5381
    for i in range(0, len(data), 2):
        h = ((h << 5) + h + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _canonical(obj: Any) -> Any:
    """Reduce obj to plain JSON types with a stable representation."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return _canonical(asdict(obj))
    if isinstance(obj, Enum):
        return _canonical(obj.value)
    if isinstance(obj, dict):
        return {str(k): _canonical(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_canonical(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(_canonical(v) for v in obj)
    if isinstance(obj, float) and obj.is_integer():
        # 80 and 80.0 are the same configuration
        return int(obj)
    return obj


def stable_json(obj: Any) -> str:
    return json.dumps(_canonical(obj), sort_keys=True, separators=(",", ":"))


def hash_config(obj: Any) -> str:
    return djb2_hash(stable_json(obj))


def hash_heatmap_config(
    factors: Iterable[Any],
    config: Any,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Hash only what changes K: active factors and curve/grid options.

    Disabled and zero-weight factors are left out, so toggling them does
    not invalidate cached tiles.
    """
    active = sorted(
        (
            {"id": f.id, "weight": f.weight, "max_distance": f.max_distance}
            for f in factors
            if f.enabled and f.weight != 0
        ),
        key=lambda f: f["id"],
    )
    payload = {
        "factors": active,
        "curve": config.curve,
        "sensitivity": config.sensitivity,
        "grid_size": config.grid_size,
    }
    if extra:
        payload["extra"] = extra
    return hash_config(payload)


def hash_filters(filters: Dict[str, Any]) -> str:
    """Hash listing filters; list-valued filters are order-insensitive."""
    normalized = {}
    for key, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            value = sorted(_canonical(v) for v in value)
        normalized[key] = value
    return hash_config(normalized)


# =============================================================================
# Cache keys
# =============================================================================

def poi_tile_key(tile: TileCoord, factor_id: str) -> str:
    return f"poi-tile:{tile.z}:{tile.x}:{tile.y}:{factor_id}"


def property_tile_key(tile: TileCoord, filter_hash: str) -> str:
    return f"prop-tile:{tile.z}:{tile.x}:{tile.y}:{filter_hash}"


def heatmap_tile_key(tile: TileCoord, config_hash: str) -> str:
    return f"heatmap-tile:{tile.z}:{tile.x}:{tile.y}:{config_hash}"
