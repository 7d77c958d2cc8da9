"""
Grid-cell spatial index for nearest-POI and radius-count queries.

POIs are bucketed into square cells of ``cell_size`` degrees. Queries
look only at the cells that can contain a match, walking outward in
square rings from the query cell for nearest-neighbour searches.

Results are exact: both queries return what a brute-force scan over
every POI would return (see brute_force_nearest / brute_force_count).
The search window is derived from spherical bounding-box limits, so it
stays correct at high latitudes where a degree of longitude is short.
The index does not wrap across the antimeridian.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from geo import EARTH_RADIUS_M, POI, Point, haversine

logger = logging.getLogger(__name__)

DEFAULT_CELL_SIZE = 0.01  # degrees, ~1.1 km north-south

# Scan populated cells directly when the query window is this many
# times larger than the number of populated cells.
_SCAN_FACTOR = 4

# Relative slack on ring lower bounds so float noise never prunes a match
_BOUND_SLACK = 1e-9

CellKey = Tuple[int, int]


@dataclass(frozen=True)
class Nearest:
    poi: POI
    distance: float  # meters


def cell_key(lat: float, lng: float, cell_size: float = DEFAULT_CELL_SIZE) -> str:
    """Printable cell key, "floor(lat/cell):floor(lng/cell)"."""
    return f"{math.floor(lat / cell_size)}:{math.floor(lng / cell_size)}"


def poi_fingerprint(pois: Sequence[POI]) -> str:
    """Cheap change detector: length plus first and last coordinates."""
    if not pois:
        return "0"
    first, last = pois[0], pois[-1]
    return f"{len(pois)}:{first.lat},{first.lng}:{last.lat},{last.lng}"


# =============================================================================
# Brute-force baselines
# =============================================================================

def brute_force_nearest(
    pois: Sequence[POI], point: Point, max_distance: float = math.inf
) -> Optional[Nearest]:
    best = None
    best_distance = math.inf
    for poi in pois:
        d = haversine(point.lat, point.lng, poi.lat, poi.lng)
        if d <= max_distance and d < best_distance:
            best, best_distance = poi, d
    return Nearest(best, best_distance) if best is not None else None


def brute_force_count(pois: Sequence[POI], point: Point, radius: float) -> int:
    return sum(
        1 for poi in pois
        if haversine(point.lat, point.lng, poi.lat, poi.lng) <= radius
    )


# =============================================================================
# Index
# =============================================================================

class SpatialIndex:
    """Immutable cell index over a POI list. Rebuild it when the POIs change."""

    def __init__(self, pois: Sequence[POI], cell_size: float = DEFAULT_CELL_SIZE):
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self._cell_size = cell_size
        self._pois = list(pois)
        cells: Dict[CellKey, List[POI]] = {}
        for poi in self._pois:
            cells.setdefault(self._cell_of(poi.lat, poi.lng), []).append(poi)
        self._cells = cells

    def __len__(self) -> int:
        return len(self._pois)

    @property
    def cell_size(self) -> float:
        return self._cell_size

    @property
    def cell_count(self) -> int:
        return len(self._cells)

    def _cell_of(self, lat: float, lng: float) -> CellKey:
        return (
            math.floor(lat / self._cell_size),
            math.floor(lng / self._cell_size),
        )

    # ------------------------------------------------------------------
    # Window geometry
    # ------------------------------------------------------------------

    def _window(self, lat: float, distance: float) -> Optional[Tuple[int, int]]:
        """Cell half-extents (rows, cols) that can hold a POI within distance.

        None means the window covers the whole index.
        """
        angular = distance / EARTH_RADIUS_M
        if angular >= math.pi / 2:
            return None
        lat_span = math.degrees(angular)
        if abs(lat) + lat_span >= 90:
            return None
        ratio = math.sin(angular) / math.cos(math.radians(lat))
        if ratio >= 1:
            return None
        lng_span = math.degrees(math.asin(ratio))
        rows = math.ceil(lat_span / self._cell_size) + 1
        cols = math.ceil(lng_span / self._cell_size) + 1
        return rows, cols

    def _should_scan(self, window: Optional[Tuple[int, int]]) -> bool:
        if window is None:
            return True
        rows, cols = window
        return (2 * rows + 1) * (2 * cols + 1) > _SCAN_FACTOR * max(len(self._cells), 1)

    def _ring_lower_bound(self, lat: float, ring: int) -> float:
        """Smallest possible distance to any POI in ring (Chebyshev cell distance)."""
        if ring <= 1:
            return 0.0
        gap = math.radians((ring - 1) * self._cell_size)
        lat_bound = gap
        cap = math.pi / 2 - abs(math.radians(lat))
        lng_bound = min(
            math.asin(min(1.0, math.sin(min(gap, math.pi / 2)) * math.cos(math.radians(lat)))),
            max(cap, 0.0),
        )
        return EARTH_RADIUS_M * min(lat_bound, lng_bound) * (1 - _BOUND_SLACK)

    @staticmethod
    def _ring_cells(
        row: int, col: int, ring: int, max_rows: int, max_cols: int
    ) -> Iterator[CellKey]:
        if ring == 0:
            yield row, col
            return
        row_extent = min(ring, max_rows)
        col_extent = min(ring, max_cols)
        for dr in range(-row_extent, row_extent + 1):
            if abs(dr) == ring:
                for dc in range(-col_extent, col_extent + 1):
                    yield row + dr, col + dc
            elif ring <= max_cols:
                yield row + dr, col - ring
                yield row + dr, col + ring

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_nearest(self, point: Point, max_distance: float) -> Optional[Nearest]:
        """Nearest POI within max_distance meters, or None."""
        if not self._cells or max_distance < 0:
            return None

        window = self._window(point.lat, max_distance)
        if self._should_scan(window):
            return brute_force_nearest(self._pois, point, max_distance)

        max_rows, max_cols = window
        row, col = self._cell_of(point.lat, point.lng)
        best = None
        best_distance = math.inf

        for ring in range(max(max_rows, max_cols) + 1):
            if best is not None and self._ring_lower_bound(point.lat, ring) > best_distance:
                break
            for key in self._ring_cells(row, col, ring, max_rows, max_cols):
                for poi in self._cells.get(key, ()):
                    d = haversine(point.lat, point.lng, poi.lat, poi.lng)
                    if d <= max_distance and d < best_distance:
                        best, best_distance = poi, d

        return Nearest(best, best_distance) if best is not None else None

    def count_within_radius(self, point: Point, radius: float) -> int:
        """Number of POIs within radius meters (inclusive)."""
        if not self._cells or radius < 0:
            return 0

        window = self._window(point.lat, radius)
        if self._should_scan(window):
            return brute_force_count(self._pois, point, radius)

        max_rows, max_cols = window
        row, col = self._cell_of(point.lat, point.lng)
        count = 0
        for dr in range(-max_rows, max_rows + 1):
            for dc in range(-max_cols, max_cols + 1):
                for poi in self._cells.get((row + dr, col + dc), ()):
                    if haversine(point.lat, point.lng, poi.lat, poi.lng) <= radius:
                        count += 1
        return count


class SpatialIndexCache:
    """Per-factor index cache, rebuilt when a factor's POI fingerprint changes.

    Owned by the composition root; never shared through module state.
    """

    def __init__(self, cell_size: float = DEFAULT_CELL_SIZE):
        self._cell_size = cell_size
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, SpatialIndex]] = {}
        self.builds = 0

    def get(self, factor_id: str, pois: Sequence[POI]) -> SpatialIndex:
        fingerprint = poi_fingerprint(pois)
        with self._lock:
            entry = self._entries.get(factor_id)
            if entry is not None and entry[0] == fingerprint:
                return entry[1]

        index = SpatialIndex(pois, self._cell_size)
        with self._lock:
            self._entries[factor_id] = (fingerprint, index)
            self.builds += 1
        logger.debug(
            "Built spatial index for %s: %d POIs in %d cells",
            factor_id,
            len(index),
            index.cell_count,
        )
        return index

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
