"""
Sample-point grid generation.

Grids are aligned to a global reference: row latitudes are integer
multiples of the latitude step, and within a row longitudes are integer
multiples of that row's longitude step. Any two boxes therefore produce
identical points wherever they overlap or touch, which lets heatmap
tiles computed independently stitch without seams.
"""

import logging
import math
from typing import Iterator, List, Optional, Tuple

from errors import ValidationError
from geo import METERS_PER_DEGREE_LAT, Bounds, Point, bounds_area_m2, meters_per_degree_lng
from heatmap_config import GridConfig

logger = logging.getLogger(__name__)

# Rounding applied to emitted coordinates so shared points compare equal
COORD_DECIMALS = 10

# Slack when converting a bound to a step index (absorbs float noise)
_INDEX_EPSILON = 1e-9


def adaptive_cell_size(
    bounds: Bounds,
    target_point_count: int,
    min_cell: float,
    max_cell: float,
) -> float:
    """Cell size in meters that yields roughly target_point_count points."""
    area = bounds_area_m2(bounds)
    if area <= 0 or target_point_count <= 0:
        return min_cell
    cell = math.sqrt(area / target_point_count)
    return max(min_cell, min(max_cell, cell))


def _lat_step(cell_size: float) -> float:
    return cell_size / METERS_PER_DEGREE_LAT


def _lng_step(cell_size: float, lat: float) -> float:
    return cell_size / max(meters_per_degree_lng(lat), 1e-6)


def _index_range(low: float, high: float, step: float) -> range:
    start = math.ceil(low / step - _INDEX_EPSILON)
    end = math.floor(high / step + _INDEX_EPSILON)
    return range(start, end + 1)


def _rows(bounds: Bounds, cell_size: float) -> Iterator[Tuple[float, float]]:
    """Yield (row_latitude, row_lng_step) for each grid row inside bounds."""
    lat_step = _lat_step(cell_size)
    for i in _index_range(bounds.south, bounds.north, lat_step):
        lat = round(i * lat_step, COORD_DECIMALS)
        yield lat, _lng_step(cell_size, lat)


def generate_grid(bounds: Bounds, cell_size: float) -> List[Point]:
    """Generate globally aligned sample points covering bounds.

    Args:
        bounds: Box to cover.
        cell_size: Spacing between points in meters.

    Returns:
        Points ordered south-to-north, then west-to-east.
    """
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")

    points = []
    for lat, lng_step in _rows(bounds, cell_size):
        for j in _index_range(bounds.west, bounds.east, lng_step):
            points.append(Point(lat=lat, lng=round(j * lng_step, COORD_DECIMALS)))
    return points


def estimate_grid_size(bounds: Bounds, cell_size: float) -> int:
    """Number of points generate_grid() would return, without building them."""
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")
    return sum(
        len(_index_range(bounds.west, bounds.east, lng_step))
        for _, lng_step in _rows(bounds, cell_size)
    )


def choose_cell_size(
    bounds: Bounds,
    requested: Optional[float] = None,
    config: GridConfig = GridConfig(),
) -> float:
    """Pick the cell size for a request, coarsening oversized viewports.

    Uses the requested size if given, else an adaptive one. If that would
    exceed config.max_grid_points, falls back to an adaptive size aimed at
    max_grid_points within the wider fallback range.

    Raises:
        ValidationError: If even the fallback exceeds
            max_grid_points * grid_points_tolerance.
    """
    cell_size = requested or adaptive_cell_size(
        bounds,
        config.target_point_count,
        config.min_cell_size,
        config.max_cell_size,
    )
    estimated = estimate_grid_size(bounds, cell_size)
    if estimated <= config.max_grid_points:
        return cell_size

    fallback = adaptive_cell_size(
        bounds,
        config.max_grid_points,
        config.fallback_min_cell_size,
        config.fallback_max_cell_size,
    )
    fallback_estimate = estimate_grid_size(bounds, fallback)
    if fallback_estimate > config.max_grid_points * config.grid_points_tolerance:
        raise ValidationError(
            f"Viewport too large: ~{fallback_estimate} grid points at "
            f"{fallback:.0f}m (max {config.max_grid_points}). Zoom in."
        )

    logger.info(
        "Grid too dense at %.0fm (%d points), using %.0fm (%d points)",
        cell_size,
        estimated,
        fallback,
        fallback_estimate,
    )
    return fallback
