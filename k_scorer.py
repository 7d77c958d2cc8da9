"""
K-value scoring.

K is the weighted mean of per-factor values in [0, 1], where 0 is the
best possible location and 1 the worst. Positive factors score low
when their POIs are close; negative factors score low when their POIs
are far away. Positive factors with several POIs nearby earn a small
density bonus.

Every function here is pure: identical inputs give identical outputs,
and nothing is cached at module level. Spatial indexes are passed in
(or built from an injected SpatialIndexCache) by the caller.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from distance_curves import DistanceCurve, normalize
from geo import POI, HeatmapPoint, Point, haversine
from heatmap_config import DensityBonusConfig, Factor, NoPoiPolicy
from spatial_index import DEFAULT_CELL_SIZE, SpatialIndex, SpatialIndexCache

logger = logging.getLogger(__name__)

NEUTRAL_K = 0.5

_DEFAULT_DENSITY = DensityBonusConfig()
_DEFAULT_POLICY = NoPoiPolicy()


# =============================================================================
# Result types
# =============================================================================

@dataclass(frozen=True)
class FactorContribution:
    """Diagnostic breakdown of one factor at one point."""
    factor_id: str
    weight: float
    poi_count: int
    nearest_distance: Optional[float]  # None when no POI within max_distance
    nearby_count: int
    density_bonus: float
    value: float
    share: float  # fraction of total |weight|


@dataclass(frozen=True)
class KStats:
    min: float
    max: float
    avg: float
    std_dev: float
    count: int


# =============================================================================
# Per-factor pieces
# =============================================================================

def density_bonus(nearby_count: int, config: DensityBonusConfig = _DEFAULT_DENSITY) -> float:
    """Diminishing-returns bonus for nearby POIs; 0 when nearby_count <= 1."""
    if nearby_count <= 1:
        return 0.0
    normalized_count = (nearby_count - 1) / config.scale
    return config.max_bonus * (1 - 1 / (normalized_count + 1))


def _nearest_distance(
    point: Point,
    pois: Sequence[POI],
    index: Optional[SpatialIndex],
    max_distance: float,
) -> float:
    if index is not None:
        nearest = index.find_nearest(point, max_distance)
        return nearest.distance if nearest is not None else math.inf
    best = math.inf
    for poi in pois:
        d = haversine(point.lat, point.lng, poi.lat, poi.lng)
        if d < best:
            best = d
    return best


def _nearby_count(
    point: Point,
    pois: Sequence[POI],
    index: Optional[SpatialIndex],
    radius: float,
) -> int:
    if index is not None:
        return index.count_within_radius(point, radius)
    return sum(
        1 for poi in pois
        if haversine(point.lat, point.lng, poi.lat, poi.lng) <= radius
    )


def _factor_value(
    point: Point,
    factor: Factor,
    pois: Sequence[POI],
    index: Optional[SpatialIndex],
    curve: DistanceCurve,
    sensitivity: float,
    policy: NoPoiPolicy,
    density: DensityBonusConfig,
) -> Tuple[float, float, int, float]:
    """Return (value, nearest_distance, nearby_count, bonus) for one factor."""
    if not pois:
        return max(0.0, min(1.0, policy.value_for(factor))), math.inf, 0, 0.0

    nearest = _nearest_distance(point, pois, index, factor.max_distance)
    normalized = normalize(nearest, factor.max_distance, curve, sensitivity)
    value = 1 - normalized if factor.is_negative else normalized

    nearby = 0
    bonus = 0.0
    if not factor.is_negative and len(pois) > 1:
        nearby = _nearby_count(
            point, pois, index, factor.max_distance * density.radius_ratio
        )
        bonus = density_bonus(nearby, density)
        value = max(0.0, value - bonus)

    return value, nearest, nearby, bonus


# =============================================================================
# Scoring
# =============================================================================

def score_point(
    point: Point,
    pois_by_factor: Mapping[str, Sequence[POI]],
    factors: Sequence[Factor],
    indexes: Optional[Mapping[str, SpatialIndex]] = None,
    curve: DistanceCurve = DistanceCurve.LOG,
    sensitivity: float = 1.0,
    policy: NoPoiPolicy = _DEFAULT_POLICY,
    density: DensityBonusConfig = _DEFAULT_DENSITY,
) -> float:
    """K value in [0, 1] for one point. 0.5 when no factor is active."""
    indexes = indexes or {}
    weighted_sum = 0.0
    total_weight = 0.0

    for factor in factors:
        if not factor.is_active:
            continue
        value, _, _, _ = _factor_value(
            point,
            factor,
            pois_by_factor.get(factor.id, ()),
            indexes.get(factor.id),
            curve,
            sensitivity,
            policy,
            density,
        )
        abs_weight = abs(factor.weight)
        weighted_sum += value * abs_weight
        total_weight += abs_weight

    if total_weight == 0:
        return NEUTRAL_K
    return max(0.0, min(1.0, weighted_sum / total_weight))


def factor_breakdown(
    point: Point,
    pois_by_factor: Mapping[str, Sequence[POI]],
    factors: Sequence[Factor],
    indexes: Optional[Mapping[str, SpatialIndex]] = None,
    curve: DistanceCurve = DistanceCurve.LOG,
    sensitivity: float = 1.0,
    policy: NoPoiPolicy = _DEFAULT_POLICY,
    density: DensityBonusConfig = _DEFAULT_DENSITY,
) -> List[FactorContribution]:
    """Per-factor values behind score_point(), for popups and debugging."""
    indexes = indexes or {}
    active = [f for f in factors if f.is_active]
    total_weight = sum(abs(f.weight) for f in active)

    breakdown = []
    for factor in active:
        pois = pois_by_factor.get(factor.id, ())
        value, nearest, nearby, bonus = _factor_value(
            point,
            factor,
            pois,
            indexes.get(factor.id),
            curve,
            sensitivity,
            policy,
            density,
        )
        breakdown.append(FactorContribution(
            factor_id=factor.id,
            weight=factor.weight,
            poi_count=len(pois),
            nearest_distance=nearest if nearest <= factor.max_distance else None,
            nearby_count=nearby,
            density_bonus=bonus,
            value=value,
            share=abs(factor.weight) / total_weight if total_weight else 0.0,
        ))
    return breakdown


def build_spatial_indexes(
    pois_by_factor: Mapping[str, Sequence[POI]],
    factors: Sequence[Factor],
    index_cache: Optional[SpatialIndexCache] = None,
    cell_size: float = DEFAULT_CELL_SIZE,
) -> Dict[str, SpatialIndex]:
    """One index per active factor that has POIs."""
    indexes = {}
    for factor in factors:
        if not factor.is_active:
            continue
        pois = pois_by_factor.get(factor.id) or []
        if not pois:
            continue
        if index_cache is not None:
            indexes[factor.id] = index_cache.get(factor.id, pois)
        else:
            indexes[factor.id] = SpatialIndex(pois, cell_size)
    return indexes


def calculate_heatmap(
    points: Sequence[Point],
    pois_by_factor: Mapping[str, Sequence[POI]],
    factors: Sequence[Factor],
    curve: DistanceCurve = DistanceCurve.LOG,
    sensitivity: float = 1.0,
    policy: NoPoiPolicy = _DEFAULT_POLICY,
    density: DensityBonusConfig = _DEFAULT_DENSITY,
    indexes: Optional[Mapping[str, SpatialIndex]] = None,
    normalize_to_viewport: bool = False,
) -> List[HeatmapPoint]:
    """Score every sample point."""
    if indexes is None:
        indexes = build_spatial_indexes(pois_by_factor, factors)

    results = [
        HeatmapPoint(
            lat=p.lat,
            lng=p.lng,
            value=score_point(
                p, pois_by_factor, factors, indexes, curve, sensitivity, policy, density
            ),
        )
        for p in points
    ]
    if normalize_to_viewport:
        results = normalize_k_values(results)
    return results


# =============================================================================
# Post-processing
# =============================================================================

def normalize_k_values(points: Sequence[HeatmapPoint]) -> List[HeatmapPoint]:
    """Stretch values to span [0, 1] within this set of points.

    A flat surface (max == min) is returned unchanged.
    """
    if not points:
        return []
    low = min(p.value for p in points)
    high = max(p.value for p in points)
    spread = high - low
    if spread <= 0:
        return list(points)
    return [replace(p, value=(p.value - low) / spread) for p in points]


def k_stats(points: Sequence[HeatmapPoint]) -> Optional[KStats]:
    if not points:
        return None
    values = [p.value for p in points]
    avg = sum(values) / len(values)
    variance = sum((v - avg) ** 2 for v in values) / len(values)
    return KStats(
        min=min(values),
        max=max(values),
        avg=avg,
        std_dev=math.sqrt(variance),
        count=len(values),
    )


def log_k_stats(points: Sequence[HeatmapPoint], context: str = "") -> Optional[KStats]:
    stats = k_stats(points)
    if stats is None:
        return None
    logger.info(
        "K value stats: min=%.3f max=%.3f avg=%.3f std=%.3f n=%d%s",
        stats.min,
        stats.max,
        stats.avg,
        stats.std_dev,
        stats.count,
        f" ({context})" if context else "",
    )
    return stats
