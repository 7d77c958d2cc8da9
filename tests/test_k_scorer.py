"""Unit tests for k_scorer.py: weighted K-value scoring."""

import math
import random

import pytest

from distance_curves import DistanceCurve
from geo import HeatmapPoint, Point
from heatmap_config import DensityBonusConfig, NoPoiPolicy
from k_scorer import (
    NEUTRAL_K,
    build_spatial_indexes,
    calculate_heatmap,
    density_bonus,
    factor_breakdown,
    k_stats,
    log_k_stats,
    normalize_k_values,
    score_point,
)
from spatial_index import SpatialIndexCache
from conftest import make_factor, make_poi

ORIGIN = Point(52.23, 21.01)
_M_PER_DEG = 111_320


def _north_of(point, meters, poi_id):
    return make_poi(poi_id, point.lat + meters / _M_PER_DEG, point.lng)


# =========================================================================
# Scenarios
# =========================================================================

class TestScenarios:
    def test_pharmacy_close_scores_near_best(self):
        pharmacy = make_factor("pharmacy", 50, 500, osm_tags=("amenity=pharmacy",))
        pois = {"pharmacy": [_north_of(ORIGIN, d, i) for i, d in enumerate((50, 300, 600))]}

        k = score_point(ORIGIN, pois, [pharmacy], curve=DistanceCurve.LINEAR)

        assert 0.0 <= k <= 0.1

    def test_no_active_factors_is_neutral(self):
        factors = [make_factor("grocery", 0), make_factor("transit", 50, enabled=False)]
        assert score_point(ORIGIN, {}, factors) == NEUTRAL_K

    def test_negative_factor_prefers_distance(self):
        bars = make_factor("nightlife", -40, 800)
        near = {"nightlife": [_north_of(ORIGIN, 20, 1)]}
        far = {"nightlife": [_north_of(ORIGIN, 790, 1)]}
        assert score_point(ORIGIN, near, [bars]) > score_point(ORIGIN, far, [bars])

    def test_no_poi_policy_defaults(self):
        grocery = make_factor("grocery", 80, 1000)
        bars = make_factor("nightlife", -40, 800)
        assert score_point(ORIGIN, {}, [grocery]) == 1.0
        assert score_point(ORIGIN, {}, [bars]) == 0.0

    def test_custom_no_poi_policy(self):
        grocery = make_factor("grocery", 80, 1000)
        policy = NoPoiPolicy(positive_value=0.5)
        assert score_point(ORIGIN, {}, [grocery], policy=policy) == 0.5

    def test_weights_blend(self):
        grocery = make_factor("grocery", 75, 1000)
        transit = make_factor("transit", 25, 1000)
        pois = {"grocery": [make_poi("g", ORIGIN.lat, ORIGIN.lng)]}
        # grocery at 0 m -> 0, transit missing -> 1; weighted mean 0.25
        assert score_point(ORIGIN, pois, [grocery, transit]) == pytest.approx(0.25)


# =========================================================================
# Invariants
# =========================================================================

class TestInvariants:
    def _random_case(self, rng):
        factors = [
            make_factor("grocery", rng.uniform(1, 100), rng.uniform(200, 2000)),
            make_factor("transit", rng.uniform(1, 100), rng.uniform(200, 2000)),
            make_factor("nightlife", -rng.uniform(1, 100), rng.uniform(200, 2000)),
        ]
        pois = {
            f.id: [
                make_poi(f"{f.id}-{i}", ORIGIN.lat + rng.uniform(-0.02, 0.02),
                         ORIGIN.lng + rng.uniform(-0.03, 0.03))
                for i in range(rng.randint(0, 30))
            ]
            for f in factors
        }
        point = Point(ORIGIN.lat + rng.uniform(-0.02, 0.02), ORIGIN.lng + rng.uniform(-0.03, 0.03))
        return factors, pois, point

    def test_score_always_in_unit_interval(self):
        rng = random.Random(11)
        for _ in range(200):
            factors, pois, point = self._random_case(rng)
            curve = rng.choice(list(DistanceCurve))
            k = score_point(point, pois, factors, curve=curve, sensitivity=rng.uniform(0.1, 10))
            assert 0.0 <= k <= 1.0

    def test_inactive_factors_never_change_k(self):
        rng = random.Random(12)
        for _ in range(50):
            factors, pois, point = self._random_case(rng)
            extra = [
                make_factor("parks", 0, 1000),
                make_factor("schools", 90, 1000, enabled=False),
            ]
            pois_with_extra = dict(pois, parks=[make_poi("p", point.lat, point.lng)],
                                   schools=[make_poi("s", point.lat, point.lng)])
            assert score_point(point, pois, factors) == \
                score_point(point, pois_with_extra, factors + extra)

    def test_index_matches_linear_scan(self):
        rng = random.Random(13)
        for _ in range(30):
            factors, pois, point = self._random_case(rng)
            indexes = build_spatial_indexes(pois, factors)
            assert score_point(point, pois, factors, indexes) == \
                pytest.approx(score_point(point, pois, factors))


# =========================================================================
# Density bonus
# =========================================================================

class TestDensityBonus:
    def test_zero_for_one_or_fewer(self):
        assert density_bonus(0) == 0.0
        assert density_bonus(1) == 0.0

    def test_monotonic_and_bounded(self):
        config = DensityBonusConfig()
        values = [density_bonus(n, config) for n in range(0, 200)]
        assert values == sorted(values)
        assert max(values) < config.max_bonus

    def test_formula(self):
        # 0.15 * (1 - 1 / ((4 - 1) / 3 + 1)) = 0.075
        assert density_bonus(4) == pytest.approx(0.075)

    def test_bonus_lowers_k(self):
        grocery = make_factor("grocery", 80, 1000)
        one = {"grocery": [_north_of(ORIGIN, 100, 1), _north_of(ORIGIN, 900, 2)]}
        many = {"grocery": [_north_of(ORIGIN, 100 + i, i) for i in range(6)]}
        assert score_point(ORIGIN, many, [grocery]) < score_point(ORIGIN, one, [grocery])

    def test_breakdown_reports_bonus(self):
        grocery = make_factor("grocery", 80, 1000)
        pois = {"grocery": [_north_of(ORIGIN, 100 + i, i) for i in range(4)]}
        [row] = factor_breakdown(ORIGIN, pois, [grocery])
        assert row.nearby_count == 4
        assert row.density_bonus == pytest.approx(0.075)
        assert row.share == 1.0
        assert row.poi_count == 4


# =========================================================================
# Heatmap + post-processing
# =========================================================================

class TestCalculateHeatmap:
    def test_one_value_per_point(self):
        grocery = make_factor("grocery", 80, 1000)
        points = [Point(ORIGIN.lat + i * 0.001, ORIGIN.lng) for i in range(10)]
        pois = {"grocery": [make_poi(1, ORIGIN.lat, ORIGIN.lng)]}
        result = calculate_heatmap(points, pois, [grocery])
        assert len(result) == 10
        assert [(r.lat, r.lng) for r in result] == [(p.lat, p.lng) for p in points]
        assert result[0].value < result[-1].value

    def test_uses_index_cache(self):
        grocery = make_factor("grocery", 80, 1000)
        pois = {"grocery": [make_poi(1, ORIGIN.lat, ORIGIN.lng)]}
        cache = SpatialIndexCache()
        build_spatial_indexes(pois, [grocery], cache)
        build_spatial_indexes(pois, [grocery], cache)
        assert cache.builds == 1

    def test_normalize_stretches_to_unit_range(self):
        points = [HeatmapPoint(0, 0, 0.2), HeatmapPoint(0, 1, 0.4), HeatmapPoint(0, 2, 0.6)]
        values = [p.value for p in normalize_k_values(points)]
        assert values == pytest.approx([0.0, 0.5, 1.0])

    def test_normalize_flat_surface_unchanged(self):
        points = [HeatmapPoint(0, 0, 0.3), HeatmapPoint(0, 1, 0.3)]
        assert normalize_k_values(points) == points
        assert normalize_k_values([]) == []

    def test_k_stats(self):
        points = [HeatmapPoint(0, 0, 0.0), HeatmapPoint(0, 1, 1.0)]
        stats = k_stats(points)
        assert stats.min == 0.0 and stats.max == 1.0
        assert stats.avg == 0.5
        assert stats.std_dev == pytest.approx(0.5)
        assert k_stats([]) is None
        assert log_k_stats([]) is None
        assert math.isclose(log_k_stats(points).avg, 0.5)
