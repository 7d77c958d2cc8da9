"""Unit tests for geo.py and errors.py: value types and helpers."""

import math

import pytest

from errors import FetchError, HeatmapError, ValidationError
from geo import (
    POI,
    Bounds,
    HeatmapPoint,
    Point,
    dedupe_pois,
    distance,
    expand_bounds,
    filter_pois_to_bounds,
    haversine,
)
from conftest import make_poi


class TestHaversine:
    def test_zero(self):
        assert haversine(52.0, 21.0, 52.0, 21.0) == 0.0

    def test_one_degree_latitude(self):
        assert haversine(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        a, b = Point(52.23, 21.01), Point(50.06, 19.94)
        assert distance(a, b) == pytest.approx(distance(b, a))
        assert distance(a, b) == pytest.approx(252_000, rel=0.02)


class TestBounds:
    def test_validate_ok(self):
        bounds = Bounds(north=1, south=0, east=1, west=0)
        assert bounds.validate() is bounds

    @pytest.mark.parametrize("bounds", [
        Bounds(north=0, south=1, east=1, west=0),
        Bounds(north=1, south=0, east=0, west=1),
        Bounds(north=math.nan, south=0, east=1, west=0),
        Bounds(north=95, south=0, east=1, west=0),
    ])
    def test_validate_rejects(self, bounds):
        with pytest.raises(ValidationError):
            bounds.validate()

    def test_expand_bounds(self):
        bounds = Bounds(north=52.231, south=52.229, east=21.011, west=21.009)
        grown = expand_bounds(bounds, 1000)
        assert grown.north > bounds.north and grown.south < bounds.south
        assert grown.east > bounds.east and grown.west < bounds.west

    def test_filter_pois(self):
        bounds = Bounds(north=1, south=0, east=1, west=0)
        pois = [make_poi("in", 0.5, 0.5), make_poi("out", 2, 2)]
        assert [p.id for p in filter_pois_to_bounds(pois, bounds)] == ["in"]


class TestValueTypes:
    def test_poi_roundtrip(self):
        poi = POI(id="node/1", lat=52.0, lng=21.0, tags={"shop": "bakery"}, name="B")
        assert POI.from_dict(poi.to_dict()) == poi

    def test_poi_is_hashable_despite_tags(self):
        assert len({make_poi(1, 1.0, 1.0, a="x"), make_poi(1, 1.0, 1.0, a="y")}) == 1

    def test_heatmap_point_roundtrip(self):
        point = HeatmapPoint(lat=1.5, lng=2.5, value=0.25)
        assert HeatmapPoint.from_dict(point.to_dict()) == point

    def test_dedupe_by_rounded_coordinates(self):
        pois = [
            make_poi("a", 52.1234561, 21.0),
            make_poi("b", 52.1234564, 21.0),
            make_poi("c", 52.123457, 21.0),
        ]
        assert [p.id for p in dedupe_pois(pois)] == ["a", "c"]


class TestErrors:
    def test_fetch_error_fields(self):
        cause = ValueError("bad")
        err = FetchError("failed", source="secondary", cause=cause)
        assert isinstance(err, HeatmapError)
        assert err.source == "secondary"
        assert err.cause is cause
        assert str(err) == "failed [source=secondary]: bad"

    def test_fetch_error_without_cause(self):
        assert str(FetchError("failed", source="primary")) == "failed [source=primary]"
