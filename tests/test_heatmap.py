"""Integration tests for heatmap.py: the service pipeline end to end.

The POI database is a real temp SQLite file; Overpass is mocked.
"""

import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from cancellation import CancellationToken
from distance_curves import DistanceCurve
from errors import CancellationSignal, ValidationError
from geo import Bounds
from heatmap import HeatmapService, HeatmapTileResult, build_heatmap_service, heatmap_tile_codec
from heatmap_config import HeatmapConfig, Settings
from hm_trace import TraceContext, clear_trace, set_trace
from k_scorer import NEUTRAL_K, calculate_heatmap
from poi_database import PoiDatabase
from poi_service import DataSource, PoiFetchService
from poi_tile_cache import PoiTileCache, poi_list_codec
from tiered_cache import L1OnlyCache
from tiles import TileCoord, lat_lng_to_tile
from conftest import make_factor, make_poi

VIEWPORT = Bounds(north=52.235, south=52.225, east=21.02, west=21.00)


@pytest.fixture()
def poi_db(tmp_path):
    db = PoiDatabase(str(tmp_path / "pois.db"))
    db.init_db()
    db.upsert_pois("grocery", [
        make_poi("n/1", 52.230, 21.010, shop="supermarket"),
        make_poi("n/2", 52.228, 21.004, shop="convenience"),
    ])
    return db


@pytest.fixture()
def overpass():
    client = MagicMock()
    client.fetch_pois.return_value = {}
    return client


@pytest.fixture()
def service(poi_db, overpass):
    settings = Settings()
    poi_cache = L1OnlyCache("poi", codec=poi_list_codec())
    heatmap_cache = L1OnlyCache("heatmap", codec=heatmap_tile_codec())
    tile_cache = PoiTileCache(poi_cache, PoiFetchService(poi_db, overpass), max_workers=4)
    return HeatmapService(settings, tile_cache, heatmap_cache)


@pytest.fixture()
def grocery():
    return make_factor("grocery", 80, 1000, osm_tags=("shop=supermarket", "shop=convenience"))


# =========================================================================
# compute_heatmap
# =========================================================================

class TestComputeHeatmap:
    def test_scores_grid_from_primary(self, service, grocery, overpass):
        points = service.compute_heatmap(VIEWPORT, [grocery])

        assert points
        assert all(0.0 <= p.value <= 1.0 for p in points)
        assert all(VIEWPORT.contains(p.lat, p.lng) for p in points)
        overpass.fetch_pois.assert_not_called()

        nearest = min(points, key=lambda p: (p.lat - 52.230) ** 2 + (p.lng - 21.010) ** 2)
        farthest = max(points, key=lambda p: (p.lat - 52.230) ** 2 + (p.lng - 21.010) ** 2)
        assert nearest.value < farthest.value

    def test_no_active_factors_is_neutral(self, service):
        points = service.compute_heatmap(VIEWPORT, [make_factor("grocery", 0)])
        assert points
        assert {p.value for p in points} == {NEUTRAL_K}

    def test_invalid_bounds_rejected(self, service, grocery):
        with pytest.raises(ValidationError):
            service.compute_heatmap(Bounds(north=52.0, south=53.0, east=21.0, west=20.0), [grocery])

    def test_normalize_to_viewport(self, service, grocery):
        points = service.compute_heatmap(VIEWPORT, [grocery], HeatmapConfig(normalize_to_viewport=True))
        values = [p.value for p in points]
        assert min(values) == pytest.approx(0.0)
        assert max(values) == pytest.approx(1.0)

    def test_falls_back_to_overpass_when_primary_empty(self, service, overpass):
        transit = make_factor("transit", 60, 800, osm_tags=("railway=station",))
        overpass.fetch_pois.return_value = {"transit": [make_poi("way/9", 52.229, 21.01)]}

        points = service.compute_heatmap(VIEWPORT, [transit])

        assert overpass.fetch_pois.call_count == 1
        assert min(p.value for p in points) < 0.5

    def test_reuses_spatial_indexes(self, service, grocery):
        service.compute_heatmap(VIEWPORT, [grocery])
        service.compute_heatmap(VIEWPORT, [grocery])
        assert service.index_cache.builds == 1

    def test_records_stages_on_active_trace(self, service, grocery):
        ctx = TraceContext(trace_id="hm-1")
        set_trace(ctx)
        try:
            service.compute_heatmap(VIEWPORT, [grocery])
        finally:
            clear_trace()
        assert [s.stage_name for s in ctx.stages] == ["resolve_pois", "build_indexes", "score"]
        assert any(c.service == "poi_db" for c in ctx.calls)

    def test_cancelled_request_raises(self, service, grocery):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancellationSignal):
            service.compute_heatmap(VIEWPORT, [grocery], cancel=token)

    def test_poi_tiles_cover_factor_radius(self, service, grocery):
        tiles = service.poi_tiles_for_bounds(VIEWPORT, [grocery])
        center = lat_lng_to_tile(52.23, 21.01, service.settings.tiles.poi_zoom)
        xs = {t.x for t in tiles}
        assert center in tiles
        assert center.x - 1 in xs and center.x + 1 in xs


# =========================================================================
# compute_heatmap_tile
# =========================================================================

class TestHeatmapTiles:
    def test_tile_cached_under_config_hash(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)

        first = service.compute_heatmap_tile(tile, [grocery])
        second = service.compute_heatmap_tile(tile, [grocery])

        assert first.cached is False
        assert first.source == DataSource.PRIMARY
        assert second.cached is True
        assert second.points == first.points

    def test_config_change_misses_cache(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)
        service.compute_heatmap_tile(tile, [grocery])
        other = service.compute_heatmap_tile(tile, [grocery], HeatmapConfig(curve=DistanceCurve.LINEAR))
        assert other.cached is False

    def test_disabled_factor_shares_cache_entry(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)
        service.compute_heatmap_tile(tile, [grocery])
        again = service.compute_heatmap_tile(tile, [grocery, make_factor("bars", -30, enabled=False)])
        assert again.cached is True

    def test_tiles_are_never_normalized(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)
        plain = service.compute_heatmap_tile(tile, [grocery])
        flagged = service.compute_heatmap_tile(tile, [grocery], HeatmapConfig(normalize_to_viewport=True))
        assert [p.value for p in flagged.points] == [p.value for p in plain.points]

    def test_adjacent_tiles_share_edge_points(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)
        east = TileCoord(tile.z, tile.x + 1, tile.y)
        left = service.compute_heatmap_tile(tile, [grocery]).points
        right = service.compute_heatmap_tile(east, [grocery]).points
        edge_lng = max(p.lng for p in left)
        shared = {(p.lat, p.lng): p.value for p in left if p.lng == edge_lng}
        overlap = {(p.lat, p.lng): p.value for p in right if (p.lat, p.lng) in shared}
        for key, value in overlap.items():
            assert shared[key] == pytest.approx(value)

    def test_invalid_tile(self, service, grocery):
        with pytest.raises(ValueError):
            service.compute_heatmap_tile(TileCoord(2, 9, 0), [grocery])

    def test_codec_roundtrip(self):
        codec = heatmap_tile_codec()
        original = HeatmapTileResult(points=[], cached=False, source=DataSource.SECONDARY)
        restored = codec.decode(codec.encode(original))
        assert restored.cached is True
        assert restored.source == DataSource.SECONDARY

    def test_wrong_zoom_rejected(self, service, grocery):
        with pytest.raises(ValueError, match="zoom"):
            service.compute_heatmap_tile(lat_lng_to_tile(52.23, 21.01, 12), [grocery])

    def test_poi_ring_is_symmetric_around_tile(self, service, grocery):
        tile = lat_lng_to_tile(52.23, 21.01, 13)
        poi_tiles = service.poi_tiles_for_tiles([tile], [grocery])
        # 1000 m * 2.0 buffer over 2400 m tiles -> one ring
        assert {t.x for t in poi_tiles} == {tile.x - 1, tile.x, tile.x + 1}
        assert {t.y for t in poi_tiles} == {tile.y - 1, tile.y, tile.y + 1}
        assert len(poi_tiles) == 9


# =========================================================================
# compute_heatmap_tiles
# =========================================================================

def _row_of_tiles(count):
    first = lat_lng_to_tile(52.23, 21.01, 13)
    return [TileCoord(first.z, first.x + i, first.y) for i in range(count)]


class TestHeatmapTileBatch:
    def test_uncached_tiles_share_one_fetch(self, service, grocery):
        fetch_service = service.poi_tile_cache.service
        spy = MagicMock(wraps=fetch_service.fetch_for_tiles)
        fetch_service.fetch_for_tiles = spy
        tiles = _row_of_tiles(3)

        batch = service.compute_heatmap_tiles(tiles, [grocery])

        assert spy.call_count == 1
        assert batch.computed_tiles == 3
        assert batch.cached_tiles == 0
        assert batch.source == DataSource.PRIMARY
        assert set(batch.tiles) == set(tiles)
        assert all(r.cached is False and r.points for r in batch.tiles.values())
        assert batch.total_points == sum(len(r.points) for r in batch.tiles.values())
        assert batch.poi_tile_count == len(service.poi_tiles_for_tiles(tiles, [grocery]))

    def test_cached_tiles_are_not_rescored(self, service, grocery):
        cached_tile, fresh_tile = _row_of_tiles(2)
        service.compute_heatmap_tile(cached_tile, [grocery])

        with patch("heatmap.calculate_heatmap", wraps=calculate_heatmap) as scorer:
            batch = service.compute_heatmap_tiles([cached_tile, fresh_tile], [grocery])

        assert scorer.call_count == 1
        assert batch.cached_tiles == 1
        assert batch.computed_tiles == 1
        assert batch.tiles[cached_tile].cached is True
        assert batch.tiles[fresh_tile].cached is False

    def test_computed_tiles_written_back(self, service, grocery):
        tiles = _row_of_tiles(2)
        service.compute_heatmap_tiles(tiles, [grocery])
        again = service.compute_heatmap_tiles(tiles, [grocery])
        assert again.cached_tiles == 2
        assert again.computed_tiles == 0

    def test_all_cached_without_pois_skips_resolve(self, service, grocery):
        tiles = _row_of_tiles(2)
        service.compute_heatmap_tiles(tiles, [grocery])
        spy = MagicMock(wraps=service.poi_tile_cache.resolve)
        service.poi_tile_cache.resolve = spy

        batch = service.compute_heatmap_tiles(tiles, [grocery], include_pois=False)

        spy.assert_not_called()
        assert batch.cached_tiles == 2
        assert batch.poi_tile_count == 0

    def test_batch_matches_single_tile(self, service, grocery):
        tiles = _row_of_tiles(2)
        batch = service.compute_heatmap_tiles(tiles, [grocery])
        service.heatmap_cache.clear_l1()
        single = service.compute_heatmap_tile(tiles[1], [grocery])
        assert [p.value for p in single.points] == pytest.approx(
            [p.value for p in batch.tiles[tiles[1]].points]
        )

    def test_pois_trimmed_to_viewport(self, service, grocery):
        viewport = Bounds(north=52.2305, south=52.2295, east=21.0105, west=21.0095)
        batch = service.compute_heatmap_tiles(
            _row_of_tiles(1), [grocery], viewport_bounds=viewport
        )
        assert [p.id for p in batch.pois["grocery"]] == ["n/1"]

    def test_pois_untrimmed_without_viewport(self, service, grocery):
        batch = service.compute_heatmap_tiles(_row_of_tiles(1), [grocery])
        assert sorted(p.id for p in batch.pois["grocery"]) == ["n/1", "n/2"]

    def test_no_active_factors_is_neutral(self, service):
        batch = service.compute_heatmap_tiles(_row_of_tiles(2), [make_factor("grocery", 0)])
        assert batch.source is None
        assert all({p.value for p in r.points} == {NEUTRAL_K} for r in batch.tiles.values())

    def test_empty_batch(self, service, grocery):
        batch = service.compute_heatmap_tiles([], [grocery])
        assert batch.tiles == {}
        assert batch.computed_tiles == 0

    def test_heatmap_tiles_for_bounds(self, service):
        tiles = service.heatmap_tiles_for_bounds(VIEWPORT)
        assert tiles
        assert all(t.z == service.settings.tiles.heatmap_zoom for t in tiles)
        assert lat_lng_to_tile(52.23, 21.01, 13) in tiles


# =========================================================================
# run_latest
# =========================================================================

class TestRunLatest:
    def test_current_result_delivered(self, service):
        received = []
        assert service.run_latest("viewport", lambda token: 42, received.append) == 42
        assert received == [42]

    def test_cancellation_swallowed(self, service):
        def fn(token):
            raise CancellationSignal("superseded")

        received = []
        assert service.run_latest("viewport", fn, received.append) is None
        assert received == []

    def test_stale_result_discarded(self, service):
        started = threading.Event()
        proceed = threading.Event()
        received = []
        outcomes = {}

        def slow(token):
            started.set()
            proceed.wait(5)
            return "old"

        def run_old():
            outcomes["old"] = service.run_latest("viewport", slow, received.append)

        worker = threading.Thread(target=run_old)
        worker.start()
        assert started.wait(5)
        outcomes["new"] = service.run_latest("viewport", lambda token: "new", received.append)
        proceed.set()
        worker.join(5)

        assert outcomes == {"old": None, "new": "new"}
        assert received == ["new"]

    def test_superseded_token_is_cancelled(self, service):
        tokens = []

        def capture(token):
            tokens.append(token)
            if len(tokens) == 1:
                service.run_latest("viewport", capture)
            return len(tokens)

        service.run_latest("viewport", capture)
        assert tokens[0].cancelled is True
        assert tokens[1].cancelled is False

    def test_other_errors_propagate(self, service):
        def fn(token):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            service.run_latest("viewport", fn)
        assert service.tracker.is_current("viewport", 1) is False


# =========================================================================
# Composition root
# =========================================================================

class TestBuildHeatmapService:
    def test_wires_from_settings(self, tmp_path):
        settings = replace(
            Settings(),
            poi_db_path=str(tmp_path / "pois.db"),
            cache_db_path=str(tmp_path / "cache.db"),
        )
        service = build_heatmap_service(settings)
        assert isinstance(service, HeatmapService)
        assert service.poi_tile_cache.service.primary.db_path == settings.poi_db_path
        assert service.heatmap_cache.name == "heatmap"

    @patch("heatmap.Settings.from_env")
    def test_reads_env_when_no_settings(self, mock_from_env, tmp_path):
        mock_from_env.return_value = replace(
            Settings(), cache_db_path=str(tmp_path / "cache.db")
        )
        build_heatmap_service()
        mock_from_env.assert_called_once()
