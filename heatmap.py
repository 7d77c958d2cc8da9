"""
Heatmap service: the entry point callers use.

Pipeline for one viewport:
  validate bounds -> choose cell size -> POI tiles (viewport tiles
  expanded by the largest factor radius) -> resolve POIs through the
  tile cache -> build spatial indexes -> score grid -> (normalize)

Heatmap tiles are computed in batches: every tile key is checked in
parallel, POIs are resolved once for all uncached tiles, each tile is
scored and written back under a key that hashes everything that changes
K. Tiles are never viewport-normalized so neighbours stitch without seams.

build_heatmap_service() is the composition root: it owns the stores,
caches, rate limiter and Overpass client. Nothing is module-global.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cancellation import CancellationToken, RequestTracker, check_cancelled
from errors import CancellationSignal
from geo import POI, Bounds, HeatmapPoint, expand_bounds, filter_pois_to_bounds
from grid import choose_cell_size, generate_grid
from heatmap_config import Factor, HeatmapConfig, Settings, active_factors
from hm_trace import (
    TraceContext,
    clear_trace,
    get_trace,
    propagate_trace,
    set_trace,
    timed_stage,
)
from k_scorer import (
    NEUTRAL_K,
    build_spatial_indexes,
    calculate_heatmap,
    log_k_stats,
    normalize_k_values,
)
from kv_store import build_kv_store
from overpass_http import OverpassClient
from poi_database import PoiDatabase
from poi_service import DataSource, PoiFetchService
from poi_tile_cache import PoiTileCache, poi_list_codec
from spatial_index import SpatialIndexCache
from tiered_cache import JsonCodec, TwoLevelCache
from tiles import (
    TileCoord,
    expand_tiles,
    hash_heatmap_config,
    heatmap_tile_key,
    poi_tile_radius,
    poi_tiles_for_heatmap_tiles,
    tile_to_bounds,
    tiles_at_zoom,
    tiles_for_bounds,
)

logger = logging.getLogger(__name__)

# Slack around the viewport when returning POIs for display (~0.001 deg)
VIEWPORT_POI_BUFFER_M = 100.0


@dataclass
class HeatmapTileResult:
    points: List[HeatmapPoint]
    cached: bool
    source: Optional[DataSource]


@dataclass
class HeatmapBatchResult:
    tiles: Dict[TileCoord, HeatmapTileResult]
    pois: Dict[str, List[POI]]
    source: Optional[DataSource]     # None when every POI came from cache
    cached_tiles: int = 0
    computed_tiles: int = 0
    poi_tile_count: int = 0

    @property
    def total_points(self) -> int:
        return sum(len(r.points) for r in self.tiles.values())


def heatmap_tile_codec() -> JsonCodec:
    def to_plain(result: HeatmapTileResult) -> Dict[str, Any]:
        return {
            "points": [p.to_dict() for p in result.points],
            "source": result.source.value if result.source else None,
        }

    def from_plain(data: Dict[str, Any]) -> HeatmapTileResult:
        source = data.get("source")
        return HeatmapTileResult(
            points=[HeatmapPoint.from_dict(p) for p in data["points"]],
            cached=True,
            source=DataSource(source) if source else None,
        )

    return JsonCodec(to_plain, from_plain)


class _TraceScope:
    """Opens a TraceContext for the duration of a call if none is active."""

    def __init__(self, label: str):
        self.label = label
        self.ctx: Optional[TraceContext] = None

    def __enter__(self):
        if get_trace() is None:
            self.ctx = TraceContext(trace_id=f"{self.label}-{uuid.uuid4().hex[:8]}")
            set_trace(self.ctx)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.ctx is not None:
            self.ctx.log_summary()
            clear_trace()
        return False


class HeatmapService:
    def __init__(
        self,
        settings: Settings,
        poi_tile_cache: PoiTileCache,
        heatmap_cache,
        index_cache: Optional[SpatialIndexCache] = None,
        tracker: Optional[RequestTracker] = None,
    ):
        self.settings = settings
        self.poi_tile_cache = poi_tile_cache
        self.heatmap_cache = heatmap_cache
        self.index_cache = index_cache or SpatialIndexCache(
            settings.tiles.spatial_index_cell_size
        )
        self.tracker = tracker or RequestTracker()

    # ------------------------------------------------------------------
    # POIs
    # ------------------------------------------------------------------

    def get_pois_for_tiles(
        self,
        tiles: Sequence[TileCoord],
        factors: Sequence[Factor],
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, List[POI]]:
        return self.poi_tile_cache.get_pois_for_tiles(tiles, factors, source, cancel)

    def poi_tiles_for_bounds(self, bounds: Bounds, factors: Sequence[Factor]) -> List[TileCoord]:
        """POI tiles covering bounds plus enough rings for the largest factor radius."""
        tile_cfg = self.settings.tiles
        max_distance = max((f.max_distance for f in factors), default=0)
        radius = poi_tile_radius(
            max_distance,
            tile_cfg.poi_buffer_scale,
            tile_cfg.tile_size_meters,
            tile_cfg.max_poi_tile_radius,
        )
        return expand_tiles(tiles_for_bounds(bounds, tile_cfg.poi_zoom), radius)

    # ------------------------------------------------------------------
    # Viewport heatmap
    # ------------------------------------------------------------------

    def compute_heatmap(
        self,
        bounds: Bounds,
        factors: Sequence[Factor],
        config: HeatmapConfig = HeatmapConfig(),
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> List[HeatmapPoint]:
        """
        Score a grid over bounds.

        Raises:
            ValidationError: Invalid bounds or a viewport too large to grid.
            FetchError: Every POI source failed.
            CancellationSignal: cancel fired.
        """
        bounds.validate()
        with _TraceScope("heatmap"):
            points, _ = self._compute(bounds, factors, config, source, cancel)
            if config.normalize_to_viewport:
                # Viewport only; tiles are never normalized
                points = normalize_k_values(points)
            log_k_stats(points, f"{len(points)} points")
            return points

    def _compute(
        self,
        bounds: Bounds,
        factors: Sequence[Factor],
        config: HeatmapConfig,
        source: DataSource,
        cancel: Optional[CancellationToken],
    ):
        """Grid + POIs + score for bounds. Returns (points, data source)."""
        cell_size = choose_cell_size(bounds, config.grid_size, self.settings.grid)
        grid = generate_grid(bounds, cell_size)
        active = active_factors(list(factors))
        if not active:
            return [HeatmapPoint(p.lat, p.lng, NEUTRAL_K) for p in grid], None

        check_cancelled(cancel)
        poi_tiles = self.poi_tiles_for_bounds(bounds, active)
        resolved = timed_stage(
            "resolve_pois",
            self.poi_tile_cache.resolve,
            poi_tiles,
            active,
            source,
            cancel,
        )

        check_cancelled(cancel)
        indexes = timed_stage(
            "build_indexes",
            build_spatial_indexes,
            resolved.pois,
            active,
            self.index_cache,
        )
        points = timed_stage(
            "score",
            calculate_heatmap,
            grid,
            resolved.pois,
            active,
            config.curve,
            config.sensitivity,
            self.settings.no_poi_policy,
            self.settings.density,
            indexes,
        )
        return points, resolved.source

    # ------------------------------------------------------------------
    # Heatmap tiles
    # ------------------------------------------------------------------

    def heatmap_tiles_for_bounds(self, bounds: Bounds) -> List[TileCoord]:
        """Heatmap tiles (at the heatmap zoom) intersecting bounds."""
        return tiles_for_bounds(bounds.validate(), self.settings.tiles.heatmap_zoom)

    def poi_tiles_for_tiles(
        self, tiles: Sequence[TileCoord], factors: Sequence[Factor]
    ) -> List[TileCoord]:
        """POI tiles under the given heatmap tiles plus the factor-radius rings."""
        tile_cfg = self.settings.tiles
        max_distance = max((f.max_distance for f in factors), default=0)
        return poi_tiles_for_heatmap_tiles(
            tiles_at_zoom(tiles, tile_cfg.poi_zoom),
            max_distance,
            tile_cfg.poi_buffer_scale,
            tile_cfg.tile_size_meters,
            tile_cfg.max_poi_tile_radius,
        )

    def tile_config_hash(self, factors: Sequence[Factor], config: HeatmapConfig) -> str:
        return hash_heatmap_config(
            factors,
            config,
            extra={
                "density": asdict(self.settings.density),
                "no_poi": asdict(self.settings.no_poi_policy),
            },
        )

    def _validate_tile(self, tile: TileCoord) -> None:
        if not tile.is_valid():
            raise ValueError(f"Invalid tile {tile}")
        zoom = self.settings.tiles.heatmap_zoom
        if tile.z != zoom:
            raise ValueError(f"Heatmap tiles must be at zoom {zoom}, got {tile}")

    def compute_heatmap_tile(
        self,
        tile: TileCoord,
        factors: Sequence[Factor],
        config: HeatmapConfig = HeatmapConfig(),
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> HeatmapTileResult:
        """Score one heatmap tile, served from cache when possible."""
        batch = self.compute_heatmap_tiles(
            [tile], factors, config, source, cancel, include_pois=False
        )
        return batch.tiles[tile]

    def compute_heatmap_tiles(
        self,
        tiles: Sequence[TileCoord],
        factors: Sequence[Factor],
        config: HeatmapConfig = HeatmapConfig(),
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
        viewport_bounds: Optional[Bounds] = None,
        include_pois: bool = True,
    ) -> HeatmapBatchResult:
        """
        Score a batch of heatmap tiles with a single POI resolve.

        Every tile's cache entry is checked in parallel. POIs are resolved
        once over the POI tiles around the uncached heatmap tiles (around
        all tiles when everything is cached and POIs were asked for), each
        uncached tile is scored from those POIs and written back.

        Returned POIs are trimmed to viewport_bounds (plus a small buffer)
        when it is given.

        Raises:
            ValueError: A tile is invalid or not at the heatmap zoom.
            FetchError: Every POI source failed.
            CancellationSignal: cancel fired.
        """
        unique_tiles = sorted(set(tiles))
        for tile in unique_tiles:
            self._validate_tile(tile)
        if not unique_tiles:
            return HeatmapBatchResult(tiles={}, pois={}, source=None)

        config_hash = self.tile_config_hash(factors, config)
        keys = {tile: heatmap_tile_key(tile, config_hash) for tile in unique_tiles}
        active = active_factors(list(factors))
        check_cancelled(cancel)

        with _TraceScope("tiles"):
            results = {
                tile: hit
                for tile, hit in self._check_tiles(keys).items()
                if hit is not None
            }
            uncached = [t for t in unique_tiles if t not in results]

            pois: Dict[str, List[POI]] = {f.id: [] for f in active}
            data_source: Optional[DataSource] = None
            poi_tiles: List[TileCoord] = []
            if active and (uncached or include_pois):
                poi_tiles = self.poi_tiles_for_tiles(uncached or unique_tiles, active)
                resolved = timed_stage(
                    "resolve_pois",
                    self.poi_tile_cache.resolve,
                    poi_tiles,
                    active,
                    source,
                    cancel,
                )
                pois, data_source = resolved.pois, resolved.source

            if uncached:
                check_cancelled(cancel)
                computed = self._score_tiles(uncached, pois, active, config, data_source)
                self._write_tiles([(keys[tile], result) for tile, result in computed.items()])
                results.update(computed)

        if viewport_bounds is not None:
            pois = self.viewport_pois(pois, viewport_bounds)

        logger.info(
            "Heatmap tiles: %d requested, %d cached, %d computed from %d POI tiles",
            len(unique_tiles),
            len(unique_tiles) - len(uncached),
            len(uncached),
            len(poi_tiles),
        )
        return HeatmapBatchResult(
            tiles={tile: results[tile] for tile in unique_tiles},
            pois=pois,
            source=data_source,
            cached_tiles=len(unique_tiles) - len(uncached),
            computed_tiles=len(uncached),
            poi_tile_count=len(poi_tiles),
        )

    @staticmethod
    def viewport_pois(
        pois: Dict[str, List[POI]],
        bounds: Bounds,
        buffer_m: float = VIEWPORT_POI_BUFFER_M,
    ) -> Dict[str, List[POI]]:
        area = expand_bounds(bounds.validate(), buffer_m)
        return {factor_id: filter_pois_to_bounds(items, area) for factor_id, items in pois.items()}

    def _score_tiles(
        self,
        tiles: Sequence[TileCoord],
        pois: Dict[str, List[POI]],
        active: Sequence[Factor],
        config: HeatmapConfig,
        data_source: Optional[DataSource],
    ) -> Dict[TileCoord, HeatmapTileResult]:
        cell_size = config.grid_size or self.settings.grid.default_cell_size
        grids = {tile: generate_grid(tile_to_bounds(tile), cell_size) for tile in tiles}
        if not active:
            return {
                tile: HeatmapTileResult(
                    points=[HeatmapPoint(p.lat, p.lng, NEUTRAL_K) for p in grid],
                    cached=False,
                    source=None,
                )
                for tile, grid in grids.items()
            }

        indexes = timed_stage("build_indexes", build_spatial_indexes, pois, active, self.index_cache)

        def score_all() -> Dict[TileCoord, HeatmapTileResult]:
            # Never viewport-normalized
            return {
                tile: HeatmapTileResult(
                    points=calculate_heatmap(
                        grid,
                        pois,
                        active,
                        config.curve,
                        config.sensitivity,
                        self.settings.no_poi_policy,
                        self.settings.density,
                        indexes,
                    ),
                    cached=False,
                    source=data_source,
                )
                for tile, grid in grids.items()
            }

        return timed_stage("score", score_all)

    def _check_tiles(
        self, keys: Dict[TileCoord, str]
    ) -> Dict[TileCoord, Optional[HeatmapTileResult]]:
        get = propagate_trace(self.heatmap_cache.get)
        results: Dict[TileCoord, Optional[HeatmapTileResult]] = {}
        workers = max(1, min(self.settings.fetch_workers, len(keys)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(tile, key, pool.submit(get, key)) for tile, key in keys.items()]
            for tile, key, future in futures:
                try:
                    results[tile] = future.result()
                except Exception:
                    logger.warning("Heatmap tile cache check failed for %s", key, exc_info=True)
                    results[tile] = None
        return results

    def _write_tiles(self, writes: List[Tuple[str, HeatmapTileResult]]) -> None:
        if not writes:
            return
        put = propagate_trace(self.heatmap_cache.set)
        workers = max(1, min(self.settings.fetch_workers, len(writes)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(key, pool.submit(put, key, result)) for key, result in writes]
            for key, future in futures:
                try:
                    future.result()
                except Exception:
                    logger.warning("Heatmap tile cache write failed for %s", key, exc_info=True)

    # ------------------------------------------------------------------
    # Latest-request-wins
    # ------------------------------------------------------------------

    def run_latest(
        self,
        scope: str,
        fn: Callable[[CancellationToken], Any],
        on_result: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """
        Run fn(token) as the newest request in scope, cancelling the older one.

        Returns fn's result, or None if the request was cancelled or
        superseded before it finished. on_result only sees current results.
        """
        request_id, token = self.tracker.begin(scope)
        try:
            result = fn(token)
            if not self.tracker.is_current(scope, request_id):
                logger.debug("Discarding stale result %d for %s", request_id, scope)
                return None
            if on_result is not None:
                on_result(result)
            return result
        except CancellationSignal as e:
            logger.debug("Request %d for %s cancelled: %s", request_id, scope, e)
            return None
        finally:
            self.tracker.finish(scope, request_id)


def build_heatmap_service(settings: Optional[Settings] = None) -> HeatmapService:
    """Wire stores, caches and clients from settings (env when omitted)."""
    settings = settings or Settings.from_env()
    cache_cfg = settings.cache

    store = build_kv_store(
        settings.redis_url,
        settings.cache_db_path,
        jitter_seconds=cache_cfg.ttl_jitter_seconds,
    )
    poi_cache = TwoLevelCache(
        "poi",
        store,
        codec=poi_list_codec(),
        max_size=cache_cfg.poi_l1_max_size,
        ttl_seconds=cache_cfg.poi_ttl_seconds,
    )
    heatmap_cache = TwoLevelCache(
        "heatmap",
        store,
        codec=heatmap_tile_codec(),
        max_size=cache_cfg.heatmap_l1_max_size,
        ttl_seconds=cache_cfg.heatmap_ttl_seconds,
    )

    service = PoiFetchService(
        primary=PoiDatabase(settings.poi_db_path),
        secondary=OverpassClient(settings.overpass),
    )
    tile_cache = PoiTileCache(poi_cache, service, max_workers=settings.fetch_workers)

    logger.info(
        "Heatmap service ready (poi_db=%s, l2=%s)",
        settings.poi_db_path,
        "redis" if settings.redis_url else settings.cache_db_path,
    )
    return HeatmapService(
        settings,
        tile_cache,
        heatmap_cache,
        index_cache=SpatialIndexCache(settings.tiles.spatial_index_cell_size),
    )
