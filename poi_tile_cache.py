"""
Tile-batched POI cache.

POIs are cached per (tile, factor). A request for a set of tiles:
  1. checks every (tile, factor) key in parallel
  2. fetches all misses in ONE call over the combined bounds of the
     missing tiles, for the union of missing factors
  3. writes each (tile, factor) slice back in parallel
  4. merges hits and fetched slices per factor, deduplicated by
     rounded coordinates (neighbouring tiles may share a POI)

Cache checks and writes settle independently: a failure is logged and
treated as a miss (or skipped write), never fatal to the request.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from cancellation import CancellationToken, check_cancelled
from geo import POI, dedupe_pois
from heatmap_config import Factor
from hm_trace import propagate_trace
from poi_service import DataSource, PoiFetchService
from tiered_cache import JsonCodec
from tiles import TileCoord, poi_tile_key

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


def poi_list_codec() -> JsonCodec:
    """Codec for a cached list of POIs."""
    return JsonCodec(
        to_plain=lambda pois: [p.to_dict() for p in pois],
        from_plain=lambda items: [POI.from_dict(item) for item in items],
    )


@dataclass
class PoiTileResult:
    pois: Dict[str, List[POI]]
    source: Optional[DataSource]     # None when everything came from cache
    cache_hits: int = 0
    cache_misses: int = 0


class PoiTileCache:
    def __init__(
        self,
        cache,
        service: PoiFetchService,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.cache = cache
        self.service = service
        self.max_workers = max(1, max_workers)

    def get_pois_for_tiles(
        self,
        tiles: Sequence[TileCoord],
        factors: Sequence[Factor],
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, List[POI]]:
        return self.resolve(tiles, factors, source, cancel).pois

    def resolve(
        self,
        tiles: Sequence[TileCoord],
        factors: Sequence[Factor],
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> PoiTileResult:
        """Resolve POIs for every (tile, factor), fetching only what's missing.

        Raises:
            FetchError: If misses exist and every POI source failed.
            CancellationSignal: If cancel fires before or during the fetch.
        """
        unique_tiles = sorted(set(tiles))
        factors = list(factors)
        merged: Dict[str, List[POI]] = {f.id: [] for f in factors}
        if not unique_tiles or not factors:
            return PoiTileResult(merged, None)

        check_cancelled(cancel)

        # 1. Parallel cache checks
        pairs = [(tile, f) for tile in unique_tiles for f in factors]
        cached = self._check_all(pairs)

        missing_pairs = []
        for (tile, factor), pois in zip(pairs, cached):
            if pois is None:
                missing_pairs.append((tile, factor))
            else:
                merged[factor.id].extend(pois)

        hits = len(pairs) - len(missing_pairs)
        if not missing_pairs:
            logger.debug("POI tile cache: all %d entries hit", hits)
            return PoiTileResult(self._dedupe(merged), None, cache_hits=hits)

        # 2. One fetch for the unique missing tiles and factors
        missing_tiles = sorted({tile for tile, _ in missing_pairs})
        missing_ids = {f.id for _, f in missing_pairs}
        missing_factors = [f for f in factors if f.id in missing_ids]

        check_cancelled(cancel)
        fetched = self.service.fetch_for_tiles(
            missing_tiles, missing_factors, source=source, cancel=cancel
        )
        logger.info(
            "POI tile cache: %d hits, %d misses (%d tiles, %d factors) served by %s",
            hits,
            len(missing_pairs),
            len(missing_tiles),
            len(missing_factors),
            fetched.source.value,
        )

        # 3. Write back, unless the primary came back empty
        writes: List[Tuple[str, List[POI]]] = []
        for tile, factor in missing_pairs:
            pois = fetched.pois_by_tile.get(tile, {}).get(factor.id, [])
            merged[factor.id].extend(pois)
            writes.append((poi_tile_key(tile, factor.id), pois))

        if fetched.source == DataSource.PRIMARY and fetched.total == 0:
            logger.info("POI tile cache: primary returned no POIs, not caching")
        else:
            self._write_all(writes)

        return PoiTileResult(
            self._dedupe(merged),
            fetched.source,
            cache_hits=hits,
            cache_misses=len(missing_pairs),
        )

    def _check_all(self, pairs: List[Tuple[TileCoord, Factor]]) -> List[Optional[List[POI]]]:
        keys = [poi_tile_key(tile, f.id) for tile, f in pairs]
        get = propagate_trace(self.cache.get)
        results: List[Optional[List[POI]]] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(keys))) as pool:
            futures = [pool.submit(get, key) for key in keys]
            # Collect results in order; each check fails independently
            for key, future in zip(keys, futures):
                try:
                    results.append(future.result())
                except Exception:
                    logger.warning("POI tile cache check failed for %s", key, exc_info=True)
                    results.append(None)
        return results

    def _write_all(self, writes: List[Tuple[str, List[POI]]]) -> None:
        if not writes:
            return
        put = propagate_trace(self.cache.set)
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(writes))) as pool:
            futures = [(key, pool.submit(put, key, pois)) for key, pois in writes]
            for key, future in futures:
                try:
                    future.result()
                except Exception:
                    logger.warning("POI tile cache write failed for %s", key, exc_info=True)

    @staticmethod
    def _dedupe(merged: Dict[str, List[POI]]) -> Dict[str, List[POI]]:
        return {factor_id: dedupe_pois(pois) for factor_id, pois in merged.items()}
