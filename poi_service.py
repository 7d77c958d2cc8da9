"""
POI fetching with primary/secondary fallback.

The primary source is the local POI database, the secondary is the live
Overpass API. A request goes to the primary first; an exception or an
empty result over every factor (coverage may simply be missing) triggers
exactly one secondary call. The result always reports which source
actually served the data so callers can decide what is safe to cache.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from cancellation import CancellationToken, check_cancelled
from errors import CancellationSignal, FetchError
from geo import POI, Bounds
from heatmap_config import Factor
from tiles import TileCoord, combined_bounds, lat_lng_to_tile

logger = logging.getLogger(__name__)


class DataSource(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass
class PoiFetchResult:
    pois_by_factor: Dict[str, List[POI]]
    source: DataSource

    @property
    def total(self) -> int:
        return sum(len(v) for v in self.pois_by_factor.values())


@dataclass
class TileFetchResult:
    # {tile: {factor_id: [POI]}}
    pois_by_tile: Dict[TileCoord, Dict[str, List[POI]]]
    source: DataSource

    @property
    def total(self) -> int:
        return sum(
            len(pois)
            for by_factor in self.pois_by_tile.values()
            for pois in by_factor.values()
        )


def _fill_missing(grouped: Dict[str, List[POI]], factors: Sequence[Factor]) -> Dict[str, List[POI]]:
    return {f.id: list(grouped.get(f.id, [])) for f in factors}


class PoiFetchService:
    """
    Fetches POIs for a set of factors over a bounding box.

    primary: object with query(factor_ids, bounds) -> {factor_id: [POI]}
    secondary: object with fetch_pois(factors, bounds, cancel) -> {factor_id: [POI]}
    """

    def __init__(self, primary, secondary):
        self.primary = primary
        self.secondary = secondary

    def fetch(
        self,
        factors: Sequence[Factor],
        bounds: Bounds,
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> PoiFetchResult:
        """
        Fetch POIs for factors inside bounds.

        Raises:
            FetchError: If the secondary source fails (after the primary
                failed or came back empty, or when it was asked for directly).
            CancellationSignal: If cancel fires.
        """
        factors = list(factors)
        check_cancelled(cancel)

        primary_error: Optional[Exception] = None
        if source == DataSource.PRIMARY and self.primary is not None:
            try:
                grouped = self.primary.query([f.id for f in factors], bounds)
                result = PoiFetchResult(_fill_missing(grouped, factors), DataSource.PRIMARY)
                if result.total > 0:
                    return result
                logger.info(
                    "Primary POI source returned nothing for %d factors, falling back to secondary",
                    len(factors),
                )
            except CancellationSignal:
                raise
            except FetchError as e:
                primary_error = e
                logger.info("Primary POI source failed (%s), falling back to secondary", e)
            except Exception as e:
                primary_error = FetchError(
                    f"Primary POI source raised {type(e).__name__}", source="primary", cause=e
                )
                logger.warning(
                    "Primary POI source raised %s, falling back to secondary",
                    type(e).__name__,
                    exc_info=True,
                )

        check_cancelled(cancel)
        try:
            grouped = self.secondary.fetch_pois(factors, bounds, cancel=cancel)
        except FetchError as e:
            if primary_error is None:
                raise
            raise FetchError(
                f"Both POI sources failed: primary: {primary_error}; secondary: {e.message}",
                source="primary+secondary",
                cause=e,
            ) from e

        return PoiFetchResult(_fill_missing(grouped, factors), DataSource.SECONDARY)

    def fetch_for_tiles(
        self,
        tiles: Sequence[TileCoord],
        factors: Sequence[Factor],
        source: DataSource = DataSource.PRIMARY,
        cancel: Optional[CancellationToken] = None,
    ) -> TileFetchResult:
        """
        One fetch over the combined bounds of tiles, redistributed per tile.

        Every returned POI lands in exactly one tile (the one containing it
        at the tiles' zoom); POIs outside the requested tiles are dropped.
        """
        unique_tiles = sorted(set(tiles))
        if not unique_tiles:
            return TileFetchResult({}, source)

        zoom = unique_tiles[0].z
        bounds = combined_bounds(unique_tiles)
        fetched = self.fetch(factors, bounds, source=source, cancel=cancel)

        pois_by_tile: Dict[TileCoord, Dict[str, List[POI]]] = {
            tile: {f.id: [] for f in factors} for tile in unique_tiles
        }
        dropped = 0
        for factor_id, pois in fetched.pois_by_factor.items():
            for poi in pois:
                owner = lat_lng_to_tile(poi.lat, poi.lng, zoom)
                bucket = pois_by_tile.get(owner)
                if bucket is None:
                    dropped += 1
                    continue
                bucket.setdefault(factor_id, []).append(poi)

        if dropped:
            logger.debug("Dropped %d POIs outside the requested tiles", dropped)
        return TileFetchResult(pois_by_tile, fetched.source)
