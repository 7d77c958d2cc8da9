"""
SQLite-backed POI store (the primary POI source).

Holds pre-ingested OpenStreetMap POIs in a single ``osm_pois`` table,
one row per (POI, factor). Queries filter by factor id and a lat/lng
bounding box using a compound B-tree index. Coverage may be partial;
an empty result is ambiguous (nothing there, or not ingested yet) and
callers fall back to the live Overpass source.

Rows that fail validation (missing id, non-finite or out-of-range
coordinates, unparsable tags) are dropped with a warning, never fatal.
"""

import json
import logging
import math
import os
import sqlite3
import time
from typing import Dict, Iterable, List, Optional, Sequence

from errors import FetchError, ValidationError
from geo import POI, Bounds
from hm_trace import get_trace

logger = logging.getLogger(__name__)

SOURCE_NAME = "primary"


def row_to_poi(row: sqlite3.Row) -> POI:
    """Convert a database row to a POI.

    Raises:
        ValidationError: If the row is malformed.
    """
    poi_id = row["id"]
    if poi_id is None or str(poi_id) == "":
        raise ValidationError("row has no id")

    try:
        lat = float(row["lat"])
        lng = float(row["lng"])
    except (TypeError, ValueError):
        raise ValidationError(f"row {poi_id} has non-numeric coordinates")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError(f"row {poi_id} has non-finite coordinates")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError(f"row {poi_id} coordinates out of range ({lat}, {lng})")

    tags_json = row["tags"]
    tags: Dict[str, str] = {}
    if tags_json:
        try:
            parsed = json.loads(tags_json)
        except (TypeError, ValueError):
            raise ValidationError(f"row {poi_id} has unparsable tags")
        if not isinstance(parsed, dict):
            raise ValidationError(f"row {poi_id} tags are not an object")
        tags = {str(k): str(v) for k, v in parsed.items()}

    return POI(id=str(poi_id), lat=lat, lng=lng, tags=tags, name=row["name"] or None)


class PoiDatabase:
    """
    Manages the SQLite POI database.

    Usage:
        db = PoiDatabase("data/pois.db")
        if db.is_available():
            pois = db.query(["grocery", "transit"], bounds)
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._available: Optional[bool] = None
        self.rejected_rows = 0

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self) -> None:
        """Create the schema if it doesn't exist. Safe to call on every startup."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS osm_pois (
                    id          TEXT NOT NULL,
                    factor_id   TEXT NOT NULL,
                    lat         REAL NOT NULL,
                    lng         REAL NOT NULL,
                    name        TEXT,
                    tags        TEXT,
                    PRIMARY KEY (id, factor_id)
                );
                CREATE INDEX IF NOT EXISTS idx_osm_pois_factor_lat_lng
                    ON osm_pois(factor_id, lat, lng);
            """)
            conn.commit()
        finally:
            conn.close()
        self._available = True

    def is_available(self) -> bool:
        """Whether the database file exists. Cached after the first positive check."""
        if self._available:
            return True
        if not os.path.exists(self.db_path):
            logger.info("POI DB not found at %s", self.db_path)
            return False
        self._available = True
        return True

    def upsert_pois(self, factor_id: str, pois: Iterable[POI]) -> int:
        """Insert or replace POIs for a factor. Returns the number written."""
        rows = [
            (p.id, factor_id, p.lat, p.lng, p.name, json.dumps(dict(p.tags)))
            for p in pois
        ]
        conn = self._connect()
        try:
            conn.executemany(
                """INSERT OR REPLACE INTO osm_pois (id, factor_id, lat, lng, name, tags)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                rows,
            )
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def query(self, factor_ids: Sequence[str], bounds: Bounds) -> Dict[str, List[POI]]:
        """
        POIs for each factor inside bounds. Every requested factor gets a key.

        Raises:
            FetchError: If the database is missing or the query fails.
        """
        grouped: Dict[str, List[POI]] = {fid: [] for fid in factor_ids}
        if not factor_ids:
            return grouped
        if not self.is_available():
            raise FetchError("POI database not available", source=SOURCE_NAME)

        trace = get_trace()
        t0 = time.time()
        placeholders = ",".join("?" for _ in factor_ids)
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    f"""
                    SELECT id, factor_id, lat, lng, name, tags
                    FROM osm_pois
                    WHERE factor_id IN ({placeholders})
                      AND lat BETWEEN ? AND ?
                      AND lng BETWEEN ? AND ?
                    """,
                    (*factor_ids, bounds.south, bounds.north, bounds.west, bounds.east),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            elapsed_ms = int((time.time() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service="poi_db",
                    endpoint="query",
                    elapsed_ms=elapsed_ms,
                    status_code=0,
                    provider_status="exception",
                )
            raise FetchError("POI database query failed", source=SOURCE_NAME, cause=e) from e

        rejected = 0
        for row in rows:
            try:
                poi = row_to_poi(row)
            except ValidationError as e:
                rejected += 1
                logger.warning("Dropping invalid POI row (%s): %s", row["factor_id"], e)
                continue
            bucket = grouped.get(row["factor_id"])
            if bucket is not None:
                bucket.append(poi)

        if rejected:
            self.rejected_rows += rejected
            logger.warning(
                "POI DB query dropped %d of %d rows as invalid", rejected, len(rows)
            )

        elapsed_ms = int((time.time() - t0) * 1000)
        if trace:
            trace.record_api_call(
                service="poi_db",
                endpoint="query",
                elapsed_ms=elapsed_ms,
                status_code=200,
                provider_status="ok",
            )
        logger.debug(
            "POI DB query: %d factors, %d rows in %dms",
            len(factor_ids),
            len(rows) - rejected,
            elapsed_ms,
        )
        return grouped
