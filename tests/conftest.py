"""Shared fixtures for the heatmap test suite.

Points the POI database and the SQLite L2 cache at temp files, and
provides small factor / POI builders used across test modules.
"""

import atexit
import os
import tempfile

import pytest

# Point the DBs at temp files BEFORE importing modules that read Settings
_poi_db_fd, _poi_db_path = tempfile.mkstemp(suffix=".db")
os.close(_poi_db_fd)  # close the fd immediately; sqlite3 opens its own handle
_cache_db_fd, _cache_db_path = tempfile.mkstemp(suffix=".db")
os.close(_cache_db_fd)
os.environ["HEATMAP_DB_PATH"] = _poi_db_path
os.environ["HEATMAP_CACHE_DB_PATH"] = _cache_db_path
os.environ.pop("REDIS_URL", None)
for _path in (_poi_db_path, _cache_db_path):
    atexit.register(lambda p=_path: os.unlink(p) if os.path.exists(p) else None)

from geo import POI  # noqa: E402
from heatmap_config import Factor  # noqa: E402


class FakeTimer:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture()
def fake_timer():
    return FakeTimer()


@pytest.fixture()
def poi_db_path():
    return os.environ["HEATMAP_DB_PATH"]


def make_factor(factor_id="grocery", weight=50, max_distance=1000, enabled=True,
                osm_tags=("shop=supermarket",)):
    return Factor(
        id=factor_id,
        weight=weight,
        max_distance=max_distance,
        enabled=enabled,
        name=factor_id.title(),
        osm_tags=tuple(osm_tags),
    )


def make_poi(poi_id, lat, lng, **tags):
    return POI(id=str(poi_id), lat=lat, lng=lng, tags=dict(tags))


@pytest.fixture()
def grocery():
    return make_factor("grocery", 80, 1500, osm_tags=("shop=supermarket", "shop=convenience"))


@pytest.fixture()
def nightlife():
    return make_factor("nightlife", -40, 800, osm_tags=("amenity=bar", "amenity=nightclub"))
