"""
Configuration for the heatmap scoring core.

Owns every numeric constant that affects K values, cache lifetimes and
upstream fetch behaviour, plus the catalog of POI factors and the
named factor profiles.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files. Deployment-specific values
(paths, URLs, TTLs) come from the environment via Settings.from_env();
a local .env file is honoured through python-dotenv.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from distance_curves import DistanceCurve


# =============================================================================
# Factors
# =============================================================================

@dataclass(frozen=True)
class Factor:
    """One weighted, signed proximity criterion.

    weight > 0: closer is better. weight < 0: farther is better.
    weight == 0 behaves exactly like enabled=False.
    """
    id: str
    weight: float
    max_distance: float  # meters
    enabled: bool = True
    name: str = ""
    osm_tags: Tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return self.enabled and self.weight != 0

    @property
    def is_negative(self) -> bool:
        return self.weight < 0


@dataclass(frozen=True)
class FactorDefinition:
    """Catalog entry describing a POI category and its defaults."""
    id: str
    name: str
    osm_tags: Tuple[str, ...]
    category: str  # "essential" | "lifestyle" | "environment"
    default_weight: float
    default_max_distance: float
    default_enabled: bool

    def to_factor(self) -> Factor:
        return Factor(
            id=self.id,
            weight=self.default_weight,
            max_distance=self.default_max_distance,
            enabled=self.default_enabled,
            name=self.name,
            osm_tags=self.osm_tags,
        )


@dataclass(frozen=True)
class FactorOverride:
    weight: Optional[float] = None
    max_distance: Optional[float] = None
    enabled: Optional[bool] = None


@dataclass(frozen=True)
class FactorProfile:
    """A named preset that overrides catalog defaults."""
    id: str
    name: str
    description: str
    overrides: Dict[str, FactorOverride] = field(default_factory=dict)


# =============================================================================
# Scoring parameters
# =============================================================================

@dataclass(frozen=True)
class DensityBonusConfig:
    """Reward for having several positive POIs nearby.

    bonus = max_bonus * (1 - 1 / ((count - 1) / scale + 1)), counted
    within max_distance * radius_ratio. Zero when count <= 1.
    """
    radius_ratio: float = 0.5
    max_bonus: float = 0.15
    scale: float = 3.0


@dataclass(frozen=True)
class NoPoiPolicy:
    """K contribution of a factor that has no POIs in range.

    Defaults treat a missing amenity as worst-case and a missing
    nuisance as best-case. No data and no amenity look the same here.
    """
    positive_value: float = 1.0
    negative_value: float = 0.0

    def value_for(self, factor: Factor) -> float:
        return self.negative_value if factor.is_negative else self.positive_value


@dataclass(frozen=True)
class HeatmapConfig:
    """Per-request scoring options. Everything here feeds the tile config hash."""
    curve: DistanceCurve = DistanceCurve.LOG
    sensitivity: float = 1.0
    normalize_to_viewport: bool = False
    grid_size: Optional[float] = None  # meters; None = adaptive


@dataclass(frozen=True)
class GridConfig:
    default_cell_size: float = 200.0  # meters
    min_cell_size: float = 100.0
    max_cell_size: float = 300.0
    target_point_count: int = 5000
    max_grid_points: int = 50_000
    grid_points_tolerance: float = 1.5
    fallback_min_cell_size: float = 50.0
    fallback_max_cell_size: float = 2000.0


@dataclass(frozen=True)
class TileConfig:
    poi_zoom: int = 13
    heatmap_zoom: int = 13
    tile_size_meters: float = 2400.0  # approx. edge length at zoom 13 in Poland
    poi_buffer_scale: float = 2.0
    max_poi_tile_radius: int = 10
    spatial_index_cell_size: float = 0.01  # degrees


@dataclass(frozen=True)
class CacheConfig:
    poi_ttl_seconds: int = 24 * 60 * 60
    heatmap_ttl_seconds: int = 24 * 60 * 60
    poi_l1_max_size: int = 1000
    heatmap_l1_max_size: int = 10_000
    ttl_jitter_seconds: int = 0


@dataclass(frozen=True)
class OverpassConfig:
    base_url: str = "https://overpass-api.de/api/interpreter"
    timeout: int = 60  # seconds, also sent as [timeout:] in QL
    min_spacing: float = 1.0  # seconds between HTTP requests
    max_retries: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 10.0


@dataclass(frozen=True)
class Settings:
    """Deployment settings. Build with Settings.from_env()."""
    poi_db_path: str = "data/pois.db"
    cache_db_path: str = "data/heatmap_cache.db"
    redis_url: Optional[str] = None
    fetch_workers: int = 8
    grid: GridConfig = field(default_factory=GridConfig)
    tiles: TileConfig = field(default_factory=TileConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    overpass: OverpassConfig = field(default_factory=OverpassConfig)
    density: DensityBonusConfig = field(default_factory=DensityBonusConfig)
    no_poi_policy: NoPoiPolicy = field(default_factory=NoPoiPolicy)

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "Settings":
        if load_dotenv_file:
            load_dotenv()
        defaults = cls()
        env = os.environ

        overpass = replace(
            defaults.overpass,
            base_url=env.get("OVERPASS_BASE_URL", defaults.overpass.base_url),
            timeout=int(env.get("OVERPASS_TIMEOUT", defaults.overpass.timeout)),
            min_spacing=float(
                env.get("OVERPASS_MIN_SPACING", defaults.overpass.min_spacing)
            ),
            max_retries=int(
                env.get("OVERPASS_MAX_RETRIES", defaults.overpass.max_retries)
            ),
        )
        cache = replace(
            defaults.cache,
            poi_ttl_seconds=int(
                env.get("POI_CACHE_TTL", defaults.cache.poi_ttl_seconds)
            ),
            heatmap_ttl_seconds=int(
                env.get("HEATMAP_CACHE_TTL", defaults.cache.heatmap_ttl_seconds)
            ),
        )
        return replace(
            defaults,
            poi_db_path=env.get("HEATMAP_DB_PATH", defaults.poi_db_path),
            cache_db_path=env.get("HEATMAP_CACHE_DB_PATH", defaults.cache_db_path),
            redis_url=env.get("REDIS_URL") or None,
            fetch_workers=int(env.get("FETCH_WORKERS", defaults.fetch_workers)),
            overpass=overpass,
            cache=cache,
        )


# =============================================================================
# Factor catalog
# =============================================================================

FACTOR_DEFINITIONS: Tuple[FactorDefinition, ...] = (
    # Essential
    FactorDefinition(
        id="grocery",
        name="Grocery Stores",
        osm_tags=("shop=supermarket", "shop=convenience", "shop=grocery"),
        category="essential",
        default_weight=80,
        default_max_distance=2000,
        default_enabled=True,
    ),
    FactorDefinition(
        id="transit",
        name="Public Transit",
        osm_tags=(
            "railway=station",
            "railway=halt",
            "highway=bus_stop",
            "railway=tram_stop",
            "public_transport=platform",
            "public_transport=station",
        ),
        category="essential",
        default_weight=70,
        default_max_distance=1500,
        default_enabled=True,
    ),
    FactorDefinition(
        id="healthcare",
        name="Healthcare",
        osm_tags=(
            "amenity=pharmacy",
            "amenity=hospital",
            "amenity=clinic",
            "amenity=doctors",
        ),
        category="essential",
        default_weight=65,
        default_max_distance=3000,
        default_enabled=True,
    ),
    FactorDefinition(
        id="parks",
        name="Parks & Green Areas",
        osm_tags=("leisure=park", "landuse=forest", "natural=wood", "leisure=garden"),
        category="essential",
        default_weight=60,
        default_max_distance=1500,
        default_enabled=True,
    ),
    FactorDefinition(
        id="schools",
        name="Schools",
        osm_tags=("amenity=school", "amenity=kindergarten", "amenity=college"),
        category="essential",
        default_weight=50,
        default_max_distance=2000,
        default_enabled=True,
    ),
    FactorDefinition(
        id="post",
        name="Post & Delivery",
        osm_tags=("amenity=post_office", "amenity=parcel_locker", "amenity=post_box"),
        category="essential",
        default_weight=40,
        default_max_distance=2000,
        default_enabled=True,
    ),
    # Lifestyle
    FactorDefinition(
        id="restaurants",
        name="Restaurants & Cafes",
        osm_tags=("amenity=restaurant", "amenity=cafe", "amenity=fast_food"),
        category="lifestyle",
        default_weight=35,
        default_max_distance=1500,
        default_enabled=False,
    ),
    FactorDefinition(
        id="gyms",
        name="Gyms & Sports",
        osm_tags=(
            "leisure=fitness_centre",
            "leisure=sports_centre",
            "leisure=swimming_pool",
        ),
        category="lifestyle",
        default_weight=25,
        default_max_distance=2000,
        default_enabled=False,
    ),
    FactorDefinition(
        id="nightlife",
        name="Nightlife",
        osm_tags=("amenity=bar", "amenity=pub", "amenity=nightclub"),
        category="lifestyle",
        default_weight=0,
        default_max_distance=1500,
        default_enabled=False,
    ),
    FactorDefinition(
        id="universities",
        name="Universities",
        osm_tags=("amenity=university",),
        category="lifestyle",
        default_weight=0,
        default_max_distance=3000,
        default_enabled=False,
    ),
    # Environment
    FactorDefinition(
        id="water",
        name="Water Bodies",
        osm_tags=("natural=water", "water=lake", "water=river"),
        category="environment",
        default_weight=40,
        default_max_distance=2000,
        default_enabled=False,
    ),
    FactorDefinition(
        id="industrial",
        name="Industrial Areas",
        osm_tags=("landuse=industrial", "landuse=quarry"),
        category="environment",
        default_weight=-40,
        default_max_distance=1500,
        default_enabled=True,
    ),
    FactorDefinition(
        id="highways",
        name="Major Roads",
        osm_tags=("highway=motorway", "highway=trunk", "highway=primary"),
        category="environment",
        default_weight=-30,
        default_max_distance=300,
        default_enabled=True,
    ),
    FactorDefinition(
        id="airports",
        name="Airports",
        osm_tags=("aeroway=aerodrome", "aeroway=helipad"),
        category="environment",
        default_weight=-40,
        default_max_distance=5000,
        default_enabled=False,
    ),
    FactorDefinition(
        id="construction",
        name="Construction Sites",
        osm_tags=("landuse=construction", "building=construction"),
        category="environment",
        default_weight=-30,
        default_max_distance=500,
        default_enabled=False,
    ),
)

FACTOR_DEFINITIONS_BY_ID: Dict[str, FactorDefinition] = {
    d.id: d for d in FACTOR_DEFINITIONS
}


# =============================================================================
# Factor profiles
# =============================================================================

FACTOR_PROFILES: Tuple[FactorProfile, ...] = (
    FactorProfile(
        id="balanced",
        name="Balanced",
        description="Well-rounded for general living",
        overrides={},
    ),
    FactorProfile(
        id="family",
        name="Family",
        description="Schools, parks, healthcare, quiet areas",
        overrides={
            "grocery": FactorOverride(weight=85, max_distance=1500, enabled=True),
            "transit": FactorOverride(weight=50, enabled=True),
            "healthcare": FactorOverride(weight=90, max_distance=2000, enabled=True),
            "parks": FactorOverride(weight=95, max_distance=800, enabled=True),
            "schools": FactorOverride(weight=100, max_distance=1000, enabled=True),
            "nightlife": FactorOverride(weight=-50, max_distance=1000, enabled=True),
            "industrial": FactorOverride(weight=-80, max_distance=2000, enabled=True),
            "highways": FactorOverride(weight=-70, max_distance=500, enabled=True),
            "airports": FactorOverride(weight=-60, max_distance=3000, enabled=True),
        },
    ),
    FactorProfile(
        id="student",
        name="Student",
        description="Universities, transit, affordable food, nightlife",
        overrides={
            "grocery": FactorOverride(weight=85, max_distance=1000, enabled=True),
            "transit": FactorOverride(weight=95, max_distance=800, enabled=True),
            "restaurants": FactorOverride(weight=70, max_distance=1000, enabled=True),
            "gyms": FactorOverride(weight=60, max_distance=1500, enabled=True),
            "nightlife": FactorOverride(weight=80, max_distance=1500, enabled=True),
            "universities": FactorOverride(weight=100, max_distance=2000, enabled=True),
            "schools": FactorOverride(weight=0, enabled=False),
            "industrial": FactorOverride(weight=-30, enabled=True),
            "highways": FactorOverride(weight=-20, enabled=True),
        },
    ),
    FactorProfile(
        id="senior",
        name="Senior",
        description="Healthcare, quiet, accessible services",
        overrides={
            "grocery": FactorOverride(weight=95, max_distance=1000, enabled=True),
            "transit": FactorOverride(weight=80, max_distance=800, enabled=True),
            "healthcare": FactorOverride(weight=100, max_distance=1500, enabled=True),
            "parks": FactorOverride(weight=85, max_distance=800, enabled=True),
            "schools": FactorOverride(weight=0, enabled=False),
            "nightlife": FactorOverride(weight=-70, max_distance=1000, enabled=True),
            "industrial": FactorOverride(weight=-60, max_distance=1500, enabled=True),
            "highways": FactorOverride(weight=-50, max_distance=600, enabled=True),
            "construction": FactorOverride(weight=-50, max_distance=500, enabled=True),
        },
    ),
)

FACTOR_PROFILES_BY_ID: Dict[str, FactorProfile] = {p.id: p for p in FACTOR_PROFILES}


def default_factors() -> List[Factor]:
    return [d.to_factor() for d in FACTOR_DEFINITIONS]


def apply_profile(profile_id: str) -> List[Factor]:
    """Return catalog factors with the profile's overrides applied.

    Unknown profile ids fall back to the catalog defaults.
    """
    factors = default_factors()
    profile = FACTOR_PROFILES_BY_ID.get(profile_id)
    if profile is None:
        return factors

    result = []
    for factor in factors:
        override = profile.overrides.get(factor.id)
        if override is None:
            result.append(factor)
            continue
        result.append(replace(
            factor,
            weight=factor.weight if override.weight is None else override.weight,
            max_distance=(
                factor.max_distance
                if override.max_distance is None
                else override.max_distance
            ),
            enabled=factor.enabled if override.enabled is None else override.enabled,
        ))
    return result


def active_factors(factors: List[Factor]) -> List[Factor]:
    return [f for f in factors if f.is_active]
