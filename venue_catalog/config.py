"""Project configuration.

Loads city definitions from cities_config.json and run settings from an
optional settings file, falling back to sensible defaults. Keep API request
shapes centralized here.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
FSQ_BASE_URL = "https://places-api.foursquare.com"
FSQ_SEARCH_URL = f"{FSQ_BASE_URL}/places/search"
FSQ_DETAILS_URL_TEMPLATE = FSQ_BASE_URL + "/places/{fsq_id}"
FSQ_API_VERSION = "2025-06-17"

# --- Credentials (environment variable names) ---

PRIMARY_API_KEY_ENV = "GOOGLE_PLACES_API_KEY"
SECONDARY_API_KEY_ENV = "FOURSQUARE_API_KEY"
MAX_ENRICHMENT_CALLS_ENV = "MAX_ENRICHMENT_CALLS"

# --- Field masks ---

PLACES_FIELD_MASK = (
    "places.id,places.displayName,places.location,places.formattedAddress,"
    "places.addressComponents,places.rating,places.userRatingCount,places.types,"
    "places.primaryType,nextPageToken"
)
FSQ_DETAILS_FIELDS = "location,hours,tel,website,rating,stats,price,description,categories,photos"
FSQ_PHOTO_SIZE = "600x450"

# --- Discovery request shape ---

PLACES_MAX_RESULT_COUNT = 20
PLACES_MAX_PAGES_PER_TILE = 3
NEIGHBORHOOD_QUERY_MAX_PAGES = 5
NEIGHBORHOOD_QUERY_MAX_RESULTS = 15

# --- Tiling ---

DEFAULT_GRID_ROWS = 3
DEFAULT_GRID_COLS = 3
TILE_EDGE_SAFETY_FACTOR = 1.3

# --- Admission gates ---

DEFAULT_POPULATION = 2_000_000
THIN_CATEGORY_SLUGS = frozenset(
    {"kids_activities", "tours", "waterfront", "theater", "historical_place", "art_gallery"}
)

# --- Enrichment ---

FSQ_SEARCH_LIMIT = 5
FSQ_SEARCH_RADIUS_M = 15000
DEFAULT_UNVERIFIED_RATING = 9.0
PRICE_TIER_USD: Dict[int, int] = {1: 10, 2: 25, 3: 50, 4: 100}

# --- Neighborhoods ---

NEIGHBORHOOD_COMPONENT_TYPES = frozenset(
    {"neighborhood", "sublocality", "sublocality_level_1", "administrative_area_level_2"}
)

# --- Scoring ---

SCORE_MAX_RATING = 10.0
SCORE_MAX_RATING_COUNT = 500
SCORE_RATING_WEIGHT = 85.0
SCORE_COUNT_FACTOR_FLOOR = 0.3
CAP_NO_SECONDARY = 60
FEATURED_BOOST = 15
HIDDEN_GEM_PENALTY = 0.9
HIDDEN_GEM_MIN_RATING = 8.5
HIDDEN_GEM_MAX_REVIEWS = 50
LOCAL_FAVORITE_MIN_RATING = 8.2
LOCAL_FAVORITE_MIN_REVIEWS = 50

# --- Concurrency ---

DISCOVERY_WORKERS = 4
ENRICHMENT_WORKERS = 4

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 5
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0
HTTP_CALL_DELAY_SECONDS = 0.2
ENRICHMENT_HTTP_RETRY_MAX = 1

# --- Store and outputs ---

DB_PATH = "catalog.db"
OUTPUT_DIR = "out"
CITIES_CONFIG_PATH = str(_REPO_ROOT / "cities_config.json")
RUN_SETTINGS_PATH = str(_REPO_ROOT / "run_settings.json")
PROGRESS_LOG_EVERY = 50
PROGRESS_WRITE_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class DiscoveryPattern:
    text_query: str
    included_type: Optional[str] = None


@dataclass(frozen=True)
class CategoryConfig:
    slug: str
    query: str
    included_type: Optional[str] = None
    text_query_keywords: Optional[str] = None
    patterns: Tuple[DiscoveryPattern, ...] = ()
    min_rating_gate: Optional[float] = None
    min_reviews_gate: Optional[int] = None


@dataclass(frozen=True)
class NeighborhoodQuery:
    query: str
    category: str
    neighborhood: str


@dataclass(frozen=True)
class CityConfig:
    slug: str
    name: str
    center_lat: float
    center_lon: float
    radius_m: int
    neighborhoods: Tuple[str, ...] = ()
    categories: Tuple[CategoryConfig, ...] = ()
    neighborhood_queries: Tuple[NeighborhoodQuery, ...] = ()
    grid_rows: int = DEFAULT_GRID_ROWS
    grid_cols: int = DEFAULT_GRID_COLS
    min_rating_gate: Optional[float] = None
    min_reviews_gate: Optional[int] = None
    population: Optional[int] = None
    geocode_language: str = "en"
    fallback_name: Optional[str] = None
    address_aliases: Tuple[str, ...] = ()
    boundaries_path: Optional[str] = None
    boundary_name_property: str = "name"

    @property
    def display_name(self) -> str:
        """Name used when no neighborhood can be resolved."""
        return self.fallback_name or self.name


@dataclass(frozen=True)
class RunSettings:
    max_enrichment_calls: Optional[int] = None


def _parse_optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_category(data: Mapping[str, Any]) -> CategoryConfig:
    slug = data.get("category") or data.get("slug")
    if not slug:
        raise ValueError(f"Category is missing a slug: {data!r}")
    patterns = tuple(
        DiscoveryPattern(
            text_query=str(p.get("text_query") or ""),
            included_type=p.get("included_type") or None,
        )
        for p in data.get("patterns") or []
    )
    return CategoryConfig(
        slug=str(slug),
        query=str(data.get("query") or slug),
        included_type=data.get("included_type") or None,
        text_query_keywords=data.get("text_query_keywords") or None,
        patterns=patterns,
        min_rating_gate=_parse_optional_float(data.get("min_rating_gate")),
        min_reviews_gate=_parse_optional_int(data.get("min_reviews_gate")),
    )


def _parse_city(slug: str, data: Mapping[str, Any], base_dir: Path) -> CityConfig:
    center = data.get("center") or {}
    lat = center.get("lat")
    lon = center.get("lon", center.get("lng"))
    if lat is None or lon is None:
        raise ValueError(f"City {slug} is missing center lat/lon")
    radius_m = _parse_optional_int(data.get("radius_m"))
    if not radius_m or radius_m <= 0:
        raise ValueError(f"City {slug} needs a positive radius_m")

    boundaries_path = data.get("boundaries_path")
    if boundaries_path:
        boundaries_path = str((base_dir / boundaries_path).resolve())

    return CityConfig(
        slug=slug,
        name=str(data.get("name") or slug),
        center_lat=float(lat),
        center_lon=float(lon),
        radius_m=radius_m,
        neighborhoods=tuple(data.get("neighborhoods") or []),
        categories=tuple(_parse_category(c) for c in data.get("categories") or []),
        neighborhood_queries=tuple(
            NeighborhoodQuery(
                query=str(q["query"]),
                category=str(q["category"]),
                neighborhood=str(q.get("neighborhood") or ""),
            )
            for q in data.get("neighborhood_queries") or []
        ),
        grid_rows=_parse_optional_int(data.get("grid_rows")) or DEFAULT_GRID_ROWS,
        grid_cols=_parse_optional_int(data.get("grid_cols")) or DEFAULT_GRID_COLS,
        min_rating_gate=_parse_optional_float(data.get("min_rating_gate")),
        min_reviews_gate=_parse_optional_int(data.get("min_reviews_gate")),
        population=_parse_optional_int(data.get("population")),
        geocode_language=str(data.get("geocode_language") or "en"),
        fallback_name=data.get("fallback_name") or None,
        address_aliases=tuple(data.get("address_aliases") or []),
        boundaries_path=boundaries_path,
        boundary_name_property=str(data.get("boundary_name_property") or "name"),
    )


def load_cities(path: Optional[str] = None) -> Dict[str, CityConfig]:
    """Load city definitions keyed by slug.

    Returns an empty dict when the file does not exist. Relative boundary
    paths are resolved against the config file's directory.
    """
    config_path = Path(path or CITIES_CONFIG_PATH)
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    cities_data = data.get("cities", data) if isinstance(data, dict) else {}
    base_dir = config_path.resolve().parent
    return {
        slug: _parse_city(slug, city_data, base_dir)
        for slug, city_data in sorted(cities_data.items())
    }


def load_run_settings(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunSettings:
    """Resolve run settings: settings file > environment > no limit."""
    env = os.environ if env is None else env
    settings_path = Path(path or RUN_SETTINGS_PATH)

    file_max: Optional[int] = None
    if settings_path.exists():
        with open(settings_path, "r", encoding="utf-8") as f:
            data = json.load(f) or {}
        file_max = _parse_optional_int(data.get("max_enrichment_calls_per_run"))

    env_max = _parse_optional_int(env.get(MAX_ENRICHMENT_CALLS_ENV))
    max_calls = file_max if file_max is not None else env_max
    if max_calls is not None and max_calls < 0:
        max_calls = None
    return RunSettings(max_enrichment_calls=max_calls)
