"""Neighborhood resolution as an ordered chain of strategies.

Each strategy takes a ``ResolutionContext`` and returns a name or None. The
first usable name wins; a name that is just the city (or one of its aliases)
counts as no signal. When nothing matches, the city's fallback name is used.
"""
from __future__ import annotations

import json
import logging
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from shapely.geometry import Point, shape
from shapely.strtree import STRtree

from . import config
from .config import CityConfig
from .geocoding import ReverseGeocoder
from .models import AddressComponent, DiscoveryCandidate, SecondaryMatch

logger = logging.getLogger(__name__)


def normalize_neighborhood_key(name: str) -> str:
    """Lowercase, strip diacritics and collapse whitespace: "Núñez " -> "nunez"."""
    decomposed = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.split())


def to_title_case(name: str) -> str:
    """Title-case each word, e.g. LANÚS OESTE -> Lanús Oeste."""
    if not name or not name.strip():
        return ""
    return " ".join(word[:1].upper() + word[1:] for word in name.strip().lower().split())


def is_city_alias(name: str, city: CityConfig) -> bool:
    key = normalize_neighborhood_key(name)
    aliases = [city.name, city.display_name, *city.address_aliases]
    return any(key == normalize_neighborhood_key(a) for a in aliases if a)


def match_known_neighborhood(name: Optional[str], city: CityConfig) -> Optional[str]:
    """Map a provider-supplied name onto the city's known list.

    Exact or "known + space" prefix matches return the known spelling. Unknown
    names are accepted verbatim unless they are a city-level alias.
    """
    if not name or not name.strip():
        return None
    cleaned = name.strip()
    key = normalize_neighborhood_key(cleaned)
    known_keys = [(normalize_neighborhood_key(k), k) for k in city.neighborhoods]
    for known_key, known in known_keys:
        if key == known_key:
            return known
    # Longest prefix first so "Palermo Soho Norte" maps to "Palermo Soho", not "Palermo".
    for known_key, known in sorted(known_keys, key=lambda kk: len(kk[0]), reverse=True):
        if key.startswith(known_key + " "):
            return known
    if is_city_alias(cleaned, city):
        return None
    return cleaned


def neighborhood_from_components(
    components: Iterable[AddressComponent], city: CityConfig
) -> Optional[str]:
    for comp in components:
        if not config.NEIGHBORHOOD_COMPONENT_TYPES.intersection(comp.types):
            continue
        name = match_known_neighborhood(comp.long_name or comp.short_name, city)
        if name:
            return name
    return None


def guess_from_address(address: Optional[str], city: CityConfig) -> Optional[str]:
    if not address:
        return None
    haystack = normalize_neighborhood_key(address)
    for known in city.neighborhoods:
        if normalize_neighborhood_key(known) in haystack:
            return known
    return None


class NeighborhoodBoundaries:
    """Neighborhood polygons for one city, indexed for point lookups."""

    def __init__(self, names: Sequence[str], geometries: Sequence[Any]) -> None:
        if len(names) != len(geometries):
            raise ValueError("names and geometries must have the same length")
        self.names = list(names)
        self.geometries = list(geometries)
        self._tree = STRtree(self.geometries) if self.geometries else None

    def __len__(self) -> int:
        return len(self.names)

    @classmethod
    def from_features(
        cls, features: Iterable[Dict[str, Any]], name_property: str = "name"
    ) -> "NeighborhoodBoundaries":
        names: List[str] = []
        geometries: List[Any] = []
        for feature in features:
            geometry = feature.get("geometry")
            props = feature.get("properties") or {}
            name = props.get(name_property)
            if not geometry or not name:
                continue
            geom = shape(geometry)
            if geom.is_empty:
                continue
            names.append(to_title_case(str(name)))
            geometries.append(geom)
        return cls(names, geometries)

    @classmethod
    def from_geojson(cls, path: str, name_property: str = "name") -> "NeighborhoodBoundaries":
        with Path(path).open("r", encoding="utf-8") as f:
            content = json.load(f)
        features = content.get("features") if isinstance(content, dict) else None
        if features is None:
            raise ValueError("GeoJSON file must contain a FeatureCollection with a 'features' array")
        boundaries = cls.from_features(features, name_property)
        logger.info("Loaded %s neighborhood boundaries from %s", len(boundaries), path)
        return boundaries

    def lookup(self, lat: float, lon: float) -> Optional[str]:
        if self._tree is None:
            return None
        # Shapely uses (x, y) = (lon, lat)
        point = Point(lon, lat)
        for idx in sorted(int(i) for i in self._tree.query(point)):
            if self.geometries[idx].covers(point):
                return self.names[idx]
        return None


@dataclass(frozen=True)
class ResolutionContext:
    candidate: DiscoveryCandidate
    city: CityConfig
    match: Optional[SecondaryMatch] = None
    boundaries: Optional[NeighborhoodBoundaries] = None
    geocoder: Optional[ReverseGeocoder] = None


Strategy = Callable[[ResolutionContext], Optional[str]]


def from_boundaries(ctx: ResolutionContext) -> Optional[str]:
    if ctx.boundaries is None or not ctx.candidate.has_coordinates:
        return None
    return ctx.boundaries.lookup(ctx.candidate.lat, ctx.candidate.lon)


def from_address_components(ctx: ResolutionContext) -> Optional[str]:
    return neighborhood_from_components(ctx.candidate.address_components, ctx.city)


def from_reverse_geocode(ctx: ResolutionContext) -> Optional[str]:
    if ctx.geocoder is None or not ctx.candidate.has_coordinates:
        return None
    components = ctx.geocoder.reverse(
        ctx.candidate.lat, ctx.candidate.lon, language=ctx.city.geocode_language
    )
    return neighborhood_from_components(components, ctx.city)


def from_secondary(ctx: ResolutionContext) -> Optional[str]:
    if ctx.match is None:
        return None
    return match_known_neighborhood(ctx.match.neighborhood, ctx.city)


def from_address_text(ctx: ResolutionContext) -> Optional[str]:
    found = guess_from_address(ctx.candidate.formatted_address, ctx.city)
    if found:
        return found
    if ctx.match is not None:
        return guess_from_address(ctx.match.address, ctx.city)
    return None


DEFAULT_STRATEGIES: Sequence[Strategy] = (
    from_boundaries,
    from_address_components,
    from_reverse_geocode,
    from_secondary,
    from_address_text,
)


class NeighborhoodResolver:
    def __init__(
        self,
        city: CityConfig,
        boundaries: Optional[NeighborhoodBoundaries] = None,
        geocoder: Optional[ReverseGeocoder] = None,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.city = city
        self.boundaries = boundaries
        self.geocoder = geocoder
        self.strategies = tuple(strategies)

    def resolve(
        self, candidate: DiscoveryCandidate, match: Optional[SecondaryMatch] = None
    ) -> str:
        ctx = ResolutionContext(
            candidate=candidate,
            city=self.city,
            match=match,
            boundaries=self.boundaries,
            geocoder=self.geocoder,
        )
        for strategy in self.strategies:
            name = strategy(ctx)
            if name and name.strip() and not is_city_alias(name, self.city):
                return name.strip()
        return self.city.display_name
