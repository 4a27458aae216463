"""Tiled discovery against the primary provider, with the rating/review admission gate."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import requests

from . import config
from .config import CategoryConfig, CityConfig, DiscoveryPattern, NeighborhoodQuery
from .geo import Tile
from .models import DiscoveryCandidate
from .places_client import PlacesClient

logger = logging.getLogger(__name__)

# Categories with a validated fixed pattern set.
BUILTIN_PATTERNS: Dict[str, Tuple[DiscoveryPattern, ...]] = {
    "cafe": (DiscoveryPattern(text_query="café", included_type="cafe"),),
}
BRUNCH_CROSSOVER = DiscoveryPattern(text_query="café brunch", included_type="restaurant")


@dataclass(frozen=True)
class AdmissionGate:
    min_rating: float
    min_reviews: int

    def admits(self, candidate: DiscoveryCandidate) -> bool:
        rating = candidate.rating if candidate.rating is not None else 0.0
        reviews = candidate.review_count if candidate.review_count is not None else 0
        return rating >= self.min_rating and reviews >= self.min_reviews


def population_gate(population: Optional[int]) -> AdmissionGate:
    effective = population if population is not None else config.DEFAULT_POPULATION
    if effective > 8_000_000:
        return AdmissionGate(min_rating=4.1, min_reviews=6)
    if effective < 1_000_000:
        return AdmissionGate(min_rating=3.8, min_reviews=2)
    return AdmissionGate(min_rating=4.0, min_reviews=4)


def relax_for_thin_category(gate: AdmissionGate) -> AdmissionGate:
    return AdmissionGate(
        min_rating=round(gate.min_rating - 0.2, 2),
        min_reviews=max(1, gate.min_reviews - 1),
    )


def resolve_gate(category: CategoryConfig, city: CityConfig) -> AdmissionGate:
    """Category gate, else city gate, else population defaults.

    A configured gate only counts when both thresholds are set. The thin
    category relaxation applies to population defaults only.
    """
    if category.min_rating_gate is not None and category.min_reviews_gate is not None:
        return AdmissionGate(category.min_rating_gate, category.min_reviews_gate)
    if city.min_rating_gate is not None and city.min_reviews_gate is not None:
        return AdmissionGate(city.min_rating_gate, city.min_reviews_gate)
    gate = population_gate(city.population)
    if category.slug in config.THIN_CATEGORY_SLUGS:
        gate = relax_for_thin_category(gate)
    return gate


def discovery_patterns(category: CategoryConfig) -> Tuple[DiscoveryPattern, ...]:
    if category.patterns:
        return category.patterns
    if category.slug in BUILTIN_PATTERNS:
        return BUILTIN_PATTERNS[category.slug]

    query = category.query
    if category.text_query_keywords:
        keywords = [k.strip() for k in category.text_query_keywords.split(",") if k.strip()]
        query = " ".join(keywords) or category.query

    patterns = [DiscoveryPattern(text_query=query, included_type=category.included_type)]
    if category.slug == "brunch":
        patterns.append(BRUNCH_CROSSOVER)
    return tuple(patterns)


def dedupe_by_provider_id(candidates: List[DiscoveryCandidate]) -> List[DiscoveryCandidate]:
    seen: Set[str] = set()
    unique: List[DiscoveryCandidate] = []
    for candidate in candidates:
        if candidate.provider_id in seen:
            continue
        seen.add(candidate.provider_id)
        unique.append(candidate)
    return unique


class DiscoveryClient:
    def __init__(
        self,
        places: PlacesClient,
        max_pages: int = config.PLACES_MAX_PAGES_PER_TILE,
    ) -> None:
        self.places = places
        self.max_pages = max_pages

    def discover(
        self,
        category: CategoryConfig,
        tile: Tile,
        gate: AdmissionGate,
    ) -> List[DiscoveryCandidate]:
        """Run every discovery pattern of ``category`` over one tile.

        A failing pattern is logged and contributes nothing; the other patterns
        still run.
        """
        raw: List[DiscoveryCandidate] = []
        for pattern in discovery_patterns(category):
            try:
                raw.extend(
                    self.places.search_text_all(
                        pattern.text_query,
                        tile.lat,
                        tile.lon,
                        tile.radius_m,
                        included_type=pattern.included_type,
                        max_pages=self.max_pages,
                    )
                )
            except requests.RequestException as exc:
                logger.warning(
                    "Discovery failed for %s tile %s pattern %r: %s",
                    category.slug,
                    tile.tile_id,
                    pattern.text_query,
                    exc,
                )
            except Exception:
                logger.exception(
                    "Discovery response for %s tile %s pattern %r could not be used",
                    category.slug,
                    tile.tile_id,
                    pattern.text_query,
                )
        unique = dedupe_by_provider_id(raw)
        admitted = [c for c in unique if gate.admits(c)]
        logger.debug(
            "%s tile %s: %s raw, %s unique, %s admitted",
            category.slug,
            tile.tile_id,
            len(raw),
            len(unique),
            len(admitted),
        )
        return admitted

    def discover_neighborhood(
        self,
        query: NeighborhoodQuery,
        city: CityConfig,
        gate: AdmissionGate,
        max_results: int = config.NEIGHBORHOOD_QUERY_MAX_RESULTS,
    ) -> List[DiscoveryCandidate]:
        """City-wide query naming a neighborhood, e.g. "best cafe Villa Crespo"."""
        try:
            raw = self.places.search_text_all(
                query.query,
                city.center_lat,
                city.center_lon,
                city.radius_m,
                max_pages=config.NEIGHBORHOOD_QUERY_MAX_PAGES,
            )
        except requests.RequestException as exc:
            logger.warning("Neighborhood query %r failed: %s", query.query, exc)
            return []
        except Exception:
            logger.exception("Neighborhood query %r response could not be used", query.query)
            return []
        admitted = [c for c in dedupe_by_provider_id(raw) if gate.admits(c)]
        return admitted[:max_results]
