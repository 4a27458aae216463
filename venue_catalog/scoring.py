"""Quality scoring from secondary-provider rating and rating count."""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, Mapping, Optional, Tuple

from . import config
from .store import VenueStore

logger = logging.getLogger(__name__)

TIER_NONE = "none"
TIER_HIDDEN_GEM = "hidden_gem"
TIER_LOCAL_FAVORITE = "local_favorite"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def count_factor(rating_count: Optional[int]) -> float:
    """0.3 for no ratings, rising logarithmically to 1.0 at 500 ratings."""
    n = _clamp(rating_count or 0, 0, config.SCORE_MAX_RATING_COUNT)
    floor = config.SCORE_COUNT_FACTOR_FLOOR
    if n <= 0:
        return floor
    return floor + (1 - floor) * (
        math.log10(n + 1) / math.log10(config.SCORE_MAX_RATING_COUNT + 1)
    )


def raw_score(rating: Optional[float], rating_count: Optional[int]) -> float:
    if rating is None or rating < 0:
        return 0.0
    r = _clamp(rating, 0, config.SCORE_MAX_RATING)
    return (r / config.SCORE_MAX_RATING) * config.SCORE_RATING_WEIGHT * count_factor(rating_count)


def classify_tier(
    rating: Optional[float], rating_count: Optional[int], has_secondary_data: bool
) -> str:
    if not has_secondary_data or rating is None:
        return TIER_NONE
    r = _clamp(rating, 0, config.SCORE_MAX_RATING)
    n = _clamp(rating_count or 0, 0, config.SCORE_MAX_RATING_COUNT)
    if r >= config.HIDDEN_GEM_MIN_RATING and 0 < n < config.HIDDEN_GEM_MAX_REVIEWS:
        return TIER_HIDDEN_GEM
    if r >= config.LOCAL_FAVORITE_MIN_RATING and n >= config.LOCAL_FAVORITE_MIN_REVIEWS:
        return TIER_LOCAL_FAVORITE
    return TIER_NONE


def score_venue(venue: Mapping[str, Any], featured: bool = False) -> Tuple[int, str]:
    rating = venue.get("rating")
    rating_count = venue.get("rating_count")
    has_secondary_data = bool(venue.get("has_secondary_data"))

    tier = classify_tier(rating, rating_count, has_secondary_data)
    score = raw_score(rating, rating_count)
    if tier == TIER_HIDDEN_GEM:
        score *= config.HIDDEN_GEM_PENALTY
    if featured:
        score += config.FEATURED_BOOST
    if not has_secondary_data:
        score = min(score, config.CAP_NO_SECONDARY)
    # Half-up rounding, not banker's rounding.
    return int(math.floor(_clamp(score, 0, 100) + 0.5)), tier


def score_catalog(store: VenueStore, city: Optional[str] = None) -> Dict[str, int]:
    """Score every venue (or one city's) in place. Safe to re-run."""
    featured = store.featured_venue_ids(city)
    counts = {"scored": 0, TIER_HIDDEN_GEM: 0, TIER_LOCAL_FAVORITE: 0}
    for venue in store.iter_venues(city):
        score, tier = score_venue(venue, featured=venue["id"] in featured)
        store.update_score(venue["id"], score, tier)
        counts["scored"] += 1
        if tier in counts:
            counts[tier] += 1
    store.commit()
    logger.info(
        "Scored %s venues (%s hidden gems, %s local favorites)",
        counts["scored"],
        counts[TIER_HIDDEN_GEM],
        counts[TIER_LOCAL_FAVORITE],
    )
    return counts
