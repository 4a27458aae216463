"""Secondary-provider (Foursquare Places) enrichment under a shared call budget."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from . import config
from .config import CityConfig
from .http import CallBudget, HttpClient, RequestMetrics, status_code_of
from .models import DiscoveryCandidate, SecondaryMatch
from .neighborhoods import match_known_neighborhood

logger = logging.getLogger(__name__)

# Statuses that mean the key is out of quota or unauthorized for the rest of the run.
LIMITING_STATUSES = frozenset({401, 403, 429})
_WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


class EnrichmentClient:
    def __init__(
        self,
        http_client: HttpClient,
        api_key: str,
        budget: CallBudget,
        city: CityConfig,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.api_key = api_key
        self.budget = budget
        self.city = city
        self.metrics = metrics

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "X-Places-Api-Version": config.FSQ_API_VERSION,
        }

    def enrich(self, candidate: DiscoveryCandidate) -> Optional[SecondaryMatch]:
        """Search for the candidate by name near its point, then fetch details.

        Returns None when there is no match, the call fails, or the budget is
        LIMITED. Never raises for provider errors.
        """
        if self.budget.is_limited:
            return None
        if not candidate.has_coordinates or not candidate.name:
            return None

        secondary_id = self._search(candidate)
        if secondary_id is None:
            return None
        return self._details(secondary_id)

    def _search(self, candidate: DiscoveryCandidate) -> Optional[str]:
        params = {
            "ll": f"{candidate.lat},{candidate.lon}",
            "query": candidate.name,
            "limit": config.FSQ_SEARCH_LIMIT,
            "radius": config.FSQ_SEARCH_RADIUS_M,
        }
        data = self._call(config.FSQ_SEARCH_URL, params)
        if data is None:
            return None
        results = data.get("results")
        match = pick_match(candidate.name, results if isinstance(results, list) else [])
        if match is None:
            return None
        secondary_id = match.get("fsq_place_id") or match.get("fsq_id")
        return str(secondary_id) if secondary_id else None

    def _details(self, secondary_id: str) -> Optional[SecondaryMatch]:
        url = config.FSQ_DETAILS_URL_TEMPLATE.format(fsq_id=secondary_id)
        data = self._call(url, {"fields": config.FSQ_DETAILS_FIELDS})
        if data is None:
            return None
        return parse_details(secondary_id, data, self.city)

    def _call(self, url: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.budget.try_acquire():
            return None
        if self.metrics is not None:
            self.metrics.inc_network("enrichment")
        try:
            data = self.http.get_json(url, params=params, headers=self.headers)
        except requests.HTTPError as exc:
            status = status_code_of(exc)
            if status in LIMITING_STATUSES:
                self.budget.trip(f"http_{status}")
            else:
                logger.warning("Enrichment request failed (HTTP %s): %s", status, url)
            return None
        except requests.RequestException as exc:
            logger.warning("Enrichment request failed: %s", exc)
            return None
        except ValueError:
            logger.warning("Enrichment response was not JSON: %s", url)
            return None
        if not isinstance(data, dict):
            logger.warning("Enrichment response was not an object: %s", url)
            return None
        return data


def pick_match(name: str, results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First result whose name contains, or is contained in, ``name``; else the top result."""
    results = [r for r in results if isinstance(r, dict)]
    if not results:
        return None
    query = name.lower()
    for result in results:
        result_name = result.get("name")
        result_name = result_name.lower() if isinstance(result_name, str) else ""
        if result_name and (result_name in query or query in result_name):
            return result
    return results[0]


def format_hours(hours: Any) -> List[str]:
    if isinstance(hours, str):
        return [hours] if hours.strip() else []
    if not isinstance(hours, dict):
        return []
    display = hours.get("display")
    if isinstance(display, str):
        return [display] if display.strip() else []
    if isinstance(display, list) and display:
        return [str(d) for d in display]
    regular = hours.get("regular")
    if not isinstance(regular, list):
        return []
    lines = []
    for slot in regular:
        if not isinstance(slot, dict):
            continue
        day = slot.get("day")
        if not isinstance(day, int):
            day = 1
        if day == 7:
            label = _WEEKDAYS[0]
        else:
            label = _WEEKDAYS[day if 1 <= day <= 6 else 1]
        lines.append(f"{label}: {slot.get('open') or '?'}-{slot.get('close') or '?'}")
    return lines


def parse_details(secondary_id: str, data: Dict[str, Any], city: CityConfig) -> SecondaryMatch:
    loc = _as_dict(data.get("location"))
    parts = (loc.get("address"), loc.get("locality"), loc.get("region"))
    formatted = loc.get("formatted_address")
    address = (formatted if isinstance(formatted, str) and formatted else None) or (
        ", ".join(part for part in parts if isinstance(part, str) and part) or None
    )

    raw_neighborhood = loc.get("neighborhood")
    if isinstance(raw_neighborhood, list):
        raw_neighborhood = raw_neighborhood[0] if raw_neighborhood else None
    neighborhood = (
        match_known_neighborhood(raw_neighborhood, city)
        if isinstance(raw_neighborhood, str)
        else None
    )

    stats = _as_dict(data.get("stats"))
    rating_count = stats.get("total_ratings")
    price = data.get("price")
    rating = data.get("rating")
    description = data.get("description")
    categories = [
        str(c["name"]) for c in _as_list(data.get("categories")) if isinstance(c, dict) and c.get("name")
    ]
    name = data.get("name")
    phone = data.get("tel")
    website = data.get("website")

    return SecondaryMatch(
        secondary_id=secondary_id,
        name=name if isinstance(name, str) else None,
        address=address,
        opening_hours=format_hours(data.get("hours")),
        phone=phone if isinstance(phone, str) and phone else None,
        website=website if isinstance(website, str) and website else None,
        rating=float(rating) if isinstance(rating, (int, float)) else None,
        rating_count=int(rating_count) if isinstance(rating_count, (int, float)) else None,
        price_tier=price if isinstance(price, int) and 1 <= price <= 4 else None,
        neighborhood=neighborhood,
        categories=categories,
        description=description.strip() if isinstance(description, str) and description.strip() else None,
        photo_urls=format_photo_urls(data.get("photos")),
    )


def format_photo_urls(photos: Any) -> List[str]:
    """Sized URLs from prefix/suffix photo records."""
    urls = []
    for photo in _as_list(photos):
        if not isinstance(photo, dict):
            continue
        prefix = photo.get("prefix")
        suffix = photo.get("suffix")
        if isinstance(prefix, str) and prefix and isinstance(suffix, str) and suffix:
            urls.append(f"{prefix}{config.FSQ_PHOTO_SIZE}{suffix}")
    return urls


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def price_tier_to_usd(price_tier: Optional[int]) -> Optional[int]:
    if price_tier is None:
        return None
    return config.PRICE_TIER_USD.get(price_tier)
