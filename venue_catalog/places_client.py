"""Places API (Text Search) client with caching and response parsing."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from . import config
from .http import HttpClient, RequestMetrics
from .models import AddressComponent, DiscoveryCandidate
from .store import VenueStore, make_request_cache_key

logger = logging.getLogger(__name__)


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        store: VenueStore,
        api_key: str,
        no_cache: bool = False,
        refresh_places: bool = False,
        field_mask: str = config.PLACES_FIELD_MASK,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.store = store
        self.api_key = api_key
        self.no_cache = no_cache
        self.refresh_places = refresh_places
        self.field_mask = field_mask
        self.metrics = metrics
        self._pending: Dict[str, threading.Event] = {}
        self._memory_cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def search_text(
        self,
        query: str,
        lat: float,
        lon: float,
        radius_m: int,
        included_type: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST one Text Search page.

        A request repeated within the run waits for the first caller and gets
        the same response.
        """
        body = build_text_search_body(query, lat, lon, radius_m, included_type, page_token)
        key = make_request_cache_key(config.PLACES_TEXT_SEARCH_URL, self.field_mask, body)
        with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                done = threading.Event()
                self._pending[key] = done
        if pending is not None:
            if self.metrics is not None:
                self.metrics.inc_dedup_skip("discovery")
            pending.wait()
            with self._lock:
                return self._memory_cache.get(key, {})

        try:
            response = self._fetch(key, body)
            if isinstance(response, dict):
                with self._lock:
                    self._memory_cache[key] = response
            return response
        finally:
            done.set()

    def _fetch(self, key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.no_cache and not self.refresh_places:
            cached = self.store.get_search_cache(key)
            if cached is not None:
                if self.metrics is not None:
                    self.metrics.inc_cache_hit("discovery")
                return cached

        if self.metrics is not None:
            self.metrics.inc_network("discovery")
        headers = {"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": self.field_mask}
        response = self.http.post_json(config.PLACES_TEXT_SEARCH_URL, body, headers)
        if not self.no_cache and isinstance(response, dict) and not response.get("error"):
            self.store.set_search_cache(key, response)
        return response

    def search_text_all(
        self,
        query: str,
        lat: float,
        lon: float,
        radius_m: int,
        included_type: Optional[str] = None,
        max_pages: int = config.PLACES_MAX_PAGES_PER_TILE,
        max_results: Optional[int] = None,
    ) -> List[DiscoveryCandidate]:
        """Follow nextPageToken up to ``max_pages`` and return parsed candidates."""
        candidates: List[DiscoveryCandidate] = []
        page_token: Optional[str] = None
        for _ in range(max_pages):
            resp = self.search_text(
                query, lat, lon, radius_m, included_type=included_type, page_token=page_token
            )
            if not isinstance(resp, dict):
                logger.warning("Places API returned a non-object response for %r", query)
                break
            if resp.get("error"):
                logger.warning("Places API error for %r: %s", query, resp["error"])
                break
            candidates.extend(parse_places_response(resp))
            if max_results is not None and len(candidates) >= max_results:
                return candidates[:max_results]
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        return candidates


def build_text_search_body(
    query: str,
    lat: float,
    lon: float,
    radius_m: int,
    included_type: Optional[str] = None,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        # Type-only searches still need a non-empty textQuery.
        "textQuery": query or " ",
        "locationBias": {
            "circle": {
                "center": {"latitude": lat, "longitude": lon},
                "radius": float(radius_m),
            }
        },
        "maxResultCount": config.PLACES_MAX_RESULT_COUNT,
    }
    if included_type:
        body["includedType"] = included_type
        body["strictTypeFiltering"] = True
    if page_token:
        body["pageToken"] = page_token
    return body


# Adapter/mapper for Places response fields

def parse_places_response(response: Dict[str, Any]) -> List[DiscoveryCandidate]:
    """Map a Text Search response to candidates. Malformed entries are dropped."""
    places = response.get("places") if isinstance(response, dict) else None
    if not isinstance(places, list):
        return []
    parsed: List[DiscoveryCandidate] = []
    for p in places:
        if not isinstance(p, dict):
            continue
        place_id = p.get("id") or p.get("placeId")
        if not place_id:
            continue
        display = p.get("displayName")
        if isinstance(display, dict):
            name = display.get("text") or display.get("value")
        else:
            name = display
        location = p.get("location")
        if not isinstance(location, dict):
            location = {}
        lat = _number(location.get("latitude"))
        lon = _number(location.get("longitude"))
        user_rating_count = _number(p.get("userRatingCount"))
        rating = _number(p.get("rating"))
        address = p.get("formattedAddress")
        components = p.get("addressComponents")
        types = p.get("types")
        primary_type = p.get("primaryType")
        parsed.append(
            DiscoveryCandidate(
                provider_id=str(place_id),
                name=str(name or ""),
                lat=lat,
                lon=lon,
                rating=rating,
                review_count=int(user_rating_count) if user_rating_count is not None else None,
                formatted_address=address if isinstance(address, str) and address else None,
                address_components=tuple(
                    AddressComponent.from_api(c)
                    for c in (components if isinstance(components, list) else [])
                    if isinstance(c, dict)
                ),
                types=tuple(t for t in (types if isinstance(types, list) else []) if isinstance(t, str)),
                primary_type=primary_type if isinstance(primary_type, str) and primary_type else None,
            )
        )
    return parsed


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
