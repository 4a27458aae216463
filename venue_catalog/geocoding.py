"""Reverse geocoding (Geocoding API) used as a neighborhood fallback."""
from __future__ import annotations

import logging
from typing import List, Optional

import requests

from . import config
from .http import HttpClient, RequestMetrics
from .models import AddressComponent

logger = logging.getLogger(__name__)


class ReverseGeocoder:
    def __init__(
        self,
        http_client: HttpClient,
        api_key: str,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.api_key = api_key
        self.metrics = metrics

    def reverse(self, lat: float, lon: float, language: str = "en") -> List[AddressComponent]:
        """Address components of every result for the point, in result order.

        Returns an empty list on any failure or a non-OK status.
        """
        params = {"latlng": f"{lat},{lon}", "key": self.api_key, "language": language}
        if self.metrics is not None:
            self.metrics.inc_network("geocode")
        try:
            data = self.http.get_json(config.GEOCODE_URL, params=params)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Reverse geocode failed for %s,%s: %s", lat, lon, exc)
            return []

        if data.get("status") != "OK" or not isinstance(data.get("results"), list):
            logger.debug("Reverse geocode status %s for %s,%s", data.get("status"), lat, lon)
            return []

        components: List[AddressComponent] = []
        for result in data["results"]:
            for comp in result.get("address_components") or []:
                components.append(AddressComponent.from_api(comp))
        return components
