"""Transient records passed between pipeline stages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class AddressComponent:
    long_name: str
    short_name: str = ""
    types: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "AddressComponent":
        # Places v1 uses longText/shortText, Geocoding uses long_name/short_name.
        long_name = data.get("longText") or data.get("long_name") or ""
        short_name = data.get("shortText") or data.get("short_name") or ""
        return cls(
            long_name=str(long_name),
            short_name=str(short_name),
            types=tuple(data.get("types") or ()),
        )


@dataclass(frozen=True)
class DiscoveryCandidate:
    """One place as returned by the discovery provider. Rating is on a 0-5 scale."""

    provider_id: str
    name: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    formatted_address: Optional[str] = None
    address_components: Tuple[AddressComponent, ...] = ()
    types: Tuple[str, ...] = ()
    primary_type: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass
class SecondaryMatch:
    """Enrichment payload from the secondary provider. Rating is on a 0-10 scale."""

    secondary_id: str
    name: Optional[str] = None
    address: Optional[str] = None
    opening_hours: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    price_tier: Optional[int] = None
    neighborhood: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    description: Optional[str] = None
    photo_urls: List[str] = field(default_factory=list)

