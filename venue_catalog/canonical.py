"""Content-derived deduplication key for venues."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from .geo import geohash_encode
from .models import DiscoveryCandidate, SecondaryMatch

BASIS_SECONDARY_ADDRESS = "secondary_address"
BASIS_PRIMARY_ADDRESS = "primary_address"
BASIS_GEO = "geo"
BASIS_PROVIDER_ID = "provider_id"

# Higher is stronger. A stored key is only replaced by one of equal or higher rank.
BASIS_RANK = {
    BASIS_PROVIDER_ID: 0,
    BASIS_GEO: 1,
    BASIS_PRIMARY_ADDRESS: 2,
    BASIS_SECONDARY_ADDRESS: 3,
}

# Trailing comma segments up to this length are treated as city/country suffixes.
ADDRESS_SUFFIX_MAX_LEN = 30
GEOHASH_PRECISION = 7


@dataclass(frozen=True)
class CanonicalKey:
    value: str
    basis: str

    @property
    def rank(self) -> int:
        return BASIS_RANK[self.basis]


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_address(address: str) -> str:
    normalized = " ".join(address.lower().split())
    last_comma = normalized.rfind(",")
    if last_comma > 0:
        suffix = normalized[last_comma + 1 :].strip()
        if len(suffix) <= ADDRESS_SUFFIX_MAX_LEN:
            normalized = normalized[:last_comma].strip()
    return normalized


def normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def compute_key(
    candidate: DiscoveryCandidate, match: Optional[SecondaryMatch] = None
) -> CanonicalKey:
    """Derive the key from the best available input.

    Secondary address, then the primary formatted address, then name plus a
    7-character geohash, then the provider ID itself.
    """
    if match is not None and match.address and match.address.strip():
        return CanonicalKey(_sha256(normalize_address(match.address)), BASIS_SECONDARY_ADDRESS)
    if candidate.formatted_address and candidate.formatted_address.strip():
        return CanonicalKey(
            _sha256(normalize_address(candidate.formatted_address)), BASIS_PRIMARY_ADDRESS
        )
    if candidate.has_coordinates:
        geohash = geohash_encode(candidate.lat, candidate.lon, GEOHASH_PRECISION)
        return CanonicalKey(_sha256(normalize_name(candidate.name) + geohash), BASIS_GEO)
    return CanonicalKey(candidate.provider_id, BASIS_PROVIDER_ID)


def should_replace(stored_basis: Optional[str], new_key: CanonicalKey) -> bool:
    if stored_basis is None or stored_basis not in BASIS_RANK:
        return True
    return new_key.rank >= BASIS_RANK[stored_basis]
