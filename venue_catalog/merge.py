"""Non-destructive upsert of resolved candidates into the venue store."""
from __future__ import annotations

import contextlib
import logging
import threading
from typing import Any, Dict, Iterable, Iterator, Optional

from . import config
from .canonical import CanonicalKey, should_replace
from .enrichment import price_tier_to_usd
from .models import DiscoveryCandidate, SecondaryMatch
from .store import VenueStore

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per string key, created on demand.

    ``hold`` acquires several keys in sorted order so two callers sharing keys
    cannot deadlock.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        locks = [self._lock_for(k) for k in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return bool(value)
    return True


def build_venue_fields(
    candidate: DiscoveryCandidate,
    key: CanonicalKey,
    city: str,
    match: Optional[SecondaryMatch] = None,
    neighborhood: Optional[str] = None,
) -> Dict[str, Any]:
    """Column values carried by this observation. Absent values are left out."""
    fields: Dict[str, Any] = {
        "canonical_key": key.value,
        "canonical_key_basis": key.basis,
        "city": city,
        "name": candidate.name,
        "latitude": candidate.lat,
        "longitude": candidate.lon,
        "neighborhood": neighborhood,
        "address": candidate.formatted_address,
        "primary_types": list(candidate.types),
    }
    if match is not None:
        fields.update(
            {
                "secondary_provider_id": match.secondary_id,
                "address": match.address or candidate.formatted_address,
                "opening_hours": list(match.opening_hours),
                "phone": match.phone,
                "website": match.website,
                "photo_urls": list(match.photo_urls),
                "price_tier": match.price_tier,
                "description": match.description,
                "secondary_categories": list(match.categories),
                "rating": match.rating,
                "rating_count": match.rating_count,
                "has_secondary_data": True,
            }
        )
    return {k: v for k, v in fields.items() if _present(v)}


class MergeEngine:
    def __init__(self, store: VenueStore, locks: Optional[KeyedLocks] = None) -> None:
        self.store = store
        self.locks = locks or KeyedLocks()

    def upsert(
        self,
        candidate: DiscoveryCandidate,
        key: CanonicalKey,
        city: str,
        match: Optional[SecondaryMatch] = None,
        neighborhood: Optional[str] = None,
    ) -> int:
        """Write the candidate and return its venue ID.

        Lookup order is provider ID (including IDs attached by earlier merges),
        then canonical key within the city, then insert.
        """
        with self.locks.hold(f"pid:{candidate.provider_id}", f"key:{city}:{key.value}"):
            fields = build_venue_fields(candidate, key, city, match, neighborhood)

            existing = self.store.find_by_provider_id(candidate.provider_id)
            if existing is None:
                existing = self.store.find_by_canonical_key(key.value, city)
                if existing is not None:
                    logger.info(
                        "Merging %s (%s) into venue %s by canonical key",
                        candidate.name,
                        candidate.provider_id,
                        existing["id"],
                    )
                    self.store.attach_provider_id(candidate.provider_id, existing["id"])

            if existing is None:
                fields["primary_provider_id"] = candidate.provider_id
                if match is None:
                    fields["rating"] = config.DEFAULT_UNVERIFIED_RATING
                    fields["has_secondary_data"] = False
                return self.store.upsert(fields)

            if not should_replace(existing.get("canonical_key_basis"), key):
                # The stored address fed the stored key; keep them together.
                for column in ("canonical_key", "canonical_key_basis", "address"):
                    fields.pop(column, None)
            if (
                match is None
                and existing.get("rating") is None
                and not existing.get("has_secondary_data")
            ):
                fields["rating"] = config.DEFAULT_UNVERIFIED_RATING
            if match is not None and not existing.get("has_secondary_data"):
                # First secondary data replaces the unverified placeholder, even with no rating.
                fields["rating"] = match.rating
                fields["rating_count"] = match.rating_count
            return self.store.upsert(fields, venue_id=existing["id"])

    def write_highlights(
        self,
        venue_id: int,
        candidate: DiscoveryCandidate,
        categories: Iterable[str],
        neighborhood: Optional[str] = None,
        match: Optional[SecondaryMatch] = None,
    ) -> None:
        """Upsert one active highlight per category. The featured flag is left alone."""
        fields: Dict[str, Any] = {
            "title": candidate.name,
            "neighborhood": neighborhood,
            "status": "active",
        }
        if match is not None:
            fields["short_description"] = match.description
            fields["url"] = match.website
            fields["avg_expected_price"] = price_tier_to_usd(match.price_tier)
        fields = {k: v for k, v in fields.items() if _present(v)}
        for category in sorted(set(categories)):
            self.store.upsert_highlight(venue_id, category, fields)
