import json
import sqlite3
import threading
from pathlib import Path

import requests

from venue_catalog.config import CategoryConfig, CityConfig
from venue_catalog.enrichment import EnrichmentClient
from venue_catalog.http import CallBudget, HttpClient
from venue_catalog.models import SecondaryMatch
from venue_catalog.pipeline import render_summary, run
from venue_catalog.places_client import parse_places_response
from venue_catalog.store import VenueStore

CENTER_LAT = -34.60
CENTER_LON = -58.42

CITY = CityConfig(
    slug="test-city",
    name="Test City",
    center_lat=CENTER_LAT,
    center_lon=CENTER_LON,
    radius_m=2000,
    neighborhoods=("Palermo", "Villa Crespo"),
    categories=(CategoryConfig(slug="coffee", query="coffee", included_type="cafe"),),
    grid_rows=1,
    grid_cols=2,
    min_rating_gate=4.0,
    min_reviews_gate=10,
)

VOLATILE_COLUMNS = {"created_at", "updated_at", "scored_at"}


def load_fixture(name):
    path = Path(__file__).parent / "fixtures" / name
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class FakePlacesClient:
    """Serves the west fixture for the western tile and the east fixture for the eastern one."""

    def __init__(self, swap: bool = False):
        west = load_fixture("places_west.json")
        east = load_fixture("places_east.json")
        self.fixtures = {"west": east, "east": west} if swap else {"west": west, "east": east}
        self.calls = []

    def search_text_all(
        self, query, lat, lon, radius_m, included_type=None, max_pages=None, max_results=None
    ):
        self.calls.append((query, lat, lon, included_type))
        side = "west" if lon < CENTER_LON else "east"
        return parse_places_response(self.fixtures[side])


def almacen_match():
    return SecondaryMatch(
        secondary_id="fsq-almacen",
        name="Café Almacén",
        address="Av. Corrientes 1234, Buenos Aires",
        opening_hours=["Mon: 0800-2000"],
        phone="+54 11 4555 0000",
        website="https://almacen.example",
        rating=8.9,
        rating_count=210,
        price_tier=2,
        neighborhood="Villa Crespo",
        categories=["Café"],
        description="Corner café with medialunas",
    )


def roasters_match():
    return SecondaryMatch(
        secondary_id="fsq-roasters",
        name="Palermo Roasters",
        address="Honduras 5000, Buenos Aires",
        rating=8.4,
        rating_count=60,
    )


class FakeEnrichmentClient:
    def __init__(self, matches=None):
        self.matches = matches or {}
        self.calls = []
        self._lock = threading.Lock()

    def enrich(self, candidate):
        with self._lock:
            self.calls.append(candidate.provider_id)
        factory = self.matches.get(candidate.provider_id)
        return factory() if factory else None


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.headers = {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class RateLimitedSession:
    def __init__(self):
        self.calls = []

    def get(self, url, timeout=None, params=None, headers=None):
        self.calls.append(url)
        return FakeResponse({}, status_code=429)


def run_offline(store, **kwargs):
    kwargs.setdefault("places_client", FakePlacesClient())
    kwargs.setdefault("enrichment_client", FakeEnrichmentClient())
    kwargs.setdefault("write_outputs", False)
    kwargs.setdefault("discovery_workers", 2)
    kwargs.setdefault("enrichment_workers", 2)
    return run(CITY, store=store, **kwargs)


def snapshot(store):
    rows = []
    for venue in store.iter_venues():
        row = {k: v for k, v in venue.items() if k not in VOLATILE_COLUMNS}
        row["provider_ids"] = store.provider_ids_for(venue["id"])
        row["highlights"] = store.get_highlights(venue["id"])
        rows.append(row)
    return rows


def identity_set(store):
    return {
        (venue["canonical_key"], frozenset(store.provider_ids_for(venue["id"])))
        for venue in store.iter_venues()
    }


def test_same_venue_from_two_tiles_becomes_one_record():
    store = VenueStore(":memory:")
    result = run_offline(store)

    first = store.find_by_provider_id("p-almacen-1")
    second = store.find_by_provider_id("p-almacen-2")
    assert first is not None
    assert first["id"] == second["id"]
    assert store.provider_ids_for(first["id"]) == ["p-almacen-1", "p-almacen-2"]
    assert first["canonical_key_basis"] == "primary_address"
    assert first["neighborhood"] == "Villa Crespo"
    assert store.count_venues() == 2

    assert result.summary["fetched"] == 3
    assert result.summary["saved"] == 3
    assert result.summary["failed"] == 0
    assert result.summary["per_category"] == {"coffee": 3}
    assert len(result.venues) == 2
    store.close()


def test_admission_gate_excludes_low_rating_and_few_reviews():
    store = VenueStore(":memory:")
    run_offline(store)

    assert store.find_by_provider_id("p-low") is None
    assert store.find_by_provider_id("p-few") is None
    store.close()


def test_unenriched_venues_get_default_rating_and_address_neighborhood():
    store = VenueStore(":memory:")
    run_offline(store)

    roasters = store.find_by_provider_id("p-roasters")
    assert roasters["rating"] == 9.0
    assert roasters["has_secondary_data"] is False
    assert roasters["neighborhood"] == "Palermo"
    assert roasters["canonical_key_basis"] == "primary_address"

    highlights = store.get_highlights(roasters["id"])
    assert [h["category"] for h in highlights] == ["coffee"]
    assert highlights[0]["title"] == "Palermo Roasters"
    assert highlights[0]["status"] == "active"
    assert highlights[0]["is_featured"] is False
    store.close()


def test_enriched_run_merges_on_secondary_address():
    store = VenueStore(":memory:")
    enrichment = FakeEnrichmentClient(
        {"p-almacen-1": almacen_match, "p-almacen-2": almacen_match}
    )
    run_offline(store, enrichment_client=enrichment)

    venue = store.find_by_provider_id("p-almacen-2")
    assert venue["canonical_key_basis"] == "secondary_address"
    assert venue["has_secondary_data"] is True
    assert venue["phone"] == "+54 11 4555 0000"
    assert venue["rating"] == 8.9
    assert venue["opening_hours"] == ["Mon: 0800-2000"]
    assert store.provider_ids_for(venue["id"]) == ["p-almacen-1", "p-almacen-2"]
    assert sorted(enrichment.calls) == ["p-almacen-1", "p-almacen-2", "p-roasters"]

    highlight = store.get_highlights(venue["id"])[0]
    assert highlight["url"] == "https://almacen.example"
    assert highlight["avg_expected_price"] == 25
    assert highlight["short_description"] == "Corner café with medialunas"
    store.close()


def test_rerun_with_same_inputs_is_idempotent():
    store = VenueStore(":memory:")
    matches = {"p-almacen-1": almacen_match, "p-almacen-2": almacen_match}

    run_offline(store, enrichment_client=FakeEnrichmentClient(matches), enrichment_workers=1)
    first = snapshot(store)
    run_offline(store, enrichment_client=FakeEnrichmentClient(matches), enrichment_workers=1)
    second = snapshot(store)

    assert first == second
    assert len(store.list_runs()) == 2
    store.close()


def test_venue_identity_does_not_depend_on_discovery_order():
    forward = VenueStore(":memory:")
    run_offline(forward, discovery_workers=1, enrichment_workers=1)

    swapped = VenueStore(":memory:")
    run_offline(
        swapped,
        places_client=FakePlacesClient(swap=True),
        discovery_workers=4,
        enrichment_workers=4,
    )

    assert identity_set(forward) == identity_set(swapped)
    forward.close()
    swapped.close()


def test_incremental_run_skips_venues_with_secondary_data():
    store = VenueStore(":memory:")
    first_pass = FakeEnrichmentClient(
        {"p-almacen-1": almacen_match, "p-almacen-2": almacen_match}
    )
    run_offline(store, enrichment_client=first_pass)

    second_pass = FakeEnrichmentClient({"p-roasters": roasters_match})
    result = run_offline(store, enrichment_client=second_pass, incremental=True)

    assert second_pass.calls == ["p-roasters"]
    assert result.summary["skipped"] == 2
    assert result.summary["saved"] == 1
    roasters = store.find_by_provider_id("p-roasters")
    assert roasters["has_secondary_data"] is True
    assert roasters["rating"] == 8.4
    store.close()


def test_store_failure_is_counted_and_run_continues():
    class FailingStore(VenueStore):
        def upsert(self, fields, venue_id=None):
            if fields.get("name") == "Palermo Roasters":
                raise sqlite3.OperationalError("disk I/O error")
            return super().upsert(fields, venue_id)

    store = FailingStore(":memory:")
    result = run_offline(store)

    assert result.summary["failed"] == 1
    assert result.summary["saved"] == 2
    assert result.summary["per_category"] == {"coffee": 2}
    assert store.find_by_provider_id("p-roasters") is None
    assert store.count_venues() == 1
    store.close()


def test_rate_limited_enrichment_still_saves_candidates():
    http_client = HttpClient(timeout=1, retry_max=1, backoff_base=0.0, backoff_max=0.0)
    session = RateLimitedSession()
    http_client.session = session
    enrichment = EnrichmentClient(http_client, "dummy", CallBudget(None), CITY)

    store = VenueStore(":memory:")
    result = run_offline(store, enrichment_client=enrichment, enrichment_workers=1)

    assert len(session.calls) == 1
    assert result.summary["enrichment_state"] == "limited"
    assert result.summary["enrichment_limit_reason"] == "http_429"
    assert result.summary["saved"] == 3
    assert all(not v["has_secondary_data"] for v in store.iter_venues())
    assert "Enrichment: LIMITED (http_429)" in render_summary(result.summary)
    store.close()


class MalformedDetailsSession:
    def __init__(self):
        self.calls = []

    def get(self, url, timeout=None, params=None, headers=None):
        self.calls.append(url)
        if url.endswith("/places/search"):
            return FakeResponse({"results": [{"fsq_place_id": "fsq-odd", "name": "Odd"}]})
        return FakeResponse(
            {
                "hours": "Mon-Fri 9-17",
                "location": "Palermo",
                "stats": [1],
                "categories": "Cafe",
                "photos": [{"prefix": 1}],
            }
        )


def test_malformed_enrichment_payload_does_not_stop_the_run():
    http_client = HttpClient(timeout=1, retry_max=1, backoff_base=0.0, backoff_max=0.0)
    http_client.session = MalformedDetailsSession()
    enrichment = EnrichmentClient(http_client, "dummy", CallBudget(None), CITY)

    store = VenueStore(":memory:")
    result = run_offline(store, enrichment_client=enrichment, enrichment_workers=1)

    assert result.summary["saved"] == 3
    assert result.summary["failed"] == 0
    roasters = store.find_by_provider_id("p-roasters")
    assert roasters["has_secondary_data"] is True
    assert roasters["opening_hours"] == ["Mon-Fri 9-17"]
    assert roasters["photo_urls"] == []
    assert len(store.list_runs()) == 1
    store.close()


def test_unexpected_worker_error_is_counted_and_run_continues():
    def broken_match():
        raise TypeError("unexpected payload shape")

    enrichment = FakeEnrichmentClient({"p-roasters": broken_match})
    store = VenueStore(":memory:")
    result = run_offline(store, enrichment_client=enrichment)

    assert result.summary["failed"] == 1
    assert result.summary["saved"] == 2
    assert store.find_by_provider_id("p-roasters") is None
    assert len(store.list_runs()) == 1
    store.close()


def test_score_after_scores_every_venue():
    store = VenueStore(":memory:")
    run_offline(store, score_after=True)

    venues = list(store.iter_venues())
    assert venues
    for venue in venues:
        assert venue["quality_score"] is not None
        assert 0 <= venue["quality_score"] <= 60
        assert venue["tier"] == "none"
    store.close()


def test_outputs_written(tmp_path):
    out_dir = tmp_path / "out"
    store = VenueStore(":memory:")
    run_offline(store, write_outputs=True, output_dir=str(out_dir))

    for name in ("catalog.json", "catalog.csv", "summary.txt", "progress.json"):
        assert (out_dir / name).exists()

    catalog = json.loads((out_dir / "catalog.json").read_text(encoding="utf-8"))
    assert len(catalog) == 2
    almacen = next(v for v in catalog if "p-almacen-1" in v["provider_ids"])
    assert almacen["provider_ids"] == ["p-almacen-1", "p-almacen-2"]

    summary = (out_dir / "summary.txt").read_text(encoding="utf-8")
    assert "City: test-city" in summary
    assert "Candidates: fetched=3, saved=3, skipped=0, failed=0" in summary

    progress = json.loads((out_dir / "progress.json").read_text(encoding="utf-8"))
    assert progress["stage"] == "outputs"
    store.close()
