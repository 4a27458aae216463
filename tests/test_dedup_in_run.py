import threading
import time

from venue_catalog import config
from venue_catalog.http import HttpClient, RequestMetrics
from venue_catalog.places_client import PlacesClient, build_text_search_body
from venue_catalog.store import VenueStore, make_request_cache_key


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload
        self.status_code = 200
        self.headers = {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        return None


class FakeSession:
    def __init__(self, pages):
        self.pages = list(pages)
        self.calls = []
        self.bodies = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(url)
        self.bodies.append(data)
        payload = self.pages.pop(0) if self.pages else {}
        return FakeResponse(payload)


def make_http_client(pages):
    client = HttpClient(timeout=1, retry_max=1, backoff_base=0.0, backoff_max=0.0)
    client.session = FakeSession(pages)
    return client


class CountingStore(VenueStore):
    def __init__(self, db_path: str):
        super().__init__(db_path)
        self.search_calls = 0

    def get_search_cache(self, key):
        self.search_calls += 1
        return super().get_search_cache(key)


def test_places_dedup_with_cached_response():
    store = CountingStore(":memory:")
    http_client = make_http_client([{"places": [{"id": "p1"}]}])
    places_client = PlacesClient(http_client, store, "dummy", no_cache=False)

    body = build_text_search_body("café", -34.6, -58.4, 1500, "cafe")
    key = make_request_cache_key(config.PLACES_TEXT_SEARCH_URL, places_client.field_mask, body)
    cached_payload = {"places": [{"id": "p1"}]}
    store.set_search_cache(key, cached_payload)

    first = places_client.search_text("café", -34.6, -58.4, 1500, included_type="cafe")
    second = places_client.search_text("café", -34.6, -58.4, 1500, included_type="cafe")

    assert first == cached_payload
    assert second == cached_payload
    assert http_client.session.calls == []
    assert store.search_calls == 1
    store.close()


def test_dedup_without_cache_skips_network_on_second_call():
    store = VenueStore(":memory:")
    http_client = make_http_client([{"places": [{"id": "p1"}]}])
    metrics = RequestMetrics()
    places_client = PlacesClient(http_client, store, "dummy", no_cache=True, metrics=metrics)

    first = places_client.search_text("café", -34.6, -58.4, 1500)
    second = places_client.search_text("café", -34.6, -58.4, 1500)

    assert first == {"places": [{"id": "p1"}]}
    assert second == first
    assert http_client.session.calls.count(config.PLACES_TEXT_SEARCH_URL) == 1
    assert metrics.dedup_skips["discovery"] == 1
    store.close()


def test_network_response_is_cached_for_the_next_run():
    store = VenueStore(":memory:")
    first_client = PlacesClient(
        make_http_client([{"places": [{"id": "p1"}]}]), store, "dummy", no_cache=False
    )
    first_client.search_text("café", -34.6, -58.4, 1500)

    metrics = RequestMetrics()
    second_http = make_http_client([])
    second_client = PlacesClient(second_http, store, "dummy", no_cache=False, metrics=metrics)
    response = second_client.search_text("café", -34.6, -58.4, 1500)

    assert response == {"places": [{"id": "p1"}]}
    assert second_http.session.calls == []
    assert metrics.cache_hits["discovery"] == 1
    store.close()


def test_refresh_places_bypasses_cache_reads():
    store = VenueStore(":memory:")
    body = build_text_search_body("café", -34.6, -58.4, 1500)
    key = make_request_cache_key(config.PLACES_TEXT_SEARCH_URL, config.PLACES_FIELD_MASK, body)
    store.set_search_cache(key, {"places": [{"id": "stale"}]})

    http_client = make_http_client([{"places": [{"id": "fresh"}]}])
    places_client = PlacesClient(http_client, store, "dummy", refresh_places=True)

    assert places_client.search_text("café", -34.6, -58.4, 1500) == {"places": [{"id": "fresh"}]}
    assert store.get_search_cache(key) == {"places": [{"id": "fresh"}]}
    store.close()


def test_error_responses_are_not_cached():
    store = VenueStore(":memory:")
    http_client = make_http_client([{"error": {"code": 400, "message": "bad"}}])
    places_client = PlacesClient(http_client, store, "dummy")

    assert places_client.search_text_all("café", -34.6, -58.4, 1500) == []
    body = build_text_search_body("café", -34.6, -58.4, 1500)
    key = make_request_cache_key(config.PLACES_TEXT_SEARCH_URL, config.PLACES_FIELD_MASK, body)
    assert store.get_search_cache(key) is None
    store.close()


def test_search_text_all_follows_page_tokens():
    store = VenueStore(":memory:")
    http_client = make_http_client(
        [
            {"places": [{"id": "p1"}, {"id": "p2"}], "nextPageToken": "t1"},
            {"places": [{"id": "p3"}], "nextPageToken": "t2"},
            {"places": [{"id": "p4"}], "nextPageToken": "t3"},
        ]
    )
    places_client = PlacesClient(http_client, store, "dummy", no_cache=True)

    candidates = places_client.search_text_all("café", -34.6, -58.4, 1500, max_pages=2)

    assert [c.provider_id for c in candidates] == ["p1", "p2", "p3"]
    assert len(http_client.session.calls) == 2
    assert '"pageToken": "t1"' in http_client.session.bodies[1]
    store.close()


class BlockingSession(FakeSession):
    def __init__(self, pages):
        super().__init__(pages)
        self.release = threading.Event()

    def post(self, url, data=None, headers=None, timeout=None):
        self.release.wait(timeout=5)
        return super().post(url, data=data, headers=headers, timeout=timeout)


def test_repeated_request_waits_for_in_flight_response():
    store = VenueStore(":memory:")
    http_client = HttpClient(timeout=1, retry_max=1, backoff_base=0.0, backoff_max=0.0)
    session = BlockingSession([{"places": [{"id": "p1"}]}])
    http_client.session = session
    metrics = RequestMetrics()
    places_client = PlacesClient(http_client, store, "dummy", no_cache=True, metrics=metrics)
    results = {}

    def search(name):
        results[name] = places_client.search_text("café", -34.6, -58.4, 1500)

    first = threading.Thread(target=search, args=("first",))
    first.start()
    while not places_client._pending:
        time.sleep(0.01)
    second = threading.Thread(target=search, args=("second",))
    second.start()
    deadline = time.time() + 5
    while metrics.dedup_skips["discovery"] == 0 and time.time() < deadline:
        time.sleep(0.01)
    session.release.set()
    first.join()
    second.join()

    assert results["first"] == {"places": [{"id": "p1"}]}
    assert results["second"] == results["first"]
    assert len(session.calls) == 1
    store.close()
