import pytest
import requests

from venue_catalog import config, http
from venue_catalog.http import HttpClient, RequestMetrics
from venue_catalog.places_client import PlacesClient, build_text_search_body
from venue_catalog.store import VenueStore, make_request_cache_key


class FakeResponse:
    def __init__(self, payload, status_code=200, headers=None):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("POST", url, data, headers))
        return self.responses.pop(0)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(("GET", url, params, headers))
        return self.responses.pop(0)


def make_http_client(responses, retry_max=3):
    client = HttpClient(timeout=1, retry_max=retry_max, backoff_base=0.0, backoff_max=0.0)
    client.session = FakeSession(responses)
    return client


def test_retries_retryable_status_then_succeeds(monkeypatch):
    sleeps = []
    monkeypatch.setattr(http.time, "sleep", sleeps.append)
    client = make_http_client(
        [
            FakeResponse({}, status_code=429, headers={"Retry-After": "2"}),
            FakeResponse({}, status_code=503),
            FakeResponse({"ok": True}),
        ],
        retry_max=3,
    )
    client.backoff_max = 5.0

    assert client.get_json("https://example.test/x") == {"ok": True}
    assert len(client.session.calls) == 3
    assert sleeps[0] == 2.0


def test_retryable_status_raises_after_last_attempt(monkeypatch):
    monkeypatch.setattr(http.time, "sleep", lambda _s: None)
    client = make_http_client([FakeResponse({}, status_code=500) for _ in range(2)], retry_max=2)

    with pytest.raises(requests.HTTPError) as excinfo:
        client.get_json("https://example.test/x")
    assert http.status_code_of(excinfo.value) == 500
    assert len(client.session.calls) == 2


def test_non_retryable_status_raises_immediately():
    client = make_http_client([FakeResponse({}, status_code=404)])

    with pytest.raises(requests.HTTPError):
        client.get_json("https://example.test/x")
    assert len(client.session.calls) == 1


def test_call_delay_sleeps_after_each_request(monkeypatch):
    sleeps = []
    monkeypatch.setattr(http.time, "sleep", sleeps.append)
    client = make_http_client([FakeResponse({"a": 1}), FakeResponse({"b": 2})])
    client.call_delay = 0.2

    client.get_json("https://example.test/a")
    client.get_json("https://example.test/b")

    assert sleeps == [0.2, 0.2]


def test_post_json_sends_serialized_body_and_headers():
    client = make_http_client([FakeResponse({"places": []})])

    client.post_json("https://example.test/search", {"textQuery": "café"}, {"X-Goog-Api-Key": "k"})

    method, url, data, headers = client.session.calls[0]
    assert method == "POST"
    assert '"textQuery"' in data
    assert headers["Content-Type"] == "application/json"
    assert headers["X-Goog-Api-Key"] == "k"


def test_metrics_reject_unknown_kind():
    metrics = RequestMetrics()
    with pytest.raises(ValueError):
        metrics.inc_network("routes")


def test_network_counters_increment_with_mock_http():
    metrics = RequestMetrics()
    store = VenueStore(":memory:")
    http_client = make_http_client([FakeResponse({"places": []}) for _ in range(3)])
    places_client = PlacesClient(http_client, store, "dummy", no_cache=True, metrics=metrics)

    for radius in (1000, 2000, 3000):
        places_client.search_text("café", -34.6, -58.4, radius, included_type="cafe")

    snapshot = metrics.snapshot()
    assert snapshot["network"]["discovery"] == 3
    assert snapshot["cache_hits"]["discovery"] == 0
    assert metrics.discovery_count == 3
    assert metrics.enrichment_count == 0
    store.close()


def test_cache_hits_increment_without_network():
    metrics = RequestMetrics()
    store = VenueStore(":memory:")
    http_client = make_http_client([])
    places_client = PlacesClient(http_client, store, "dummy", no_cache=False, metrics=metrics)

    body = build_text_search_body("café", -34.6, -58.4, 1500, "cafe")
    key = make_request_cache_key(config.PLACES_TEXT_SEARCH_URL, places_client.field_mask, body)
    store.set_search_cache(key, {"places": [{"id": "p1"}]})

    response = places_client.search_text("café", -34.6, -58.4, 1500, included_type="cafe")

    assert response == {"places": [{"id": "p1"}]}
    assert metrics.discovery_count == 0
    assert metrics.cache_hits["discovery"] == 1
    assert http_client.session.calls == []
    store.close()
