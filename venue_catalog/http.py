"""HTTP client with retry/backoff, request metrics and the enrichment call budget."""
from __future__ import annotations

import enum
import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("discovery", "enrichment", "geocode")
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


@dataclass
class RequestMetrics:
    network: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    cache_hits: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    dedup_skips: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def discovery_count(self) -> int:
        return self.network["discovery"]

    @property
    def enrichment_count(self) -> int:
        return self.network["enrichment"]

    @property
    def geocode_count(self) -> int:
        return self.network["geocode"]

    def _inc(self, bucket: Dict[str, int], kind: str) -> None:
        if kind not in bucket:
            raise ValueError(f"Unknown request kind: {kind}")
        with self._lock:
            bucket[kind] += 1

    def inc_network(self, kind: str) -> None:
        self._inc(self.network, kind)

    def inc_cache_hit(self, kind: str) -> None:
        self._inc(self.cache_hits, kind)

    def inc_dedup_skip(self, kind: str) -> None:
        self._inc(self.dedup_skips, kind)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {
                "network": dict(self.network),
                "cache_hits": dict(self.cache_hits),
                "dedup_skips": dict(self.dedup_skips),
            }


class BudgetState(enum.Enum):
    ACTIVE = "active"
    LIMITED = "limited"


class CallBudget:
    """Run-scoped call counter shared by every enrichment worker.

    Starts ACTIVE and moves to LIMITED exactly once, either when the cap is
    reached or when ``trip`` is called (auth/quota failure). A ``max_calls``
    of None means no cap.
    """

    def __init__(self, max_calls: Optional[int] = None) -> None:
        if max_calls is not None and max_calls < 0:
            raise ValueError("max_calls must be >= 0 or None")
        self.max_calls = max_calls
        self._calls = 0
        self._state = BudgetState.ACTIVE
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return self._calls

    @property
    def state(self) -> BudgetState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    @property
    def is_limited(self) -> bool:
        return self.state is BudgetState.LIMITED

    def try_acquire(self) -> bool:
        """Reserve one call. Returns False once the budget is LIMITED."""
        with self._lock:
            if self._state is BudgetState.LIMITED:
                return False
            if self.max_calls is not None and self._calls >= self.max_calls:
                self._limit("budget_exhausted")
                return False
            self._calls += 1
            return True

    def trip(self, reason: str) -> None:
        with self._lock:
            if self._state is BudgetState.ACTIVE:
                self._limit(reason)

    def _limit(self, reason: str) -> None:
        self._state = BudgetState.LIMITED
        self._reason = reason
        logger.warning(
            "Enrichment rate-limited (%s) after %s calls; skipping enrichment for the rest of the run",
            reason,
            self._calls,
        )


class HttpClient:
    def __init__(
        self,
        timeout: int = 20,
        retry_max: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        call_delay: float = 0.0,
        retry_statuses: Iterable[int] = RETRYABLE_STATUSES,
    ) -> None:
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.call_delay = call_delay
        self.retry_statuses = frozenset(retry_statuses)
        self._local = threading.local()
        self._session_override: Optional[Any] = None

    @property
    def session(self) -> Any:
        if self._session_override is not None:
            return self._session_override
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    @session.setter
    def session(self, value: Any) -> None:
        self._session_override = value

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        merged = {"Content-Type": "application/json"}
        if headers:
            merged.update(headers)
        payload = json.dumps(body)
        return self._request("POST", url, data=payload, headers=merged)

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return self._request("GET", url, params=params, headers=headers or {})

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        for attempt in range(1, self.retry_max + 1):
            try:
                if method == "POST":
                    resp = self.session.post(url, timeout=self.timeout, **kwargs)
                else:
                    resp = self.session.get(url, timeout=self.timeout, **kwargs)
            except requests.RequestException:
                self._sleep_call_delay()
                if attempt >= self.retry_max:
                    raise
                self._sleep_backoff(attempt)
                continue
            self._sleep_call_delay()

            status = resp.status_code
            if status == 200:
                try:
                    return resp.json()
                except ValueError:
                    logger.error("Non-JSON response from %s", url)
                    raise

            if status in self.retry_statuses:
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    resp.raise_for_status()
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            resp.raise_for_status()
            raise requests.HTTPError(f"HTTP {status} from {url}", response=resp)

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_call_delay(self) -> None:
        if self.call_delay > 0:
            time.sleep(self.call_delay)

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True


def status_code_of(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    return getattr(response, "status_code", None)
