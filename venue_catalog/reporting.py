"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, TextIO


class MetricsSource(Protocol):
    def snapshot(self) -> Dict[str, Dict[str, int]]: ...


CATALOG_FIELDNAMES = [
    "id",
    "name",
    "city",
    "neighborhood",
    "address",
    "latitude",
    "longitude",
    "primary_provider_id",
    "secondary_provider_id",
    "provider_ids",
    "canonical_key",
    "canonical_key_basis",
    "rating",
    "rating_count",
    "has_secondary_data",
    "quality_score",
    "tier",
    "price_tier",
    "phone",
    "website",
    "opening_hours",
    "primary_types",
    "secondary_categories",
    "description",
    "updated_at",
]
_LIST_FIELDS = ("provider_ids", "opening_hours", "primary_types", "secondary_categories")


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_catalog_json(path: str, venues: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(list(venues), f, ensure_ascii=False, indent=2)


def write_catalog_csv(path: str, venues: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CATALOG_FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        for venue in venues:
            out = dict(venue)
            for key in _LIST_FIELDS:
                out[key] = json.dumps(out.get(key) or [], ensure_ascii=False)
            writer.writerow(out)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines) + "\n")


class ProgressReporter:
    """Stage progress for long runs: a log line every ``log_every`` items and a
    throttled ``progress.json`` heartbeat.

    ``advance`` optionally takes the item's outcome (saved/skipped/failed),
    tallied per stage.
    """

    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 50,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[MetricsSource] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(0, int(log_every or 0))
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        self.stage = "init"
        self.done = 0
        self.expected: Optional[int] = None
        self.outcomes: Counter = Counter()
        self._stage_started = time.monotonic()
        self._last_write: Optional[float] = None

    def set_stage(self, stage: str, total_estimate: Optional[int] = None) -> None:
        self.stage = stage
        self.done = 0
        self.expected = total_estimate
        self.outcomes = Counter()
        self._stage_started = time.monotonic()
        self._write(force=True)

    def advance(self, outcome: Optional[str] = None) -> None:
        self.done += 1
        if outcome:
            self.outcomes[outcome] += 1
        if self.log_every and self.done % self.log_every == 0:
            expected = f"/{self.expected}" if self.expected is not None else ""
            calls = ", ".join(f"{k}={v}" for k, v in self._network_requests().items())
            self.logger.info(
                "Progress: stage=%s done=%s%s outcomes=%s requests=[%s]",
                self.stage,
                self.done,
                expected,
                dict(self.outcomes),
                calls,
            )
        self._write()

    def flush(self) -> None:
        self._write(force=True)

    def _network_requests(self) -> Dict[str, int]:
        if self.metrics is None:
            return {}
        return dict(self.metrics.snapshot()["network"])

    def _write(self, force: bool = False) -> None:
        if not self.output_path:
            return
        now = time.monotonic()
        if (
            not force
            and self._last_write is not None
            and (now - self._last_write) < self.write_interval_seconds
        ):
            return
        write_json_object(
            self.output_path,
            {
                "stage": self.stage,
                "done": self.done,
                "expected": self.expected,
                "outcomes": dict(self.outcomes),
                "requests": self._network_requests(),
                "stage_elapsed_seconds": round(now - self._stage_started, 1),
                "timestamp": utc_now_iso(),
            },
        )
        self._last_write = now
