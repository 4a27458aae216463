"""SQLite entity store for venues, highlights, ingestion runs and search responses."""
from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

VENUE_COLUMNS = (
    "primary_provider_id",
    "secondary_provider_id",
    "canonical_key",
    "canonical_key_basis",
    "city",
    "name",
    "latitude",
    "longitude",
    "neighborhood",
    "address",
    "opening_hours",
    "phone",
    "website",
    "photo_urls",
    "price_tier",
    "description",
    "primary_types",
    "secondary_categories",
    "rating",
    "rating_count",
    "has_secondary_data",
    "quality_score",
    "tier",
    "scored_at",
)
_JSON_LIST_COLUMNS = frozenset({"opening_hours", "photo_urls", "primary_types", "secondary_categories"})

HIGHLIGHT_COLUMNS = (
    "title",
    "short_description",
    "url",
    "avg_expected_price",
    "neighborhood",
    "status",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_request_cache_key(url: str, field_mask: str, body: Dict[str, Any]) -> str:
    payload = json.dumps(body, sort_keys=True, separators=(",", ":"))
    raw = f"{url}|{field_mask}|{payload}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_LIST_COLUMNS:
        return json.dumps(list(value or []))
    if column == "has_secondary_data":
        return 1 if value else 0
    return value


def _venue_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    venue: Dict[str, Any] = {"id": row["id"]}
    for column in VENUE_COLUMNS:
        value = row[column]
        if column in _JSON_LIST_COLUMNS:
            value = json.loads(value or "[]")
        elif column == "has_secondary_data":
            value = bool(value)
        venue[column] = value
    venue["created_at"] = row["created_at"]
    venue["updated_at"] = row["updated_at"]
    return venue


class VenueStore:
    """Entity store backed by one SQLite connection.

    Every statement runs under a re-entrant lock so the store can be shared by
    worker threads.
    """

    def __init__(self, db_path: str, commit_every: int = 50) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS venues (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                primary_provider_id TEXT NOT NULL UNIQUE,
                secondary_provider_id TEXT,
                canonical_key TEXT NOT NULL,
                canonical_key_basis TEXT NOT NULL,
                city TEXT NOT NULL,
                name TEXT,
                latitude REAL,
                longitude REAL,
                neighborhood TEXT,
                address TEXT,
                opening_hours TEXT,
                phone TEXT,
                website TEXT,
                photo_urls TEXT,
                price_tier INTEGER,
                description TEXT,
                primary_types TEXT,
                secondary_categories TEXT,
                rating REAL,
                rating_count INTEGER,
                has_secondary_data INTEGER NOT NULL DEFAULT 0,
                quality_score INTEGER,
                tier TEXT NOT NULL DEFAULT 'none',
                scored_at TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_venues_canonical ON venues (canonical_key, city)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS venue_provider_ids (
                provider_id TEXT PRIMARY KEY,
                venue_id INTEGER NOT NULL REFERENCES venues (id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS highlights (
                venue_id INTEGER NOT NULL REFERENCES venues (id),
                category TEXT NOT NULL,
                title TEXT,
                short_description TEXT,
                url TEXT,
                avg_expected_price INTEGER,
                neighborhood TEXT,
                is_featured INTEGER NOT NULL DEFAULT 0,
                status TEXT,
                created_at TEXT,
                updated_at TEXT,
                PRIMARY KEY (venue_id, category)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS places_search_cache (
                key TEXT PRIMARY KEY,
                response_json TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ingestion_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT,
                city TEXT,
                status TEXT,
                started_at TEXT,
                finished_at TEXT,
                fetched INTEGER,
                saved INTEGER,
                skipped INTEGER,
                failed INTEGER,
                discovery_calls INTEGER,
                enrichment_calls INTEGER,
                geocode_calls INTEGER,
                error TEXT
            )
            """
        )
        self.conn.commit()

    def _mark_dirty(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self._commit_every:
            self.commit()

    def commit(self) -> None:
        with self._lock:
            if self._pending_writes:
                self.conn.commit()
                self._pending_writes = 0

    def close(self) -> None:
        with self._lock:
            self.commit()
            self.conn.close()

    def __enter__(self) -> "VenueStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- search response cache ---

    def get_search_cache(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT response_json FROM places_search_cache WHERE key = ?", (key,))
            row = cur.fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_search_cache(self, key: str, response: Dict[str, Any]) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO places_search_cache (key, response_json, created_at)
                VALUES (?, ?, ?)
                """,
                (key, json.dumps(response), utc_now_iso()),
            )
            self._mark_dirty()

    # --- venues ---

    def get_venue(self, venue_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM venues WHERE id = ?", (venue_id,)).fetchone()
        return _venue_from_row(row) if row else None

    def find_by_provider_id(self, provider_id: str) -> Optional[Dict[str, Any]]:
        """Find a venue by any provider ID ever attached to it."""
        with self._lock:
            row = self.conn.execute(
                """
                SELECT v.* FROM venues v
                JOIN venue_provider_ids p ON p.venue_id = v.id
                WHERE p.provider_id = ?
                """,
                (provider_id,),
            ).fetchone()
        return _venue_from_row(row) if row else None

    def find_by_canonical_key(self, canonical_key: str, city: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM venues WHERE canonical_key = ? AND city = ? ORDER BY id LIMIT 1",
                (canonical_key, city),
            ).fetchone()
        return _venue_from_row(row) if row else None

    def upsert(self, fields: Mapping[str, Any], venue_id: Optional[int] = None) -> int:
        """Insert a new venue, or update the given columns of ``venue_id``.

        Only keys present in ``fields`` are written. A new venue's primary
        provider ID is attached to it automatically.
        """
        unknown = set(fields) - set(VENUE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown venue columns: {sorted(unknown)}")
        now = utc_now_iso()
        with self._lock:
            if venue_id is None:
                columns = list(fields) + ["created_at", "updated_at"]
                values = [_encode(c, fields[c]) for c in fields] + [now, now]
                placeholders = ", ".join("?" for _ in columns)
                cur = self.conn.execute(
                    f"INSERT INTO venues ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                new_id = int(cur.lastrowid)
                self.attach_provider_id(str(fields["primary_provider_id"]), new_id)
                self._mark_dirty()
                return new_id

            if "primary_provider_id" in fields:
                raise ValueError("primary_provider_id is immutable")
            columns = list(fields) + ["updated_at"]
            values = [_encode(c, fields[c]) for c in fields] + [now, venue_id]
            assignments = ", ".join(f"{c} = ?" for c in columns)
            self.conn.execute(f"UPDATE venues SET {assignments} WHERE id = ?", values)
            self._mark_dirty()
            return venue_id

    def attach_provider_id(self, provider_id: str, venue_id: int) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO venue_provider_ids (provider_id, venue_id) VALUES (?, ?)
                ON CONFLICT(provider_id) DO NOTHING
                """,
                (provider_id, venue_id),
            )
            self._mark_dirty()

    def provider_ids_for(self, venue_id: int) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT provider_id FROM venue_provider_ids WHERE venue_id = ? ORDER BY provider_id",
                (venue_id,),
            ).fetchall()
        return [row["provider_id"] for row in rows]

    def iter_venues(self, city: Optional[str] = None) -> Iterable[Dict[str, Any]]:
        with self._lock:
            if city is None:
                rows = self.conn.execute("SELECT * FROM venues ORDER BY id").fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM venues WHERE city = ? ORDER BY id", (city,)
                ).fetchall()
        for row in rows:
            yield _venue_from_row(row)

    def count_venues(self, city: Optional[str] = None) -> int:
        with self._lock:
            if city is None:
                row = self.conn.execute("SELECT COUNT(*) AS n FROM venues").fetchone()
            else:
                row = self.conn.execute(
                    "SELECT COUNT(*) AS n FROM venues WHERE city = ?", (city,)
                ).fetchone()
        return int(row["n"])

    def update_score(self, venue_id: int, score: int, tier: str) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE venues SET quality_score = ?, tier = ?, scored_at = ? WHERE id = ?",
                (score, tier, utc_now_iso(), venue_id),
            )
            self._mark_dirty()

    # --- highlights ---

    def upsert_highlight(self, venue_id: int, category: str, fields: Mapping[str, Any]) -> None:
        """Insert or update the (venue, category) highlight. ``is_featured`` is never written."""
        unknown = set(fields) - set(HIGHLIGHT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown highlight columns: {sorted(unknown)}")
        now = utc_now_iso()
        columns = list(fields)
        with self._lock:
            insert_columns = ["venue_id", "category"] + columns + ["created_at", "updated_at"]
            placeholders = ", ".join("?" for _ in insert_columns)
            updates = ", ".join(f"{c} = excluded.{c}" for c in columns + ["updated_at"])
            self.conn.execute(
                f"""
                INSERT INTO highlights ({', '.join(insert_columns)}) VALUES ({placeholders})
                ON CONFLICT(venue_id, category) DO UPDATE SET {updates}
                """,
                [venue_id, category] + [fields[c] for c in columns] + [now, now],
            )
            self._mark_dirty()

    def get_highlights(self, venue_id: int) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM highlights WHERE venue_id = ? ORDER BY category", (venue_id,)
            ).fetchall()
        return [
            {
                "venue_id": row["venue_id"],
                "category": row["category"],
                "title": row["title"],
                "short_description": row["short_description"],
                "url": row["url"],
                "avg_expected_price": row["avg_expected_price"],
                "neighborhood": row["neighborhood"],
                "is_featured": bool(row["is_featured"]),
                "status": row["status"],
            }
            for row in rows
        ]

    def set_featured(self, venue_id: int, category: str, featured: bool = True) -> None:
        """Flip the externally-owned featured flag (used by admin tooling and tests)."""
        with self._lock:
            self.conn.execute(
                "UPDATE highlights SET is_featured = ? WHERE venue_id = ? AND category = ?",
                (1 if featured else 0, venue_id, category),
            )
            self._mark_dirty()

    def featured_venue_ids(self, city: Optional[str] = None) -> Set[int]:
        with self._lock:
            if city is None:
                rows = self.conn.execute(
                    "SELECT DISTINCT venue_id FROM highlights WHERE is_featured = 1"
                ).fetchall()
            else:
                rows = self.conn.execute(
                    """
                    SELECT DISTINCT h.venue_id FROM highlights h
                    JOIN venues v ON v.id = h.venue_id
                    WHERE h.is_featured = 1 AND v.city = ?
                    """,
                    (city,),
                ).fetchall()
        return {int(row["venue_id"]) for row in rows}

    # --- ingestion runs ---

    def record_run(self, run: Mapping[str, Any]) -> int:
        columns = [
            "source",
            "city",
            "status",
            "started_at",
            "finished_at",
            "fetched",
            "saved",
            "skipped",
            "failed",
            "discovery_calls",
            "enrichment_calls",
            "geocode_calls",
            "error",
        ]
        with self._lock:
            cur = self.conn.execute(
                f"INSERT INTO ingestion_runs ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [run.get(c) for c in columns],
            )
            self.conn.commit()
            self._pending_writes = 0
            return int(cur.lastrowid)

    def list_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM ingestion_runs ORDER BY id").fetchall()
        return [dict(row) for row in rows]
