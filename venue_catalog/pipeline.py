"""Pipeline orchestration."""
from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from . import config
from .canonical import compute_key
from .config import CategoryConfig, CityConfig
from .discovery import AdmissionGate, DiscoveryClient, resolve_gate
from .enrichment import EnrichmentClient
from .geo import build_tiles
from .geocoding import ReverseGeocoder
from .http import CallBudget, HttpClient, RequestMetrics
from .merge import MergeEngine
from .models import DiscoveryCandidate
from .neighborhoods import NeighborhoodBoundaries, NeighborhoodResolver
from .places_client import PlacesClient
from .reporting import (
    ProgressReporter,
    ensure_dir,
    utc_now_iso,
    write_catalog_csv,
    write_catalog_json,
    write_summary,
)
from .scoring import score_catalog
from .store import VenueStore

logger = logging.getLogger(__name__)

STATUS_SAVED = "saved"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class PipelineResult:
    venues: List[Dict[str, Any]]
    summary: Dict[str, Any]


def select_categories(
    city: CityConfig, category_filter: Optional[Sequence[str]] = None
) -> List[CategoryConfig]:
    if not category_filter:
        return list(city.categories)
    wanted = {c.strip() for c in category_filter if c.strip()}
    unknown = wanted - {c.slug for c in city.categories}
    if unknown:
        raise ValueError(f"Unknown categories for {city.slug}: {', '.join(sorted(unknown))}")
    return [c for c in city.categories if c.slug in wanted]


def run(
    city: CityConfig,
    primary_api_key: Optional[str] = None,
    secondary_api_key: Optional[str] = None,
    db_path: str = config.DB_PATH,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
    incremental: bool = False,
    category_filter: Optional[Sequence[str]] = None,
    max_enrichment_calls: Optional[int] = None,
    no_cache: bool = False,
    refresh_places: bool = False,
    discovery_workers: int = config.DISCOVERY_WORKERS,
    enrichment_workers: int = config.ENRICHMENT_WORKERS,
    score_after: bool = False,
    store: Optional[VenueStore] = None,
    places_client: Optional[PlacesClient] = None,
    enrichment_client: Optional[EnrichmentClient] = None,
    geocoder: Optional[ReverseGeocoder] = None,
    boundaries: Optional[NeighborhoodBoundaries] = None,
    metrics: Optional[RequestMetrics] = None,
) -> PipelineResult:
    """Discover, enrich, resolve and merge one city's venues into the store.

    Clients and the store can be injected; anything not injected is built from
    the API keys and config. An injected store is left open.
    """
    started_at = utc_now_iso()
    if metrics is None:
        metrics = RequestMetrics()
    categories = select_categories(city, category_filter)

    if write_outputs:
        ensure_dir(output_dir)
    progress = ProgressReporter(
        output_path=f"{output_dir}/progress.json" if write_outputs else None,
        log_every=config.PROGRESS_LOG_EVERY,
        write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
        logger=logger,
        metrics=metrics,
    )

    owns_store = store is None
    if store is None:
        store = VenueStore(db_path)

    try:
        discovery_http = HttpClient(
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
            call_delay=config.HTTP_CALL_DELAY_SECONDS,
        )
        if places_client is None:
            if not primary_api_key:
                raise ValueError(f"Missing {config.PRIMARY_API_KEY_ENV}")
            places_client = PlacesClient(
                discovery_http,
                store,
                primary_api_key,
                no_cache=no_cache,
                refresh_places=refresh_places,
                metrics=metrics,
            )
        if geocoder is None and primary_api_key:
            geocoder = ReverseGeocoder(discovery_http, primary_api_key, metrics=metrics)

        budget: Optional[CallBudget] = getattr(enrichment_client, "budget", None)
        if enrichment_client is None and secondary_api_key:
            budget = CallBudget(max_enrichment_calls)
            enrichment_http = HttpClient(
                timeout=config.HTTP_TIMEOUT_SECONDS,
                retry_max=config.ENRICHMENT_HTTP_RETRY_MAX,
                call_delay=config.HTTP_CALL_DELAY_SECONDS,
            )
            enrichment_client = EnrichmentClient(
                enrichment_http, secondary_api_key, budget, city, metrics=metrics
            )
        if enrichment_client is None:
            logger.warning("No enrichment client configured; venues will be saved without secondary data")

        if boundaries is None and city.boundaries_path:
            boundaries = NeighborhoodBoundaries.from_geojson(
                city.boundaries_path, city.boundary_name_property
            )

        # Stage 1: discovery
        logger.info("Stage 1: discovery (%s, %s categories)", city.slug, len(categories))
        candidates, categories_by_id = discover_city(
            city,
            categories,
            DiscoveryClient(places_client),
            workers=discovery_workers,
            progress=progress,
        )
        logger.info("Discovered %s unique admitted candidates", len(candidates))

        # Stage 2: enrichment, resolution and merge
        logger.info("Stage 2: enrich + merge")
        resolver = NeighborhoodResolver(city, boundaries=boundaries, geocoder=geocoder)
        merge_engine = MergeEngine(store)
        statuses = process_candidates(
            city,
            candidates,
            categories_by_id,
            store,
            merge_engine,
            resolver,
            enrichment_client,
            incremental=incremental,
            workers=enrichment_workers,
            progress=progress,
        )
        store.commit()

        if score_after:
            logger.info("Stage 3: quality scoring")
            progress.set_stage("scoring")
            score_catalog(store, city.name)

        venues = catalog_rows(store, city.name)
        status_counts = Counter(statuses.values())
        per_category: Counter = Counter()
        for provider_id, status in statuses.items():
            if status != STATUS_FAILED:
                per_category.update(categories_by_id[provider_id])
        neighborhood_counts = Counter(v["neighborhood"] for v in venues if v.get("neighborhood"))

        snapshot = metrics.snapshot()
        summary: Dict[str, Any] = {
            "city": city.slug,
            "fetched": len(candidates),
            "saved": status_counts.get(STATUS_SAVED, 0),
            "skipped": status_counts.get(STATUS_SKIPPED, 0),
            "failed": status_counts.get(STATUS_FAILED, 0),
            "venues_total": len(venues),
            "discovery_requests": snapshot["network"]["discovery"],
            "enrichment_requests": snapshot["network"]["enrichment"],
            "geocode_requests": snapshot["network"]["geocode"],
            "cache_hits_discovery": snapshot["cache_hits"]["discovery"],
            "dedup_skips_discovery": snapshot["dedup_skips"]["discovery"],
            "enrichment_state": (
                budget.state.value
                if budget is not None
                else ("active" if enrichment_client is not None else "disabled")
            ),
            "enrichment_limit_reason": budget.reason if budget is not None else None,
            "per_category": dict(sorted(per_category.items())),
            "top_neighborhoods": neighborhood_counts.most_common(15),
        }

        store.record_run(
            {
                "source": f"pipeline:{city.slug}",
                "city": city.slug,
                "status": "success",
                "started_at": started_at,
                "finished_at": utc_now_iso(),
                "fetched": summary["fetched"],
                "saved": summary["saved"],
                "skipped": summary["skipped"],
                "failed": summary["failed"],
                "discovery_calls": summary["discovery_requests"],
                "enrichment_calls": summary["enrichment_requests"],
                "geocode_calls": summary["geocode_requests"],
            }
        )

        summary_lines = render_summary(summary)
        for line in summary_lines:
            logger.info(line)

        if write_outputs:
            logger.info("Stage 4: outputs")
            progress.set_stage("outputs", total_estimate=3)
            write_catalog_json(f"{output_dir}/catalog.json", venues)
            progress.advance()
            write_catalog_csv(f"{output_dir}/catalog.csv", venues)
            progress.advance()
            write_summary(f"{output_dir}/summary.txt", summary_lines)
            progress.advance()

        progress.flush()
        return PipelineResult(venues=venues, summary=summary)
    finally:
        if owns_store:
            store.close()


def discover_city(
    city: CityConfig,
    categories: Sequence[CategoryConfig],
    discovery: DiscoveryClient,
    workers: int = config.DISCOVERY_WORKERS,
    progress: Optional[ProgressReporter] = None,
) -> Tuple[Dict[str, DiscoveryCandidate], Dict[str, Set[str]]]:
    """Run every category over every tile and merge results by provider ID.

    Returns the candidates and, per provider ID, the categories it was found in.
    """
    tiles = build_tiles(
        city.center_lat, city.center_lon, city.radius_m, rows=city.grid_rows, cols=city.grid_cols
    )
    gates: Dict[str, AdmissionGate] = {c.slug: resolve_gate(c, city) for c in categories}
    for slug, gate in gates.items():
        logger.info("Gate %s: rating >= %s, reviews >= %s", slug, gate.min_rating, gate.min_reviews)
    neighborhood_queries = [q for q in city.neighborhood_queries if q.category in gates]

    candidates: Dict[str, DiscoveryCandidate] = {}
    categories_by_id: Dict[str, Set[str]] = {}
    if progress is not None:
        progress.set_stage(
            "discovery", total_estimate=len(categories) * len(tiles) + len(neighborhood_queries)
        )

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures: Dict[Future, str] = {}
        for category in categories:
            for tile in tiles:
                fut = pool.submit(discovery.discover, category, tile, gates[category.slug])
                futures[fut] = category.slug
        for query in neighborhood_queries:
            fut = pool.submit(discovery.discover_neighborhood, query, city, gates[query.category])
            futures[fut] = query.category

        for fut in as_completed(futures):
            slug = futures[fut]
            for candidate in fut.result():
                candidates.setdefault(candidate.provider_id, candidate)
                categories_by_id.setdefault(candidate.provider_id, set()).add(slug)
            if progress is not None:
                progress.advance()

    return candidates, categories_by_id


def process_candidates(
    city: CityConfig,
    candidates: Dict[str, DiscoveryCandidate],
    categories_by_id: Dict[str, Set[str]],
    store: VenueStore,
    merge_engine: MergeEngine,
    resolver: NeighborhoodResolver,
    enrichment_client: Optional[EnrichmentClient],
    incremental: bool = False,
    workers: int = config.ENRICHMENT_WORKERS,
    progress: Optional[ProgressReporter] = None,
) -> Dict[str, str]:
    """Enrich, resolve, key and upsert each candidate. Returns a status per provider ID."""

    def process(candidate: DiscoveryCandidate) -> str:
        categories = categories_by_id.get(candidate.provider_id, set())
        try:
            if incremental:
                existing = store.find_by_provider_id(candidate.provider_id)
                if existing is not None and existing.get("has_secondary_data"):
                    merge_engine.write_highlights(
                        existing["id"], candidate, categories, existing.get("neighborhood")
                    )
                    return STATUS_SKIPPED

            match = enrichment_client.enrich(candidate) if enrichment_client is not None else None
            neighborhood = resolver.resolve(candidate, match)
            key = compute_key(candidate, match)
            venue_id = merge_engine.upsert(candidate, key, city.name, match, neighborhood)
            merge_engine.write_highlights(venue_id, candidate, categories, neighborhood, match)
            logger.debug("Saved %s (%s)", candidate.name, neighborhood)
            return STATUS_SAVED
        except sqlite3.Error as exc:
            logger.error(
                "Store write failed for %s (%s): %s", candidate.name, candidate.provider_id, exc
            )
            return STATUS_FAILED
        except Exception:
            logger.exception(
                "Processing failed for %s (%s)", candidate.name, candidate.provider_id
            )
            return STATUS_FAILED

    if progress is not None:
        progress.set_stage("enrich_merge", total_estimate=len(candidates))

    statuses: Dict[str, str] = {}
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = {
            pool.submit(process, candidates[provider_id]): provider_id
            for provider_id in sorted(candidates)
        }
        for fut in as_completed(futures):
            status = fut.result()
            statuses[futures[fut]] = status
            if progress is not None:
                progress.advance(status)
    return statuses


def catalog_rows(store: VenueStore, city: Optional[str] = None) -> List[Dict[str, Any]]:
    rows = []
    for venue in store.iter_venues(city):
        venue["provider_ids"] = store.provider_ids_for(venue["id"])
        rows.append(venue)
    return rows


def render_summary(summary: Dict[str, Any]) -> List[str]:
    lines = []
    lines.append(f"City: {summary['city']}")
    lines.append(
        "Candidates: fetched={fetched}, saved={saved}, skipped={skipped}, failed={failed}".format(
            fetched=summary.get("fetched", 0),
            saved=summary.get("saved", 0),
            skipped=summary.get("skipped", 0),
            failed=summary.get("failed", 0),
        )
    )
    lines.append(f"Venues in catalog: {summary.get('venues_total', 0)}")
    lines.append("Request stats:")
    lines.append(
        "  Discovery: network={network}, cache_hits={cache_hits}, dedup_skips={dedup_skips}".format(
            network=summary.get("discovery_requests", 0),
            cache_hits=summary.get("cache_hits_discovery", 0),
            dedup_skips=summary.get("dedup_skips_discovery", 0),
        )
    )
    lines.append(f"  Enrichment: network={summary.get('enrichment_requests', 0)}")
    lines.append(f"  Geocode: network={summary.get('geocode_requests', 0)}")
    state = summary.get("enrichment_state")
    if state == "limited":
        lines.append(f"Enrichment: LIMITED ({summary.get('enrichment_limit_reason')})")
    elif state:
        lines.append(f"Enrichment: {state.upper()}")
    per_category = summary.get("per_category") or {}
    if per_category:
        lines.append(
            "Per category: " + ", ".join(f"{slug}:{count}" for slug, count in per_category.items())
        )
    top_neighborhoods = summary.get("top_neighborhoods") or []
    if top_neighborhoods:
        lines.append(
            "Per neighborhood (top 15): "
            + ", ".join(f"{name}:{count}" for name, count in top_neighborhoods)
        )
    return lines
