"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from venue_catalog import config
from venue_catalog.pipeline import run
from venue_catalog.scoring import score_catalog
from venue_catalog.store import VenueStore


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    items = [v.strip() for v in value.split(",") if v.strip()]
    return items or None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Discover, enrich and deduplicate venues for a city"
    )
    parser.add_argument("city", nargs="?", help="City slug from the cities config")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--incremental",
        action="store_true",
        help="Skip enrichment for venues that already have secondary data",
    )
    mode.add_argument("--full", action="store_true", help="Re-enrich every candidate (default)")
    parser.add_argument(
        "--category", type=str, default=None, help="Comma-separated category slugs to run"
    )
    parser.add_argument("--list", action="store_true", help="List configured cities and exit")
    parser.add_argument("--score", action="store_true", help="Run the quality scoring pass only")
    parser.add_argument("--all", action="store_true", help="With --score: score every city")
    parser.add_argument(
        "--score-after", action="store_true", help="Run the quality scoring pass after ingestion"
    )
    parser.add_argument(
        "--max-enrichment-calls",
        type=int,
        default=None,
        help="Cap on secondary-provider calls for this run (overrides settings and env)",
    )
    parser.add_argument("--db", type=str, default=config.DB_PATH)
    parser.add_argument("--cities", type=str, default=config.CITIES_CONFIG_PATH)
    parser.add_argument("--settings", type=str, default=config.RUN_SETTINGS_PATH)
    parser.add_argument("--out", type=str, default=config.OUTPUT_DIR)
    parser.add_argument("--no-cache", action="store_true")
    parser.add_argument("--refresh-places", action="store_true", help="Bypass Places cache reads")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads for both discovery and enrichment pools",
    )
    return parser.parse_args(argv)


def run_score(args: argparse.Namespace, cities: dict) -> int:
    city_name: Optional[str] = None
    if not args.all:
        if not args.city:
            print("--score needs a city slug or --all", file=sys.stderr)
            return 1
        city = cities.get(args.city)
        if city is None:
            print(f"Unknown city: {args.city}. Use --all for all cities.", file=sys.stderr)
            return 1
        city_name = city.name

    with VenueStore(args.db) as store:
        counts = score_catalog(store, city_name)
    print(
        "Scored {scored} venues ({gems} hidden gems, {favorites} local favorites)".format(
            scored=counts["scored"],
            gems=counts["hidden_gem"],
            favorites=counts["local_favorite"],
        )
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        cities = config.load_cities(args.cities)
    except (ValueError, KeyError) as exc:
        print(f"Invalid cities config: {exc}", file=sys.stderr)
        return 1

    if args.list:
        if not cities:
            print(f"No cities configured in {args.cities}")
        for slug, city in cities.items():
            print(f"{slug}: {city.name} ({len(city.categories)} categories)")
        return 0

    if args.score:
        return run_score(args, cities)

    if not args.city:
        print("Missing city slug (use --list to see configured cities)", file=sys.stderr)
        return 1
    city = cities.get(args.city)
    if city is None:
        print(f"Unknown city: {args.city}", file=sys.stderr)
        return 1

    primary_api_key = (os.environ.get(config.PRIMARY_API_KEY_ENV) or "").strip()
    secondary_api_key = (os.environ.get(config.SECONDARY_API_KEY_ENV) or "").strip()
    missing = [
        name
        for name, value in (
            (config.PRIMARY_API_KEY_ENV, primary_api_key),
            (config.SECONDARY_API_KEY_ENV, secondary_api_key),
        )
        if not value
    ]
    if missing:
        print(f"Missing {', '.join(missing)} in environment", file=sys.stderr)
        return 1

    max_enrichment_calls = args.max_enrichment_calls
    if max_enrichment_calls is None:
        max_enrichment_calls = config.load_run_settings(args.settings).max_enrichment_calls
    workers = args.workers

    try:
        result = run(
            city,
            primary_api_key=primary_api_key,
            secondary_api_key=secondary_api_key,
            db_path=args.db,
            output_dir=args.out,
            incremental=args.incremental,
            category_filter=_split_csv(args.category),
            max_enrichment_calls=max_enrichment_calls,
            no_cache=args.no_cache,
            refresh_places=args.refresh_places,
            discovery_workers=workers or config.DISCOVERY_WORKERS,
            enrichment_workers=workers or config.ENRICHMENT_WORKERS,
            score_after=args.score_after,
        )
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    summary = result.summary
    print(
        f"Done. Fetched {summary['fetched']}, saved {summary['saved']}, "
        f"skipped {summary['skipped']}, failed {summary['failed']}."
    )
    print(f"Catalog written to {args.out}/catalog.csv and {args.out}/catalog.json")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
