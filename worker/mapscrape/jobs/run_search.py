"""CLI job to run one search through the cache, scrape and verification pipeline."""

import argparse
import json
import logging
import signal
import sys
from typing import Optional

from mapscrape.core.config import ConfigError
from mapscrape.core.db import PostgresStore, init_pool
from mapscrape.core.errors import PersistenceError, SourceFetchError
from mapscrape.pipeline.search import SearchService

logger = logging.getLogger(__name__)


def build_location(city: Optional[str], country: Optional[str], location: Optional[str]) -> str:
    if location:
        return location.strip()
    return ", ".join(part.strip() for part in (city, country) if part and part.strip())


def run_search_job(
    *,
    business_type: str,
    location: str,
    owner: str,
    user_email: Optional[str] = None,
    service: Optional[SearchService] = None,
) -> dict:
    if not location:
        raise ValueError("A location (or city/country) is required")

    if service is None:
        init_pool()
        service = SearchService.from_settings(PostgresStore())

    cached = service.lookup_cached(business_type, location, owner, user_email=user_email)
    if cached is not None:
        logger.info("Served query from cache: session=%s results=%d", cached.session_id, cached.result_count)
        return cached.as_dict()

    handle = service.start(business_type, location, owner)

    def _stop(signum, frame):
        logger.info("Received signal %s, stopping session %s", signum, handle.id)
        service.sessions.stop(handle)

    previous = signal.signal(signal.SIGINT, _stop)
    try:
        outcome = service.run(
            handle,
            business_type,
            location,
            on_progress=lambda listing: logger.info("[%d] %s", listing.position + 1, listing.name),
            user_email=user_email,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    logger.info("Completed run: session=%s persisted=%d", outcome.session_id, outcome.result_count)
    return outcome.as_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Search maps listings, dedup and verify them")
    parser.add_argument("--type", dest="business_type", required=True, help="Business type to search")
    parser.add_argument("--city", dest="city", help="City filter")
    parser.add_argument("--country", dest="country", help="Country filter")
    parser.add_argument("--location", dest="location", help="Free-form location, overrides --city/--country")
    parser.add_argument("--owner", dest="owner", required=True, help="User id that owns the session")
    parser.add_argument("--email", dest="user_email", help="User email recorded in the search log")
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        result = run_search_job(
            business_type=args.business_type,
            location=build_location(args.city, args.country, args.location),
            owner=args.owner,
            user_email=args.user_email,
        )
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except (SourceFetchError, PersistenceError, ValueError) as exc:
        logger.error("Search failed: %s", exc)
        return 1

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
