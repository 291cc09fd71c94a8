"""SerpAPI Google Maps client used as the listing source."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, List

from serpapi import GoogleSearch

from mapscrape.core.config import ConfigError
from mapscrape.core.errors import SourceFetchError
from mapscrape.etl.transform import extract_local_results, to_listing_record
from mapscrape.models import ListingRecord

logger = logging.getLogger(__name__)

RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2


def build_query(business_type: str, location: str) -> str:
    business_type = (business_type or "").strip()
    location = (location or "").strip()
    if not business_type or not location:
        raise ValueError("business_type and location must be provided for maps lookups.")
    return f"{business_type} in {location}"


class SerpMapsSource:
    """Fetch listings for a (business_type, location) query from SerpAPI."""

    def __init__(self, api_key: str, *, retry_limit: int = RETRY_LIMIT) -> None:
        if not api_key:
            raise ConfigError("SERPAPI_API_KEY is not configured")
        self.api_key = api_key
        self.retry_limit = retry_limit

    def build_params(self, business_type: str, location: str) -> Dict[str, Any]:
        return {
            "engine": "google_maps",
            "q": build_query(business_type, location),
            "api_key": self.api_key,
            "type": "search",
        }

    def fetch_raw(self, business_type: str, location: str) -> Dict[str, Any]:
        """Call SerpAPI and return the raw JSON payload, retrying transient failures.

        Every call is billed, which is why the cache sits in front of this.
        """
        params = self.build_params(business_type, location)

        attempt = 0
        while True:
            attempt += 1
            try:
                logger.info("Calling SerpAPI (attempt %s) for q=%s", attempt, params["q"])
                data = GoogleSearch(params).get_dict()
                if not data:
                    raise SourceFetchError("SerpAPI returned an empty payload.")
                if "error" in data:
                    raise SourceFetchError(f"SerpAPI returned an error response: {data.get('error') or data}")
                return data
            except Exception as exc:  # noqa: BLE001
                logger.warning("SerpAPI request failed (attempt %s/%s): %s", attempt, self.retry_limit + 1, exc)
                if attempt > self.retry_limit:
                    logger.error("SerpAPI request exhausted retries for q=%s", params["q"])
                    if isinstance(exc, SourceFetchError):
                        raise
                    raise SourceFetchError(f"SerpAPI request failed: {exc}") from exc
                time.sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))

    def fetch(self, business_type: str, location: str) -> List[ListingRecord]:
        data = self.fetch_raw(business_type, location)
        records = [to_listing_record(item) for item in extract_local_results(data)]
        if not records:
            logger.warning("SerpAPI response had no local results. keys=%s", list(data.keys())[:10])
        logger.info("Parsed %s listings from SerpAPI response.", len(records))
        return records
