"""Client for an HTTP listing endpoint that answers ``{success, listings, error}``."""

import logging
from typing import List, Optional

import requests

from mapscrape.core.errors import SourceFetchError
from mapscrape.etl.transform import from_listing_payload
from mapscrape.models import ListingRecord

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


class ListingApiSource:
    def __init__(self, url: str, token: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.token = token
        self.session = session or requests.Session()

    def fetch(self, business_type: str, location: str) -> List[ListingRecord]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.session.post(
                self.url,
                json={"businessType": business_type, "location": location},
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            logger.error("Listing endpoint unreachable: %s", exc)
            raise SourceFetchError(f"Failed to fetch listings: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.error("Listing endpoint returned status=%s body=%s", response.status_code, response.text[:500])
            raise SourceFetchError(f"Failed to fetch listings: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceFetchError("Listing endpoint returned invalid JSON") from exc

        if not payload.get("success"):
            raise SourceFetchError(payload.get("error") or "Failed to scrape listings")

        listings = payload.get("listings") or []
        return [from_listing_payload(item) for item in listings if isinstance(item, dict)]
