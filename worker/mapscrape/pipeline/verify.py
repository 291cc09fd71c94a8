"""Deduplicate a session's raw listings and check each unique website is alive.

Only listings that are the first occurrence of their name/address key *and*
answer a HEAD request with a 2xx/3xx status become processed listings.
Unique listings without a website, or whose website does not answer, are
dropped rather than stored as unverified; ``duplicates_removed`` in the
summary therefore counts them too.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from mapscrape.core.errors import VerificationError
from mapscrape.models import ProcessedListing, ProcessingStatus, RawListing, VerificationSummary

logger = logging.getLogger(__name__)

USER_AGENT = "MapScrapeVerifier/1.0"
VERIFY_TIMEOUT_SECONDS = 5.0
MAX_WORKERS = 8
MAX_REDIRECTS = 10
REDIRECT_STATUSES = {301, 302, 303, 307, 308}


@dataclass(slots=True)
class WebsiteCheck:
    url: str
    verified: bool
    status_code: int = 0


def dedup_key(name: Optional[str], address: Optional[str]) -> str:
    return f"{(name or '').strip().lower()}|{(address or '').strip().lower()}"


def select_candidates(listings: Sequence[RawListing]) -> Tuple[List[RawListing], int]:
    """Keep the first listing per dedup key, in ingestion order.

    Returns the kept listings and the number of later duplicates skipped.
    """
    seen = set()
    candidates: List[RawListing] = []
    duplicates = 0
    for listing in sorted(listings, key=lambda item: item.position):
        key = dedup_key(listing.name, listing.address)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        candidates.append(listing)
    return candidates, duplicates


def normalize_website_url(website: str) -> str:
    url = website.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = f"https://{url.lstrip('/')}"
    return url


class ListingVerifier:
    """Runs the dedup pass and the bounded-concurrency website checks for one session."""

    def __init__(
        self,
        store,
        *,
        http_session: Optional[requests.Session] = None,
        timeout: float = VERIFY_TIMEOUT_SECONDS,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self.http_session = http_session or self._build_http_session()

    def _build_http_session(self) -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=self.max_workers, pool_maxsize=self.max_workers)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.setdefault("User-Agent", USER_AGENT)
        return session

    def check_website(self, website: str) -> WebsiteCheck:
        """HEAD the website, following redirects. Raises VerificationError when not live.

        ``timeout`` is a deadline for the whole check, redirect hops included;
        requests' own timeout only bounds each socket operation.
        """
        url = normalize_website_url(website)
        deadline = time.monotonic() + self.timeout
        target = url
        for _ in range(MAX_REDIRECTS + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise VerificationError(url, f"timed out after {self.timeout}s")
            try:
                response = self.http_session.head(target, timeout=remaining, allow_redirects=False)
            except requests.Timeout as exc:
                raise VerificationError(url, f"timed out after {self.timeout}s") from exc
            except requests.RequestException as exc:
                raise VerificationError(url, str(exc)) from exc

            if time.monotonic() > deadline:
                raise VerificationError(url, f"timed out after {self.timeout}s")
            location = response.headers.get("Location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                break
            target = urljoin(target, location)
        else:
            raise VerificationError(url, f"more than {MAX_REDIRECTS} redirects")

        if not 200 <= response.status_code < 400:
            raise VerificationError(url, f"HTTP {response.status_code}", response.status_code)
        return WebsiteCheck(url=url, verified=True, status_code=response.status_code)

    def _safe_check(self, website: str) -> WebsiteCheck:
        try:
            return self.check_website(website)
        except VerificationError as exc:
            logger.warning("Website verification failed for %s: %s", website, exc.reason)
            return WebsiteCheck(url=exc.url, verified=False, status_code=exc.status_code)

    def verify_candidates(self, candidates: Sequence[RawListing]) -> List[Tuple[RawListing, WebsiteCheck]]:
        """Check every candidate that has a website; results keep the candidates' order."""
        with_website = [listing for listing in candidates if listing.website.strip()]
        if not with_website:
            return []
        workers = min(self.max_workers, len(with_website))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify") as executor:
            checks = list(executor.map(self._safe_check, [listing.website for listing in with_website]))
        return list(zip(with_website, checks))

    def process_session(self, session_id: str, owner: str) -> VerificationSummary:
        """Dedup, verify and persist processed listings for a session.

        processing_status is set to completed whether or not the batch insert
        succeeds; a failed insert is then re-raised as PersistenceError.
        """
        listings = self.store.list_listings(session_id, owner)
        total = len(listings)

        candidates, duplicates = select_candidates(listings)
        logger.info(
            "Session %s: %d raw listings, %d unique, %d duplicates", session_id, total, len(candidates), duplicates
        )

        processed = [
            ProcessedListing(
                session_id=session_id,
                name=listing.name,
                rating=listing.record.rating,
                website=listing.website,
                address=listing.address,
                phone=listing.record.phone,
                is_website_verified=True,
                website_status_code=check.status_code,
                is_duplicate=False,
            )
            for listing, check in self.verify_candidates(candidates)
            if check.verified
        ]

        try:
            if processed:
                self.store.insert_processed_listings(owner, processed)
        finally:
            self._mark_processed(session_id, owner)

        summary = VerificationSummary(
            processed=len(processed),
            total=total,
            duplicates_removed=total - len(processed),
            duplicates=duplicates,
            unverified=len(candidates) - len(processed),
        )
        logger.info("Processing complete for session %s: %s", session_id, summary.as_dict())
        return summary

    def _mark_processed(self, session_id: str, owner: str) -> None:
        try:
            self.store.update_session(session_id, owner, processing_status=ProcessingStatus.COMPLETED)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to mark session %s processed: %s", session_id, exc)
