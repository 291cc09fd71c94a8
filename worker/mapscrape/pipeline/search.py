"""Search flow: cache check, session creation, ingestion and activity logging."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from mapscrape.core.config import Settings, get_settings
from mapscrape.core.errors import SessionNotFoundError, SourceFetchError
from mapscrape.models import CacheEntry, RawListing
from mapscrape.pipeline.activity import ActivityLogger
from mapscrape.pipeline.cache import SearchCache
from mapscrape.pipeline.ingest import IngestionLoop, IngestResult, ProgressCallback
from mapscrape.pipeline.session import SessionHandle, SessionManager
from mapscrape.pipeline.verify import ListingVerifier
from mapscrape.vendors.listing_api import ListingApiSource
from mapscrape.vendors.serp_maps import SerpMapsSource

logger = logging.getLogger(__name__)


@dataclass
class SearchOutcome:
    session_id: str
    was_cached: bool
    result_count: int
    cache_entry: Optional[CacheEntry] = None
    ingest: Optional[IngestResult] = None
    listings: List[RawListing] = field(default_factory=list)

    def as_dict(self) -> dict:
        payload = {
            "session_id": self.session_id,
            "was_cached": self.was_cached,
            "result_count": self.result_count,
        }
        if self.ingest is not None:
            payload["cancelled"] = self.ingest.cancelled
            payload["summary"] = self.ingest.summary.as_dict() if self.ingest.summary else None
        if self.cache_entry is not None:
            payload["cached_at"] = self.cache_entry.cached_at.isoformat()
            payload["expires_at"] = self.cache_entry.expires_at.isoformat()
        return payload


def build_listing_source(settings: Settings):
    """Prefer a configured listing endpoint, fall back to SerpAPI directly."""
    if settings.listing_source_url:
        return ListingApiSource(settings.listing_source_url, settings.listing_source_token)
    return SerpMapsSource(settings.serpapi_api_key)


class SearchService:
    def __init__(
        self,
        store,
        source,
        *,
        sessions: Optional[SessionManager] = None,
        cache: Optional[SearchCache] = None,
        verifier: Optional[ListingVerifier] = None,
        activity: Optional[ActivityLogger] = None,
        ingestion: Optional[IngestionLoop] = None,
        fail_on_source_error: bool = False,
    ) -> None:
        self.store = store
        self.source = source
        self.sessions = sessions or SessionManager(store)
        self.cache = cache or SearchCache(store)
        self.verifier = verifier or ListingVerifier(store)
        self.activity = activity or ActivityLogger(store)
        self.ingestion = ingestion or IngestionLoop(store, self.sessions, self.cache, self.verifier)
        self.fail_on_source_error = fail_on_source_error

    @classmethod
    def from_settings(cls, store, source=None, settings: Optional[Settings] = None) -> "SearchService":
        settings = settings or get_settings()
        sessions = SessionManager(store)
        cache = SearchCache(store, ttl=timedelta(days=settings.cache_ttl_days))
        verifier = ListingVerifier(
            store,
            timeout=settings.verify_timeout_seconds,
            max_workers=settings.verify_max_workers,
        )
        ingestion = IngestionLoop(
            store,
            sessions,
            cache,
            verifier,
            delay_seconds=settings.ingest_delay_seconds,
            poll_seconds=settings.pause_poll_seconds,
        )
        return cls(
            store,
            source if source is not None else build_listing_source(settings),
            sessions=sessions,
            cache=cache,
            verifier=verifier,
            ingestion=ingestion,
        )

    def search(
        self,
        business_type: str,
        location: str,
        owner: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        user_email: Optional[str] = None,
    ) -> SearchOutcome:
        """Serve a query from cache when possible, otherwise scrape it end to end."""
        cached = self.lookup_cached(business_type, location, owner, user_email=user_email)
        if cached is not None:
            return cached
        handle = self.start(business_type, location, owner)
        return self.run(handle, business_type, location, on_progress=on_progress, user_email=user_email)

    def lookup_cached(
        self, business_type: str, location: str, owner: str, *, user_email: Optional[str] = None
    ) -> Optional[SearchOutcome]:
        _validate_query(business_type, location)
        entry = self.cache.lookup(business_type, location, owner)
        if entry is None:
            return None

        listings = self.store.list_listings(entry.session_id, owner)
        self.activity.log(
            owner,
            business_type,
            location,
            entry.result_count,
            True,
            session_id=entry.session_id,
            user_email=user_email,
        )
        return SearchOutcome(
            session_id=entry.session_id,
            was_cached=True,
            result_count=entry.result_count,
            cache_entry=entry,
            listings=listings,
        )

    def start(self, business_type: str, location: str, owner: str) -> SessionHandle:
        _validate_query(business_type, location)
        return self.sessions.create(business_type, location, owner)

    def run(
        self,
        handle: SessionHandle,
        business_type: str,
        location: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        user_email: Optional[str] = None,
    ) -> SearchOutcome:
        try:
            result = self.ingestion.run(handle, self.source, business_type, location, on_progress)
        except SourceFetchError as exc:
            logger.error("Listing source failed for session %s: %s", handle.id, exc)
            if self.fail_on_source_error:
                self.sessions.fail(handle, str(exc))
            raise
        finally:
            self.sessions.release(handle)

        self.activity.log(
            handle.owner,
            business_type,
            location,
            result.persisted,
            False,
            session_id=handle.id,
            user_email=user_email,
        )
        return SearchOutcome(
            session_id=handle.id,
            was_cached=False,
            result_count=result.persisted,
            ingest=result,
        )

    def pause(self, session_id: str, owner: str) -> SessionHandle:
        handle = self._live_handle(session_id, owner)
        self.sessions.pause(handle)
        return handle

    def resume(self, session_id: str, owner: str) -> SessionHandle:
        handle = self._live_handle(session_id, owner)
        self.sessions.resume(handle)
        return handle

    def stop(self, session_id: str, owner: str) -> SessionHandle:
        """Stop a live run, or close out a stored session no run is attached to.

        The second case covers sessions left running by a failed source fetch.
        """
        handle = self.sessions.get(session_id)
        if handle is None or handle.owner != owner:
            session = self.store.get_session(session_id, owner)
            if session is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            handle = SessionHandle(session)
        self.sessions.stop(handle)
        return handle

    def _live_handle(self, session_id: str, owner: str) -> SessionHandle:
        handle = self.sessions.get(session_id)
        if handle is None or handle.owner != owner:
            raise SessionNotFoundError(f"no running session {session_id}")
        return handle


def _validate_query(business_type: str, location: str) -> None:
    if not (business_type or "").strip() or not (location or "").strip():
        raise ValueError("business_type and location are required")
