"""Seven-day search cache keyed by the normalized query and owner."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from mapscrape.core.errors import CacheLookupError
from mapscrape.models import CacheEntry, Session, normalize_search_query
from mapscrape.pipeline.session import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)


class SearchCache:
    def __init__(self, store, *, ttl: timedelta = DEFAULT_TTL, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def lookup(self, business_type: str, location: str, owner: str) -> Optional[CacheEntry]:
        """Return the newest unexpired entry, or None on a miss or any lookup trouble."""
        search_query = normalize_search_query(business_type, location)
        try:
            entry = self._find(owner, search_query)
        except CacheLookupError as exc:
            logger.warning("Cache lookup failed for query=%s, treating as miss: %s", search_query, exc)
            return None

        if entry is None:
            logger.info("Cache miss for query=%s", search_query)
            return None

        logger.info("Cache hit for query=%s session=%s", search_query, entry.session_id)
        return entry

    def _find(self, owner: str, search_query: str) -> Optional[CacheEntry]:
        now = self.clock()
        try:
            entry = self.store.find_cache_entry(owner, search_query, now)
        except Exception as exc:  # noqa: BLE001
            raise CacheLookupError(str(exc)) from exc
        if entry is not None and not entry.is_valid(now):
            # the store filters on expires_at already; guard against clock skew between the two
            return None
        return entry

    def record(self, session: Session, result_count: int) -> Optional[CacheEntry]:
        """Append a cache row for a naturally completed session. Failures are logged."""
        cached_at = self.clock()
        try:
            entry = self.store.insert_cache_entry(
                owner=session.owner,
                search_query=session.search_query or normalize_search_query(session.business_type, session.location),
                business_type=session.business_type,
                location=session.location,
                session_id=session.id,
                result_count=result_count,
                cached_at=cached_at,
                expires_at=cached_at + self.ttl,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to write cache entry for session %s: %s", session.id, exc)
            return None

        logger.info("Cached session %s (%d results) until %s", session.id, result_count, entry.expires_at)
        return entry

    def recent(self, owner: str, limit: int = 10) -> List[CacheEntry]:
        return self.store.recent_cache_entries(owner, limit)

    def delete(self, entry_id: str, owner: str) -> bool:
        deleted = self.store.delete_cache_entry(entry_id, owner)
        if deleted:
            logger.info("Deleted cache entry %s", entry_id)
        return deleted
