"""Append-only search activity log."""

import logging
from typing import List, Optional

from mapscrape.models import SearchLogEntry, SearchStats

logger = logging.getLogger(__name__)


class ActivityLogger:
    def __init__(self, store) -> None:
        self.store = store

    def log(
        self,
        owner: str,
        business_type: str,
        location: str,
        result_count: int,
        was_cached: bool,
        *,
        session_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> Optional[str]:
        """Record one search. Returns the log id, or None when the write failed."""
        try:
            log_id = self.store.insert_search_log(
                owner=owner,
                business_type=business_type,
                location=location,
                result_count=result_count,
                was_cached=was_cached,
                session_id=session_id,
                user_email=user_email,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to log search for owner=%s: %s", owner, exc)
            return None

        logger.debug("Logged search %s (cached=%s, results=%d)", log_id, was_cached, result_count)
        return log_id

    def recent(self, owner: str, limit: int = 20) -> List[SearchLogEntry]:
        return self.store.recent_search_logs(owner, limit)

    def stats(self, owner: str) -> SearchStats:
        return self.store.search_stats(owner)
