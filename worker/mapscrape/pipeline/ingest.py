"""Stream listings from the source into raw listing rows for one session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from mapscrape.core.errors import InvalidTransitionError, PersistenceError
from mapscrape.etl.transform import to_listing_row
from mapscrape.models import RawListing, VerificationSummary
from mapscrape.pipeline.cache import SearchCache
from mapscrape.pipeline.session import SessionHandle, SessionManager
from mapscrape.pipeline.verify import ListingVerifier

logger = logging.getLogger(__name__)

INGEST_DELAY_SECONDS = 0.3
PAUSE_POLL_SECONDS = 0.1

ProgressCallback = Callable[[RawListing], None]


@dataclass(slots=True)
class IngestResult:
    session_id: str
    attempted: int = 0
    persisted: int = 0
    cancelled: bool = False
    summary: Optional[VerificationSummary] = None


class IngestionLoop:
    def __init__(
        self,
        store,
        sessions: SessionManager,
        cache: SearchCache,
        verifier: ListingVerifier,
        *,
        delay_seconds: float = INGEST_DELAY_SECONDS,
        poll_seconds: float = PAUSE_POLL_SECONDS,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.cache = cache
        self.verifier = verifier
        self.delay_seconds = delay_seconds
        self.poll_seconds = poll_seconds

    def run(
        self,
        handle: SessionHandle,
        source,
        business_type: str,
        location: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Fetch listings and persist them one at a time, honouring pause and stop.

        SourceFetchError from the source propagates and leaves the session as it
        was. A stopped run returns early without caching or verification.
        """
        control = handle.control
        result = IngestResult(session_id=handle.id)

        if control.cancelled:
            result.cancelled = True
            logger.info("Session %s stopped before the source was queried", handle.id)
            return result

        records = source.fetch(business_type, location)
        logger.info("Session %s: source returned %d listings", handle.id, len(records))

        for position, record in enumerate(records):
            if control.cancelled:
                break
            if not control.wait_while_paused(self.poll_seconds):
                break
            if not control.sleep(self.delay_seconds):
                break
            # a pause may have landed during the throttle delay
            if not control.wait_while_paused(self.poll_seconds):
                break

            result.attempted += 1
            try:
                listing = self.store.insert_listing(handle.id, handle.owner, position, to_listing_row(record))
            except PersistenceError as exc:
                logger.error("Failed to insert listing %r for session %s: %s", record.name, handle.id, exc)
                continue

            result.persisted += 1
            try:
                self.sessions.record_progress(handle, result.persisted)
            except PersistenceError as exc:
                logger.warning("Failed to update total_records for session %s: %s", handle.id, exc)

            if on_progress is not None:
                try:
                    on_progress(listing)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Progress callback failed for session %s: %s", handle.id, exc)

        if control.cancelled:
            result.cancelled = True
            logger.info("Session %s stopped after %d listings", handle.id, result.persisted)
            return result

        try:
            self.sessions.complete(handle)
        except InvalidTransitionError:
            # stop() won the race after the last record
            result.cancelled = True
            return result

        self.cache.record(handle.session, result.persisted)
        result.summary = self.verifier.process_session(handle.id, handle.owner)
        return result
