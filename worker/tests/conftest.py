import sys
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the `mapscrape` package is importable when running pytest from the worker directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mapscrape.core.errors import PersistenceError  # noqa: E402
from mapscrape.etl.transform import from_listing_payload  # noqa: E402
from mapscrape.models import (  # noqa: E402
    CacheEntry,
    RawListing,
    SearchLogEntry,
    SearchStats,
    Session,
)


class FakeStore:
    """In-memory stand-in for PostgresStore with per-owner scoping and failure injection."""

    def __init__(self):
        self.sessions = {}
        self.listings = []
        self.processed = []
        self.cache_entries = []
        self.logs = []
        self.session_updates = []
        self.fail_methods = set()
        self.fail_listing_names = set()

    def _maybe_fail(self, method):
        if method in self.fail_methods:
            raise PersistenceError(f"{method} failed")

    def _owned(self, session_id, owner):
        session = self.sessions.get(session_id)
        if session is None or session.owner != owner:
            raise PersistenceError(f"session {session_id} not found")
        return session

    def create_session(self, owner, business_type, location, search_query):
        self._maybe_fail("create_session")
        session = Session(
            id=str(uuid.uuid4()),
            owner=owner,
            business_type=business_type,
            location=location,
            search_query=search_query,
            created_at=datetime.now(timezone.utc),
        )
        self.sessions[session.id] = session
        return Session(**{f: getattr(session, f) for f in session.__slots__})

    def get_session(self, session_id, owner):
        session = self.sessions.get(session_id)
        if session is None or session.owner != owner:
            return None
        return session

    def update_session(self, session_id, owner, **fields):
        self._maybe_fail("update_session")
        session = self._owned(session_id, owner)
        for key, value in fields.items():
            setattr(session, key, value)
        self.session_updates.append((session_id, fields))

    def insert_listing(self, session_id, owner, position, row):
        self._maybe_fail("insert_listing")
        self._owned(session_id, owner)
        if row["name"] in self.fail_listing_names:
            raise PersistenceError(f"insert rejected for {row['name']}")
        listing = RawListing(
            id=str(uuid.uuid4()),
            session_id=session_id,
            record=from_listing_payload(row),
            position=position,
        )
        self.listings.append(listing)
        return listing

    def list_listings(self, session_id, owner):
        self._maybe_fail("list_listings")
        self._owned(session_id, owner)
        return [item for item in self.listings if item.session_id == session_id]

    def insert_processed_listings(self, owner, listings):
        self._maybe_fail("insert_processed_listings")
        listings = list(listings)
        for item in listings:
            self._owned(item.session_id, owner)
        self.processed.extend(listings)
        return len(listings)

    def list_processed_listings(self, session_id, owner):
        self._owned(session_id, owner)
        return [item for item in self.processed if item.session_id == session_id]

    def find_cache_entry(self, owner, search_query, now):
        self._maybe_fail("find_cache_entry")
        matches = [
            entry
            for entry in self.cache_entries
            if entry.owner == owner and entry.search_query == search_query and entry.expires_at > now
        ]
        return max(matches, key=lambda entry: entry.cached_at) if matches else None

    def insert_cache_entry(self, *, owner, search_query, business_type, location, session_id, result_count,
                           cached_at, expires_at):
        self._maybe_fail("insert_cache_entry")
        entry = CacheEntry(
            id=str(uuid.uuid4()),
            owner=owner,
            search_query=search_query,
            business_type=business_type,
            location=location,
            session_id=session_id,
            result_count=result_count,
            cached_at=cached_at,
            expires_at=expires_at,
        )
        self.cache_entries.append(entry)
        return entry

    def recent_cache_entries(self, owner, limit):
        owned = [entry for entry in self.cache_entries if entry.owner == owner]
        return sorted(owned, key=lambda entry: entry.cached_at, reverse=True)[:limit]

    def delete_cache_entry(self, entry_id, owner):
        before = len(self.cache_entries)
        self.cache_entries = [e for e in self.cache_entries if not (e.id == entry_id and e.owner == owner)]
        return len(self.cache_entries) < before

    def insert_search_log(self, *, owner, business_type, location, result_count, was_cached, session_id=None,
                          user_email=None):
        self._maybe_fail("insert_search_log")
        entry = SearchLogEntry(
            id=str(uuid.uuid4()),
            owner=owner,
            business_type=business_type,
            location=location,
            result_count=result_count,
            was_cached=was_cached,
            search_date=datetime.now(timezone.utc),
            session_id=session_id,
            user_email=user_email,
        )
        self.logs.append(entry)
        return entry.id

    def recent_search_logs(self, owner, limit):
        owned = [entry for entry in self.logs if entry.owner == owner]
        return sorted(owned, key=lambda entry: entry.search_date, reverse=True)[:limit]

    def search_stats(self, owner):
        owned = [entry for entry in self.logs if entry.owner == owner]
        if not owned:
            return SearchStats()
        return SearchStats(
            total_searches=len(owned),
            new_searches=sum(1 for entry in owned if not entry.was_cached),
            cached_searches=sum(1 for entry in owned if entry.was_cached),
            total_records_extracted=sum(entry.result_count for entry in owned),
            first_search_date=min(entry.search_date for entry in owned),
            last_search_date=max(entry.search_date for entry in owned),
        )


class DummyResponse:
    def __init__(self, status_code=200, headers=None):
        self.status_code = status_code
        self.headers = headers or {}


class FakeHttpSession:
    """Answers HEAD requests from a url -> outcome table.

    An outcome is a status code, an exception to raise, or a (status, location)
    redirect pair. ``delay`` sleeps inside every call; ``peak`` records the most
    calls seen in flight at once.
    """

    def __init__(self, responses=None, default=200, delay=0):
        self.responses = dict(responses or {})
        self.default = default
        self.delay = delay
        self.calls = []
        self.peak = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def head(self, url, timeout=None, allow_redirects=None):
        with self._lock:
            self.calls.append((url, timeout, allow_redirects))
            self._in_flight += 1
            self.peak = max(self.peak, self._in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = self.responses.get(url, self.default)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, tuple):
                status, location = outcome
                return DummyResponse(status, {"Location": location})
            return DummyResponse(outcome)
        finally:
            with self._lock:
                self._in_flight -= 1


class StaticSource:
    """Listing source returning fixed payloads in order."""

    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.calls = []

    def fetch(self, business_type, location):
        self.calls.append((business_type, location))
        if self.error is not None:
            raise self.error
        return [from_listing_payload(item) for item in self.items]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http_session():
    return FakeHttpSession()

