"""Database helpers for the worker.

Every statement is scoped to the owning user id, mirroring the row-level
policies on the tables: the worker never reads or writes another user's rows.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2 import extras, pool

from mapscrape.core.config import ConfigError, get_settings
from mapscrape.core.errors import PersistenceError
from mapscrape.etl.transform import parse_opening_hours
from mapscrape.models import (
    CacheEntry,
    ListingRecord,
    ProcessedListing,
    ProcessingStatus,
    RawListing,
    SearchLogEntry,
    SearchStats,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise ConfigError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


_SESSION_COLUMNS = (
    "id, user_id, business_type, location, search_query, status, total_records, "
    "processing_status, completed_at, created_at"
)

_INSERT_SESSION = f"""
INSERT INTO scraping_sessions (user_id, business_type, location, search_query, status, total_records, processing_status)
VALUES (%(owner)s, %(business_type)s, %(location)s, %(search_query)s, 'running', 0, 'pending')
RETURNING {_SESSION_COLUMNS};
"""

_SELECT_SESSION = f"""
SELECT {_SESSION_COLUMNS} FROM scraping_sessions WHERE id = %(session_id)s AND user_id = %(owner)s;
"""

_INSERT_LISTING = """
INSERT INTO listings (
    session_id,
    position,
    name,
    description,
    rating,
    reviews,
    type,
    website,
    raw_website,
    address,
    phone,
    latitude,
    longitude,
    opening_hours,
    price_level,
    thumbnail,
    place_id
)
SELECT
    %(session_id)s,
    %(position)s,
    %(name)s,
    %(description)s,
    %(rating)s,
    %(reviews)s,
    %(type)s,
    %(website)s,
    %(raw_website)s,
    %(address)s,
    %(phone)s,
    %(latitude)s,
    %(longitude)s,
    %(opening_hours)s,
    %(price_level)s,
    %(thumbnail)s,
    %(place_id)s
WHERE EXISTS (
    SELECT 1 FROM scraping_sessions WHERE id = %(session_id)s AND user_id = %(owner)s
)
RETURNING id, created_at;
"""

_SELECT_LISTINGS = """
SELECT l.* FROM listings l
JOIN scraping_sessions s ON s.id = l.session_id
WHERE l.session_id = %(session_id)s AND s.user_id = %(owner)s
ORDER BY l.position ASC, l.created_at ASC;
"""

_INSERT_PROCESSED = """
INSERT INTO processed_listings (
    session_id,
    name,
    rating,
    website,
    address,
    phone,
    is_website_verified,
    website_status_code,
    is_duplicate
) VALUES (
    %(session_id)s,
    %(name)s,
    %(rating)s,
    %(website)s,
    %(address)s,
    %(phone)s,
    %(is_website_verified)s,
    %(website_status_code)s,
    %(is_duplicate)s
);
"""

_SELECT_PROCESSED = """
SELECT p.* FROM processed_listings p
JOIN scraping_sessions s ON s.id = p.session_id
WHERE p.session_id = %(session_id)s AND s.user_id = %(owner)s
ORDER BY p.created_at ASC;
"""

_CACHE_COLUMNS = (
    "id, user_id, search_query, business_type, location, session_id, result_count, cached_at, expires_at"
)

_SELECT_CACHE = f"""
SELECT {_CACHE_COLUMNS} FROM search_cache
WHERE user_id = %(owner)s AND search_query = %(search_query)s AND expires_at > %(now)s
ORDER BY cached_at DESC
LIMIT 1;
"""

_INSERT_CACHE = f"""
INSERT INTO search_cache (user_id, search_query, business_type, location, session_id, result_count, cached_at, expires_at)
VALUES (%(owner)s, %(search_query)s, %(business_type)s, %(location)s, %(session_id)s, %(result_count)s,
        %(cached_at)s, %(expires_at)s)
RETURNING {_CACHE_COLUMNS};
"""

_RECENT_CACHE = f"""
SELECT {_CACHE_COLUMNS} FROM search_cache WHERE user_id = %(owner)s ORDER BY cached_at DESC LIMIT %(limit)s;
"""

_DELETE_CACHE = "DELETE FROM search_cache WHERE id = %(entry_id)s AND user_id = %(owner)s;"

_LOG_COLUMNS = (
    "id, user_id, user_email, session_id, business_type, location, result_count, was_cached, search_date"
)

_INSERT_LOG = f"""
INSERT INTO search_logs (user_id, user_email, session_id, business_type, location, result_count, was_cached)
VALUES (%(owner)s, %(user_email)s, %(session_id)s, %(business_type)s, %(location)s, %(result_count)s, %(was_cached)s)
RETURNING id;
"""

_RECENT_LOGS = f"""
SELECT {_LOG_COLUMNS} FROM search_logs WHERE user_id = %(owner)s ORDER BY search_date DESC LIMIT %(limit)s;
"""

_SEARCH_STATS = """
SELECT
    COUNT(*) AS total_searches,
    COUNT(*) FILTER (WHERE was_cached = false) AS new_searches,
    COUNT(*) FILTER (WHERE was_cached = true) AS cached_searches,
    COALESCE(SUM(result_count), 0) AS total_records_extracted,
    MIN(search_date) AS first_search_date,
    MAX(search_date) AS last_search_date
FROM search_logs
WHERE user_id = %(owner)s;
"""

_UPDATABLE_SESSION_FIELDS = {"status", "total_records", "processing_status", "completed_at"}


class PostgresStore:
    """Transactional store over the scraping tables.

    Each method runs in its own transaction and raises PersistenceError on
    any driver failure so callers can decide whether the failure is fatal.
    """

    def _run(self, sql: str, params: Dict[str, Any], *, fetch: str = "none"):
        try:
            with get_connection() as conn:
                try:
                    with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                        cur.execute(sql, params)
                        if fetch == "one":
                            result = cur.fetchone()
                        elif fetch == "all":
                            result = cur.fetchall()
                        else:
                            result = cur.rowcount
                    conn.commit()
                    return result
                except Exception:
                    conn.rollback()
                    raise
        except psycopg2.Error as exc:
            logger.error("Database statement failed: %s", exc)
            raise PersistenceError(str(exc)) from exc

    # Sessions

    def create_session(self, owner: str, business_type: str, location: str, search_query: str) -> Session:
        row = self._run(
            _INSERT_SESSION,
            {"owner": owner, "business_type": business_type, "location": location, "search_query": search_query},
            fetch="one",
        )
        if not row:
            raise PersistenceError("session insert returned no row")
        return _to_session(row)

    def get_session(self, session_id: str, owner: str) -> Optional[Session]:
        row = self._run(_SELECT_SESSION, {"session_id": session_id, "owner": owner}, fetch="one")
        return _to_session(row) if row else None

    def update_session(self, session_id: str, owner: str, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        if not fields:
            return

        params = {key: getattr(value, "value", value) for key, value in fields.items()}
        assignments = ", ".join(f"{key} = %({key})s" for key in sorted(fields))
        params.update(session_id=session_id, owner=owner)
        sql = f"UPDATE scraping_sessions SET {assignments} WHERE id = %(session_id)s AND user_id = %(owner)s;"
        if self._run(sql, params) == 0:
            raise PersistenceError(f"session {session_id} not found")

    # Listings

    def insert_listing(self, session_id: str, owner: str, position: int, row: Dict[str, Any]) -> RawListing:
        params = dict(row)
        params["opening_hours"] = extras.Json(row.get("opening_hours")) if row.get("opening_hours") else None
        params.update(session_id=session_id, owner=owner, position=position)
        inserted = self._run(_INSERT_LISTING, params, fetch="one")
        if not inserted:
            raise PersistenceError(f"session {session_id} not found")
        return RawListing(
            id=str(inserted["id"]),
            session_id=session_id,
            record=_to_record(row),
            position=position,
            created_at=inserted.get("created_at"),
        )

    def list_listings(self, session_id: str, owner: str) -> List[RawListing]:
        rows = self._run(_SELECT_LISTINGS, {"session_id": session_id, "owner": owner}, fetch="all")
        return [
            RawListing(
                id=str(row["id"]),
                session_id=str(row["session_id"]),
                record=_to_record(row),
                position=row.get("position") or 0,
                created_at=row.get("created_at"),
            )
            for row in rows
        ]

    def insert_processed_listings(self, owner: str, listings: Iterable[ProcessedListing]) -> int:
        params_list = [
            {
                "session_id": item.session_id,
                "name": item.name,
                "rating": item.rating,
                "website": item.website,
                "address": item.address,
                "phone": item.phone,
                "is_website_verified": item.is_website_verified,
                "website_status_code": item.website_status_code,
                "is_duplicate": item.is_duplicate,
            }
            for item in listings
        ]
        if not params_list:
            return 0

        try:
            with get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        session_ids = {params["session_id"] for params in params_list}
                        for session_id in session_ids:
                            cur.execute(_SELECT_SESSION, {"session_id": session_id, "owner": owner})
                            if cur.fetchone() is None:
                                raise PersistenceError(f"session {session_id} not found")
                        extras.execute_batch(cur, _INSERT_PROCESSED, params_list)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except psycopg2.Error as exc:
            logger.error("Processed listings batch insert failed: %s", exc)
            raise PersistenceError(str(exc)) from exc
        return len(params_list)

    def list_processed_listings(self, session_id: str, owner: str) -> List[ProcessedListing]:
        rows = self._run(_SELECT_PROCESSED, {"session_id": session_id, "owner": owner}, fetch="all")
        return [
            ProcessedListing(
                session_id=str(row["session_id"]),
                name=row["name"],
                rating=_float_or_none(row.get("rating")),
                website=row.get("website") or "",
                address=row.get("address") or "",
                phone=row.get("phone") or "",
                is_website_verified=bool(row.get("is_website_verified")),
                website_status_code=row.get("website_status_code") or 0,
                is_duplicate=bool(row.get("is_duplicate")),
            )
            for row in rows
        ]

    # Search cache

    def find_cache_entry(self, owner: str, search_query: str, now: datetime) -> Optional[CacheEntry]:
        row = self._run(_SELECT_CACHE, {"owner": owner, "search_query": search_query, "now": now}, fetch="one")
        return _to_cache_entry(row) if row else None

    def insert_cache_entry(
        self,
        *,
        owner: str,
        search_query: str,
        business_type: str,
        location: str,
        session_id: str,
        result_count: int,
        cached_at: datetime,
        expires_at: datetime,
    ) -> CacheEntry:
        row = self._run(
            _INSERT_CACHE,
            {
                "owner": owner,
                "search_query": search_query,
                "business_type": business_type,
                "location": location,
                "session_id": session_id,
                "result_count": result_count,
                "cached_at": cached_at,
                "expires_at": expires_at,
            },
            fetch="one",
        )
        return _to_cache_entry(row)

    def recent_cache_entries(self, owner: str, limit: int) -> List[CacheEntry]:
        rows = self._run(_RECENT_CACHE, {"owner": owner, "limit": limit}, fetch="all")
        return [_to_cache_entry(row) for row in rows]

    def delete_cache_entry(self, entry_id: str, owner: str) -> bool:
        return self._run(_DELETE_CACHE, {"entry_id": entry_id, "owner": owner}) > 0

    # Search logs

    def insert_search_log(
        self,
        *,
        owner: str,
        business_type: str,
        location: str,
        result_count: int,
        was_cached: bool,
        session_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> str:
        row = self._run(
            _INSERT_LOG,
            {
                "owner": owner,
                "user_email": user_email or "",
                "session_id": session_id,
                "business_type": business_type,
                "location": location,
                "result_count": result_count,
                "was_cached": was_cached,
            },
            fetch="one",
        )
        return str(row["id"])

    def recent_search_logs(self, owner: str, limit: int) -> List[SearchLogEntry]:
        rows = self._run(_RECENT_LOGS, {"owner": owner, "limit": limit}, fetch="all")
        return [
            SearchLogEntry(
                id=str(row["id"]),
                owner=str(row["user_id"]),
                business_type=row["business_type"],
                location=row["location"],
                result_count=row.get("result_count") or 0,
                was_cached=bool(row.get("was_cached")),
                search_date=row["search_date"],
                session_id=str(row["session_id"]) if row.get("session_id") else None,
                user_email=row.get("user_email") or None,
            )
            for row in rows
        ]

    def search_stats(self, owner: str) -> SearchStats:
        row = self._run(_SEARCH_STATS, {"owner": owner}, fetch="one") or {}
        return SearchStats(
            total_searches=row.get("total_searches") or 0,
            new_searches=row.get("new_searches") or 0,
            cached_searches=row.get("cached_searches") or 0,
            total_records_extracted=int(row.get("total_records_extracted") or 0),
            first_search_date=row.get("first_search_date"),
            last_search_date=row.get("last_search_date"),
        )


def _to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        owner=str(row["user_id"]),
        business_type=row["business_type"],
        location=row["location"],
        search_query=row.get("search_query") or "",
        status=SessionStatus(row.get("status") or "running"),
        total_records=row.get("total_records") or 0,
        processing_status=ProcessingStatus(row.get("processing_status") or "pending"),
        completed_at=row.get("completed_at"),
        created_at=row.get("created_at"),
    )


def _to_record(row: Dict[str, Any]) -> ListingRecord:
    return ListingRecord(
        name=row.get("name") or "",
        description=row.get("description") or "",
        rating=_float_or_none(row.get("rating")),
        reviews=row.get("reviews"),
        category=row.get("type") or "",
        website=row.get("website") or "",
        address=row.get("address") or "",
        phone=row.get("phone") or "",
        latitude=_float_or_none(row.get("latitude")),
        longitude=_float_or_none(row.get("longitude")),
        opening_hours=parse_opening_hours(row.get("opening_hours")),
        price_level=row.get("price_level") or "",
        thumbnail=row.get("thumbnail") or "",
        place_id=row.get("place_id") or "",
    )


def _to_cache_entry(row: Dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        id=str(row["id"]),
        owner=str(row["user_id"]),
        search_query=row["search_query"],
        business_type=row["business_type"],
        location=row["location"],
        session_id=str(row["session_id"]),
        result_count=row.get("result_count") or 0,
        cached_at=row["cached_at"],
        expires_at=row["expires_at"],
    )


def _float_or_none(value: Any) -> Optional[float]:
    # numeric columns come back as Decimal
    return float(value) if value is not None else None
