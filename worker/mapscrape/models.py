"""Core data models shared by the scrape, cache and verification pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# Opening hours arrive from the maps provider in a few shapes. Only these are kept:
# a day -> hours mapping, an ordered list of (day, hours) pairs, or a free-text summary.
OpeningHours = Union[Dict[str, str], List[Tuple[str, str]], str]


@dataclass(slots=True)
class ListingRecord:
    """Normalized snapshot of a business returned by the listing source."""

    name: str
    description: str = ""
    rating: Optional[float] = None
    reviews: Optional[int] = None
    category: str = ""
    website: str = ""
    address: str = ""
    phone: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    opening_hours: Optional[OpeningHours] = None
    price_level: str = ""
    thumbnail: str = ""
    place_id: str = ""
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)


@dataclass(slots=True)
class Session:
    id: str
    owner: str
    business_type: str
    location: str
    search_query: str
    status: SessionStatus = SessionStatus.RUNNING
    total_records: int = 0
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class RawListing:
    """A listing row persisted by the ingestion loop; never mutated afterwards."""

    id: str
    session_id: str
    record: ListingRecord
    position: int = 0
    created_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def address(self) -> str:
        return self.record.address

    @property
    def website(self) -> str:
        return self.record.website


@dataclass(slots=True)
class ProcessedListing:
    session_id: str
    name: str
    rating: Optional[float] = None
    website: str = ""
    address: str = ""
    phone: str = ""
    is_website_verified: bool = False
    website_status_code: int = 0
    is_duplicate: bool = False


@dataclass(slots=True)
class CacheEntry:
    id: str
    owner: str
    search_query: str
    business_type: str
    location: str
    session_id: str
    result_count: int
    cached_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(slots=True)
class SearchLogEntry:
    id: str
    owner: str
    business_type: str
    location: str
    result_count: int
    was_cached: bool
    search_date: datetime
    session_id: Optional[str] = None
    user_email: Optional[str] = None


@dataclass(slots=True)
class SearchStats:
    total_searches: int = 0
    new_searches: int = 0
    cached_searches: int = 0
    total_records_extracted: int = 0
    first_search_date: Optional[datetime] = None
    last_search_date: Optional[datetime] = None


@dataclass(slots=True)
class VerificationSummary:
    """Outcome of one dedup + verification pass.

    ``duplicates_removed`` keeps the historical meaning of ``total - processed``,
    so it also counts unique listings dropped for failing verification.
    ``duplicates`` and ``unverified`` split that number for diagnostics.
    """

    processed: int
    total: int
    duplicates_removed: int
    duplicates: int = 0
    unverified: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "total": self.total,
            "duplicatesRemoved": self.duplicates_removed,
            "duplicates": self.duplicates,
            "unverified": self.unverified,
        }


def normalize_search_query(business_type: str, location: str) -> str:
    """Build the cache/session key shared by session creation and cache lookups."""
    return f"{(business_type or '').strip().lower()}|{(location or '').strip().lower()}"
