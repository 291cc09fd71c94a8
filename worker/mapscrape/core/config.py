"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    serpapi_api_key: str
    database_url: str
    worker_port: int = 9000
    listing_source_url: Optional[str] = None
    listing_source_token: Optional[str] = None
    cache_ttl_days: int = 7
    ingest_delay_seconds: float = 0.3
    pause_poll_seconds: float = 0.1
    verify_timeout_seconds: float = 5.0
    verify_max_workers: int = 8


def _get_number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    listing_source_url = os.getenv("LISTING_SOURCE_URL") or None
    listing_source_token = os.getenv("LISTING_SOURCE_TOKEN") or None

    worker_port = _get_number("WORKER_PORT", "9000", int)
    cache_ttl_days = _get_number("CACHE_TTL_DAYS", "7", int)
    ingest_delay_seconds = _get_number("INGEST_DELAY_SECONDS", "0.3", float)
    pause_poll_seconds = _get_number("PAUSE_POLL_SECONDS", "0.1", float)
    verify_timeout_seconds = _get_number("VERIFY_TIMEOUT_SECONDS", "5", float)
    verify_max_workers = _get_number("VERIFY_MAX_WORKERS", "8", int)
    if verify_max_workers < 1:
        raise ConfigError("VERIFY_MAX_WORKERS must be at least 1")

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not serpapi_api_key and not listing_source_url:
        logger.warning("Neither SERPAPI_API_KEY nor LISTING_SOURCE_URL is configured; searches will fail.")

    return Settings(
        serpapi_api_key=serpapi_api_key,
        database_url=database_url,
        worker_port=worker_port,
        listing_source_url=listing_source_url,
        listing_source_token=listing_source_token,
        cache_ttl_days=cache_ttl_days,
        ingest_delay_seconds=ingest_delay_seconds,
        pause_poll_seconds=pause_poll_seconds,
        verify_timeout_seconds=verify_timeout_seconds,
        verify_max_workers=verify_max_workers,
    )
