"""Utilities for turning maps provider payloads into ListingRecord objects."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from mapscrape.models import ListingRecord, OpeningHours

logger = logging.getLogger(__name__)


def extract_local_results(data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """The maps engine returns local_results as a list or nested under a dict."""
    if not data:
        return []

    local_results = data.get("local_results")
    items: Iterable[Any] = []
    if isinstance(local_results, list):
        items = local_results
    elif isinstance(local_results, dict):
        for maybe in (local_results.get("places"), local_results.get("results")):
            if isinstance(maybe, list):
                items = maybe
                break
    elif isinstance(data.get("place_results"), dict):
        items = [data["place_results"]]

    return [item for item in items if isinstance(item, dict)]


def to_listing_record(result: Dict[str, Any]) -> ListingRecord:
    """Map one raw local result from the maps engine onto a ListingRecord."""
    gps = result.get("gps_coordinates") or {}
    return ListingRecord(
        name=_text(result.get("title") or result.get("name")) or "Unknown",
        description=_text(result.get("description")),
        rating=_safe_float(result.get("rating")),
        reviews=_safe_int(result.get("reviews")),
        category=_text(result.get("type")),
        website=_text(result.get("website")),
        address=_text(result.get("address")),
        phone=_text(result.get("phone")),
        latitude=_safe_float(gps.get("latitude")),
        longitude=_safe_float(gps.get("longitude")),
        opening_hours=parse_opening_hours(result.get("operating_hours") or result.get("opening_hours")),
        price_level=_text(result.get("price")),
        thumbnail=_text(result.get("thumbnail")),
        place_id=_text(result.get("place_id")),
        raw_snapshot=result,
    )


def from_listing_payload(item: Dict[str, Any]) -> ListingRecord:
    """Map a listing already flattened by the listing endpoint (``type``, ``latitude``...)."""
    return ListingRecord(
        name=_text(item.get("name")) or "Unknown",
        description=_text(item.get("description")),
        rating=_safe_float(item.get("rating")),
        reviews=_safe_int(item.get("reviews")),
        category=_text(item.get("type")),
        website=_text(item.get("website")),
        address=_text(item.get("address")),
        phone=_text(item.get("phone")),
        latitude=_safe_float(item.get("latitude")),
        longitude=_safe_float(item.get("longitude")),
        opening_hours=parse_opening_hours(item.get("opening_hours")),
        price_level=_text(item.get("price_level")),
        thumbnail=_text(item.get("thumbnail")),
        place_id=_text(item.get("place_id")),
        raw_snapshot=item,
    )


def parse_opening_hours(value: Any) -> Optional[OpeningHours]:
    """Validate opening hours into one of the supported shapes, or None."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        hours = {str(day).strip(): _hours_text(text) for day, text in value.items() if str(day).strip()}
        return hours or None
    if isinstance(value, list):
        pairs = []
        for entry in value:
            if isinstance(entry, dict) and len(entry) == 1:
                day, text = next(iter(entry.items()))
                pairs.append((str(day).strip(), _hours_text(text)))
            elif isinstance(entry, dict) and "day" in entry:
                pairs.append((str(entry["day"]).strip(), _hours_text(entry.get("hours"))))
            elif isinstance(entry, (list, tuple)) and len(entry) == 2:
                pairs.append((str(entry[0]).strip(), _hours_text(entry[1])))
            else:
                logger.debug("Dropping opening hours entry with unsupported shape: %r", entry)
        return pairs or None

    logger.debug("Dropping opening hours with unsupported type %s", type(value).__name__)
    return None


def to_listing_row(record: ListingRecord) -> Dict[str, Any]:
    """Flatten a ListingRecord into the column dictionary used by the store."""
    return {
        "name": record.name,
        "description": record.description,
        "rating": record.rating,
        "reviews": record.reviews,
        "type": record.category,
        "website": record.website,
        "raw_website": record.website,
        "address": record.address,
        "phone": record.phone,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "opening_hours": record.opening_hours,
        "price_level": record.price_level,
        "thumbnail": record.thumbnail,
        "place_id": record.place_id,
    }


def _hours_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(part).strip() for part in value)
    return "" if value is None else str(value).strip()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)

    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None
