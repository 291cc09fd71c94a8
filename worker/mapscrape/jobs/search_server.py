"""HTTP entrypoint for starting and steering searches (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from mapscrape.core.config import ConfigError, get_settings
from mapscrape.core.db import PostgresStore
from mapscrape.core.errors import (
    InvalidTransitionError,
    PersistenceError,
    SessionNotFoundError,
    SourceFetchError,
)
from mapscrape.pipeline.search import SearchService

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=4)
_service: Optional[SearchService] = None


def get_service() -> SearchService:
    global _service
    if _service is None:
        _service = SearchService.from_settings(PostgresStore())
    return _service


# ---------- Error handlers ----------


@app.errorhandler(SessionNotFoundError)
def _not_found(exc):
    return jsonify({"error": str(exc)}), 404


@app.errorhandler(InvalidTransitionError)
def _conflict(exc):
    return jsonify({"error": str(exc)}), 409


@app.errorhandler(SourceFetchError)
def _bad_gateway(exc):
    return jsonify({"error": str(exc)}), 502


@app.errorhandler(PersistenceError)
def _storage_error(exc):
    logger.error("Storage failure: %s", exc)
    return jsonify({"error": "storage failure"}), 500


@app.errorhandler(ConfigError)
def _config_error(exc):
    logger.error("Configuration error: %s", exc)
    return jsonify({"error": "worker is not configured"}), 503


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, no database round trip."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": getattr(settings, "worker_port", None),
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/search")
def start_search() -> Any:
    """
    Start a search in the background.
    Required JSON fields: business_type plus either location or city and country.
    Answers 200 with the cached session on a cache hit, 202 with the new session id otherwise.
    """
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    parsed, error = _parse_query(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": error}), 400
    business_type, location = parsed
    user_email = request.headers.get("X-User-Email")

    service = get_service()
    cached = service.lookup_cached(business_type, location, owner, user_email=user_email)
    if cached is not None:
        return jsonify({"data": cached.as_dict()}), 200

    handle = service.start(business_type, location, owner)
    logger.info("Queueing search job: session=%s query=%s in %s", handle.id, business_type, location)
    _executor.submit(_run_job_safe, handle, business_type, location, user_email)

    return jsonify({"data": {"session_id": handle.id, "status": handle.status.value}}), 202


@app.post("/search/sync")
def run_search_sync() -> Any:
    """Run a search to completion inside the request. Meant for scripts and small queries."""
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    parsed, error = _parse_query(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": error}), 400
    business_type, location = parsed

    outcome = get_service().search(business_type, location, owner, user_email=request.headers.get("X-User-Email"))
    return jsonify({"data": outcome.as_dict()}), 200


@app.get("/sessions/<session_id>")
def get_session(session_id: str) -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    service = get_service()
    session = service.store.get_session(session_id, owner)
    if session is None:
        raise SessionNotFoundError(f"session {session_id} not found")

    payload = _jsonable(asdict(session))
    payload["live"] = service.sessions.get(session_id) is not None
    return jsonify({"data": payload}), 200


@app.post("/sessions/<session_id>/<action>")
def control_session(session_id: str, action: str) -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    service = get_service()
    actions = {"pause": service.pause, "resume": service.resume, "stop": service.stop}
    if action not in actions:
        return jsonify({"error": f"unknown action {action}"}), 404

    handle = actions[action](session_id, owner)
    return jsonify({"data": {"session_id": handle.id, "status": handle.status.value}}), 200


@app.get("/sessions/<session_id>/listings")
def list_session_listings(session_id: str) -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    store = get_service().store
    if request.args.get("processed") in {"1", "true", "yes"}:
        rows = [asdict(item) for item in store.list_processed_listings(session_id, owner)]
    else:
        rows = []
        for listing in store.list_listings(session_id, owner):
            row = asdict(listing.record)
            row.pop("raw_snapshot", None)
            row.update(id=listing.id, session_id=listing.session_id)
            rows.append(row)
    return jsonify({"data": _jsonable(rows)}), 200


@app.get("/history")
def search_history() -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    limit = _limit(10)
    if limit is None:
        return jsonify({"error": "limit must be a positive integer"}), 400
    entries = get_service().cache.recent(owner, limit)
    return jsonify({"data": _jsonable([asdict(entry) for entry in entries])}), 200


@app.delete("/history/<entry_id>")
def delete_history_entry(entry_id: str) -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    if not get_service().cache.delete(entry_id, owner):
        return jsonify({"error": "not found"}), 404
    return "", 204


@app.get("/logs")
def search_logs() -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    limit = _limit(20)
    if limit is None:
        return jsonify({"error": "limit must be a positive integer"}), 400
    entries = get_service().activity.recent(owner, limit)
    return jsonify({"data": _jsonable([asdict(entry) for entry in entries])}), 200


@app.get("/stats")
def search_stats() -> Any:
    owner = _owner()
    if owner is None:
        return jsonify({"error": "X-User-Id header is required"}), 401

    stats = get_service().activity.stats(owner)
    return jsonify({"data": _jsonable(asdict(stats))}), 200


# ---------- Internals ----------


def _owner() -> Optional[str]:
    # identity is issued upstream; the gateway forwards the authenticated user id
    owner = (request.headers.get("X-User-Id") or "").strip()
    return owner or None


def _parse_query(payload: Dict[str, Any]) -> Tuple[Tuple[str, str], Optional[str]]:
    business_type = str(payload.get("business_type") or "").strip()
    if not business_type:
        return ("", ""), "missing fields: business_type"

    location = str(payload.get("location") or "").strip()
    if not location:
        missing = [f for f in ("city", "country") if not str(payload.get(f) or "").strip()]
        if missing:
            return ("", ""), f"missing fields: location or {', '.join(missing)}"
        location = f"{str(payload['city']).strip()}, {str(payload['country']).strip()}"
    return (business_type, location), None


def _limit(default: int) -> Optional[int]:
    raw = request.args.get("limit")
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _run_job_safe(handle, business_type: str, location: str, user_email: Optional[str]) -> None:
    try:
        get_service().run(handle, business_type, location, user_email=user_email)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Search job failed for session %s: %s", handle.id, exc)


def main() -> None:
    """Cloud Run injects PORT; fall back to WORKER_PORT locally."""
    env_port = os.getenv("PORT")
    logger.info("[BOOT] ENV PORT=%s", env_port)

    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
