"""Scraping session lifecycle: persisted status plus the in-memory control token.

The row in ``scraping_sessions`` is what callers display. The running
ingestion loop never reads it back; it only looks at its SessionControl,
which pause/resume/stop flip before touching the database.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from mapscrape.core.errors import InvalidTransitionError
from mapscrape.models import Session, SessionStatus, normalize_search_query

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionControl:
    """Cooperative pause/cancel token observed by the ingestion loop."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._state_changed = threading.Condition()
        self._paused = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        with self._state_changed:
            self._paused = True

    def resume(self) -> None:
        with self._state_changed:
            self._paused = False
            self._state_changed.notify_all()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._state_changed:
            self._state_changed.notify_all()

    def wait_while_paused(self, poll_seconds: float = 0.1) -> bool:
        """Block while paused. Returns False once cancellation has been requested."""
        with self._state_changed:
            while self._paused and not self._cancelled.is_set():
                self._state_changed.wait(timeout=poll_seconds)
        return not self._cancelled.is_set()

    def sleep(self, seconds: float) -> bool:
        """Interruptible delay. Returns False if cancelled before or during the wait."""
        if seconds > 0:
            return not self._cancelled.wait(timeout=seconds)
        return not self._cancelled.is_set()


class SessionHandle:
    """A live session: the last known row state and its control token."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.control = SessionControl()

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def owner(self) -> str:
        return self.session.owner

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    def __repr__(self) -> str:
        return f"SessionHandle(id={self.id!r}, status={self.status.value}, total_records={self.session.total_records})"


class SessionManager:
    """Owns session transitions and the registry of sessions running in this process."""

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock
        self._handles: Dict[str, SessionHandle] = {}
        self._lock = threading.Lock()

    def create(self, business_type: str, location: str, owner: str) -> SessionHandle:
        """Persist a new running session. Store failures surface as PersistenceError."""
        search_query = normalize_search_query(business_type, location)
        session = self.store.create_session(owner, business_type.strip(), location.strip(), search_query)
        handle = SessionHandle(session)
        with self._lock:
            self._handles[handle.id] = handle
        logger.info("Created session %s for query=%s", handle.id, search_query)
        return handle

    def get(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._handles.get(session_id)

    def release(self, handle: SessionHandle) -> None:
        with self._lock:
            self._handles.pop(handle.id, None)

    def pause(self, handle: SessionHandle) -> None:
        self._ensure_active(handle, SessionStatus.PAUSED)
        handle.control.pause()
        if handle.status is SessionStatus.PAUSED:
            return
        handle.session.status = SessionStatus.PAUSED
        self.store.update_session(handle.id, handle.owner, status=SessionStatus.PAUSED)
        logger.info("Paused session %s", handle.id)

    def resume(self, handle: SessionHandle) -> None:
        self._ensure_active(handle, SessionStatus.RUNNING)
        handle.control.resume()
        if handle.status is SessionStatus.RUNNING:
            return
        handle.session.status = SessionStatus.RUNNING
        self.store.update_session(handle.id, handle.owner, status=SessionStatus.RUNNING)
        logger.info("Resumed session %s", handle.id)

    def stop(self, handle: SessionHandle) -> None:
        """Cancel the loop and mark the session completed. Never raises."""
        handle.control.cancel()
        if handle.status.is_terminal:
            logger.debug("Stop requested for session %s already %s", handle.id, handle.status.value)
            return

        completed_at = self.clock()
        handle.session.status = SessionStatus.COMPLETED
        handle.session.completed_at = completed_at
        try:
            self.store.update_session(
                handle.id, handle.owner, status=SessionStatus.COMPLETED, completed_at=completed_at
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist stop for session %s: %s", handle.id, exc)
        else:
            logger.info("Stopped session %s after %d records", handle.id, handle.session.total_records)

    def complete(self, handle: SessionHandle) -> bool:
        """Natural end of ingestion. Returns False when the status write failed."""
        self._ensure_active(handle, SessionStatus.COMPLETED)
        completed_at = self.clock()
        handle.session.status = SessionStatus.COMPLETED
        handle.session.completed_at = completed_at
        try:
            self.store.update_session(
                handle.id, handle.owner, status=SessionStatus.COMPLETED, completed_at=completed_at
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to mark session %s completed: %s", handle.id, exc)
            return False
        return True

    def fail(self, handle: SessionHandle, reason: str) -> None:
        self._ensure_active(handle, SessionStatus.FAILED)
        handle.control.cancel()
        handle.session.status = SessionStatus.FAILED
        self.store.update_session(handle.id, handle.owner, status=SessionStatus.FAILED)
        logger.warning("Session %s failed: %s", handle.id, reason)

    def record_progress(self, handle: SessionHandle, count: int) -> None:
        """Write total_records. Repeated or smaller counts are ignored."""
        if count <= handle.session.total_records:
            return
        self.store.update_session(handle.id, handle.owner, total_records=count)
        handle.session.total_records = count

    @staticmethod
    def _ensure_active(handle: SessionHandle, requested: SessionStatus) -> None:
        if handle.status.is_terminal:
            raise InvalidTransitionError(handle.id, handle.status.value, requested.value)
