"""Append-only activity log with a bounded in-memory feed."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import timedelta

from sessiondeck.config import ACTIVITY_MAX_AGE, ACTIVITY_WINDOW
from sessiondeck.errors import ValidationError
from sessiondeck.models import ActivityEntry, ActivityType, EventType, to_epoch, utcnow

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Records activity entries and serves the recent feed.

    The feed holds at most ``window`` entries no older than ``max_age``
    seconds; anything older is only available through ``history``.
    """

    def __init__(self, db, store, broadcaster=None, window: int = ACTIVITY_WINDOW,
                 max_age: float = ACTIVITY_MAX_AGE):
        self.db = db
        self.store = store
        self.broadcaster = broadcaster
        self.window = window
        self.max_age = max_age
        self._feed: deque[ActivityEntry] = deque(maxlen=window)
        self._lock = threading.Lock()
        self._warm()

    def _warm(self):
        since = to_epoch(utcnow() - timedelta(seconds=self.max_age))
        recent = self.db.scan_activity(limit=self.window, since=since)
        with self._lock:
            self._feed.extend(reversed(recent))

    def append(self, session_id: str, activity_type, detail: str = "", at=None) -> ActivityEntry:
        try:
            activity_type = ActivityType(activity_type)
        except ValueError:
            raise ValidationError(f"Unknown activity type: {activity_type!r}") from None
        session = self.store.get(session_id)

        entry = ActivityEntry(
            id=str(uuid.uuid4()),
            session_id=session_id,
            type=activity_type,
            detail=detail or "",
            timestamp=at or utcnow(),
            session_name=session.project_name,
        )
        # Same lock as session writes so the feed and the live channel see
        # one commit order per session.
        with self.store.session_lock(session_id):
            entry.seq = self.db.insert_activity(entry)
            with self._lock:
                self._feed.append(entry)
            if self.broadcaster is not None:
                self.broadcaster.publish(EventType.ACTIVITY_APPENDED, session_id, entry.to_dict())
        logger.debug("Activity %s on %s: %s", activity_type.value, session_id, detail)
        return entry

    def list(self, session_id: str | None = None, limit: int | None = None) -> list[ActivityEntry]:
        """Recent activity, newest first."""
        cutoff = utcnow() - timedelta(seconds=self.max_age)
        with self._lock:
            entries = [
                e for e in self._feed
                if e.timestamp >= cutoff and (session_id is None or e.session_id == session_id)
            ]
        entries.sort(key=ActivityEntry.sort_key, reverse=True)
        return entries[:limit] if limit is not None else entries

    def history(self, session_id: str | None = None, limit: int = 100) -> list[ActivityEntry]:
        """Activity from the backing store, beyond the in-memory window."""
        return self.db.scan_activity(session_id=session_id, limit=limit)

    def count(self, session_id: str | None = None) -> int:
        return self.db.count_activity(session_id)
