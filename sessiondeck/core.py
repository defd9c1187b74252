"""Wires the store, activity recorder, metrics and broadcaster over one database."""

import logging

from sessiondeck.activity import ActivityRecorder
from sessiondeck.broadcast import Broadcaster
from sessiondeck.db import Database
from sessiondeck.metrics import MetricsSummarizer
from sessiondeck.models import ActivityType, EventType, SessionStatus, TokenUsage, can_transition
from sessiondeck.reconcile import ProjectPathReconciler
from sessiondeck.store import SessionStore

logger = logging.getLogger(__name__)


class Tracker:
    """The session/activity core plus the operations that touch more than one part of it."""

    def __init__(self, db_path=None, broadcaster: Broadcaster | None = None, **activity_opts):
        self.db = Database(db_path)
        self.broadcaster = broadcaster or Broadcaster()
        self.store = SessionStore(self.db, self.broadcaster)
        self.activity = ActivityRecorder(self.db, self.store, self.broadcaster, **activity_opts)
        self.metrics = MetricsSummarizer(self.db, self.store)
        self.reconciler = ProjectPathReconciler(self.store, self.db)

    def create_session(self, project_name, project_path, model=None, session_id=None,
                       git_branch="", at=None):
        session = self.store.create(
            project_name, project_path, model, session_id=session_id, git_branch=git_branch, at=at
        )
        self.activity.append(
            session.id, ActivityType.SESSION_CREATED, f"Session started in {session.project_path}", at=at
        )
        return session

    def record_message(self, session_id: str, usage: TokenUsage, detail: str = "",
                       message_id=None, at=None):
        """Count one message: wake an idle session, add its usage, log it."""
        session = self.store.record_usage(session_id, usage, message_id=message_id, at=at, wake=True)
        self.activity.append(session_id, ActivityType.MESSAGE_SENT, detail, at=at)
        return session

    def report_error(self, session_id: str, detail: str, at=None):
        """Move a session to error (when its state allows) and announce it."""
        session = self.store.get(session_id)
        if session.status != SessionStatus.ERROR and can_transition(session.status, SessionStatus.ERROR):
            session = self.store.update(session_id, {"status": SessionStatus.ERROR.value}, at=at)
        self.activity.append(session_id, ActivityType.ERROR, detail, at=at)
        self.broadcaster.publish(EventType.ERROR, session_id, {"error": detail})
        logger.warning("Session %s reported an error: %s", session_id, detail)
        return session

    def close(self):
        self.broadcaster.close()
        self.db.close()
