"""Authoritative session state.

Writes to one session are serialized by a per-session lock and guarded by a
version compare-and-swap in the database, so a second process writing the
same file (the migration CLI, say) cannot cause lost updates either.
Different sessions never share a lock.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import timedelta

from sessiondeck.config import DEFAULT_MODEL, IDLE_AFTER, MAX_WRITE_RETRIES
from sessiondeck.errors import ConcurrencyConflict, NotFound, ValidationError
from sessiondeck.models import (
    EventType,
    Project,
    Session,
    SessionStatus,
    TokenUsage,
    can_transition,
    to_epoch,
    utcnow,
)
from sessiondeck.pricing import cost_for, priced

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "project_name",
    "project_path",
    "model",
    "status",
    "git_branch",
    "files_modified",
}


def _require_text(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _parse_status(value) -> SessionStatus:
    try:
        return SessionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown status: {value!r}") from None


class SessionStore:
    def __init__(self, db, broadcaster=None, max_retries: int = MAX_WRITE_RETRIES):
        self.db = db
        self.broadcaster = broadcaster
        self.max_retries = max_retries
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def session_lock(self, session_id: str):
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
        with lock:
            yield

    # -- reads -------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        session = self.db.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    def exists(self, session_id: str) -> bool:
        return self.db.get_session(session_id) is not None

    def list(self, status=None, project=None, limit=None, offset=0) -> list[Session]:
        """Sessions ordered by most recently updated first."""
        if status is not None:
            status = _parse_status(status).value
        if limit is not None and limit < 0:
            raise ValidationError("limit must be >= 0")
        return self.db.query_sessions(status=status, project=project, limit=limit, offset=offset)

    def count(self, status=None, project=None) -> int:
        if status is not None:
            status = _parse_status(status).value
        return self.db.count_sessions(status=status, project=project)

    def projects(self) -> list[Project]:
        """Sessions grouped by project name, most recently active first."""
        grouped: dict[str, Project] = {}
        usage: dict[str, TokenUsage] = defaultdict(TokenUsage)
        for s in self.db.scan_sessions():
            p = grouped.setdefault(s.project_name, Project(name=s.project_name))
            if s.project_path not in p.paths:
                p.paths.append(s.project_path)
            p.session_count += 1
            if s.is_active:
                p.active_sessions += 1
            summed = usage[s.project_name].add_counts(s.token_usage)
            usage[s.project_name] = TokenUsage(*summed.counts(), cost=summed.cost + s.token_usage.cost)
            if p.last_activity is None or s.updated_at > p.last_activity:
                p.last_activity = s.updated_at
        for name, p in grouped.items():
            p.token_usage = usage[name]
        return sorted(grouped.values(), key=lambda p: p.last_activity, reverse=True)

    # -- writes ------------------------------------------------------------

    def create(self, project_name, project_path, model=None, session_id=None, git_branch="", at=None) -> Session:
        project_name = _require_text("project_name", project_name)
        project_path = _require_text("project_path", project_path)
        if session_id is not None:
            session_id = _require_text("session_id", session_id)
        at = at or utcnow()
        session = Session(
            id=session_id or str(uuid.uuid4()),
            project_name=project_name,
            project_path=project_path,
            model=model or DEFAULT_MODEL,
            status=SessionStatus.WORKING,
            created_at=at,
            updated_at=at,
            git_branch=git_branch or "",
            version=1,
        )
        with self.session_lock(session.id):
            if not self.db.insert_session(session):
                raise ValidationError(f"Session {session.id} already exists")
            self._publish(session)
        logger.info("Created session %s (%s)", session.id, project_name)
        return session

    def update(self, session_id: str, partial: dict, at=None) -> Session:
        """Merge the provided fields into the session and bump ``updated_at``."""
        unknown = set(partial) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        fields = dict(partial)
        for key in ("project_name", "project_path"):
            if key in fields:
                fields[key] = _require_text(key, fields[key])
        if "model" in fields:
            fields["model"] = _require_text("model", fields["model"])
        if "status" in fields:
            fields["status"] = _parse_status(fields["status"])
        if "git_branch" in fields:
            fields["git_branch"] = fields["git_branch"] or ""
        if "files_modified" in fields:
            files = fields["files_modified"]
            if not isinstance(files, (list, tuple)) or not all(isinstance(f, str) for f in files):
                raise ValidationError("files_modified must be a list of paths")
            fields["files_modified"] = list(dict.fromkeys(files))

        def change(current: Session):
            target = fields.get("status")
            if target is not None and not can_transition(current.status, target):
                raise ValidationError(
                    f"Cannot move session {session_id} from {current.status.value} to {target.value}"
                )
            return current.copy(**fields, updated_at=self._bumped(current, at)), None

        return self._mutate(session_id, change)

    def restart(self, session_id: str, at=None) -> Session:
        """Explicitly re-enter ``working``, the only way out of error or complete."""

        def change(current: Session):
            return current.copy(status=SessionStatus.WORKING, updated_at=self._bumped(current, at)), None

        session = self._mutate(session_id, change)
        logger.info("Restarted session %s", session_id)
        return session

    def set_project_path(self, session_id: str, new_path: str, project_name: str | None = None) -> Session:
        """Correct a historical project path. Skips update validation and keeps ``updated_at``."""

        def change(current: Session):
            return current.copy(
                project_path=new_path,
                project_name=project_name or current.project_name,
            ), None

        return self._mutate(session_id, change)

    def record_usage(self, session_id: str, delta: TokenUsage, message_id=None, at=None,
                     wake: bool = False) -> Session:
        """Atomically add a token usage delta to the session's running totals.

        With ``wake``, an idle session is moved back to working in the same
        write.
        """
        if delta.is_negative():
            raise ValidationError("Token usage deltas must be non-negative")
        at = at or utcnow()

        def change(current: Session):
            usage = priced(current.model, current.token_usage.add_counts(delta))
            event = {
                "session_id": session_id,
                "message_id": message_id,
                "timestamp": to_epoch(at),
                "input_tokens": delta.input,
                "output_tokens": delta.output,
                "cache_creation_tokens": delta.cache_creation,
                "cache_read_tokens": delta.cache_read,
                "estimated_cost": cost_for(current.model, delta),
            }
            changes = {}
            if wake and current.status == SessionStatus.IDLE:
                changes["status"] = SessionStatus.WORKING
            updated = current.copy(
                token_usage=usage,
                message_count=current.message_count + 1,
                updated_at=self._bumped(current, at),
                **changes,
            )
            return updated, event

        return self._mutate(session_id, change)

    def sweep_idle(self, idle_after: float = IDLE_AFTER, now=None) -> list[Session]:
        """Move working sessions with no update for ``idle_after`` seconds to idle."""
        cutoff = (now or utcnow()) - timedelta(seconds=idle_after)
        swept = []
        for candidate in self.db.query_sessions(status=SessionStatus.WORKING.value):
            if candidate.updated_at >= cutoff:
                continue

            def change(current: Session):
                if current.status != SessionStatus.WORKING or current.updated_at >= cutoff:
                    return None, None
                return current.copy(status=SessionStatus.IDLE), None

            session = self._mutate(candidate.id, change)
            if session.status == SessionStatus.IDLE:
                swept.append(session)
        if swept:
            logger.info("Marked %d sessions idle", len(swept))
        return swept

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _bumped(current: Session, at):
        at = at or utcnow()
        return max(current.updated_at, at)

    def _mutate(self, session_id: str, change) -> Session:
        """Apply ``change(snapshot) -> (new_snapshot, usage_event)`` with CAS retries.

        ``change`` may return ``(None, None)`` to leave the session untouched.
        The envelope is published while the session lock is held so that
        broadcast order matches commit order; publishing only enqueues.
        """
        with self.session_lock(session_id):
            for attempt in range(1, self.max_retries + 1):
                current = self.get(session_id)
                updated, usage_event = change(current)
                if updated is None:
                    return current
                updated.version = current.version + 1
                if self.db.put_session(updated, current.version, usage_event):
                    self._publish(updated)
                    return updated
                logger.debug(
                    "Version conflict on session %s (attempt %d/%d)",
                    session_id, attempt, self.max_retries,
                )
        raise ConcurrencyConflict(
            f"Session {session_id} changed concurrently",
            f"gave up after {self.max_retries} attempts",
        )

    def _publish(self, session: Session):
        if self.broadcaster is not None:
            self.broadcaster.publish(EventType.SESSION_UPDATED, session.id, session.to_dict())
