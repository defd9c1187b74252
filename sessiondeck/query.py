"""Read-only query surface over the tracker.

Every method returns a JSON-ready dict. Failures come back as
``{error, code, details}`` rather than raising, so the HTTP layer and other
callers share one error shape.
"""

import functools
import logging

from sessiondeck.config import DEFAULT_TIMELINE_HOURS, MAX_TIMELINE_HOURS
from sessiondeck.errors import SessionDeckError, ValidationError
from sessiondeck.models import parse_timestamp

logger = logging.getLogger(__name__)


def _as_error(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SessionDeckError as e:
            logger.debug("%s failed: %s", fn.__name__, e)
            return e.to_dict()

    return wrapper


def _int_arg(name, value, default=None, minimum=0):
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", f"got {value!r}") from None
    if number < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return number


def _time_arg(name, value):
    if value is None or value == "":
        return None
    dt = parse_timestamp(value)
    if dt is None:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp", f"got {value!r}")
    return dt


def is_error(result: dict) -> bool:
    return "error" in result and "code" in result


class QueryService:
    def __init__(self, tracker):
        self.tracker = tracker

    @_as_error
    def sessions(self, status=None, project=None, limit=None, offset=None) -> dict:
        limit = _int_arg("limit", limit)
        offset = _int_arg("offset", offset, default=0)
        store = self.tracker.store
        sessions = store.list(status=status or None, project=project or None, limit=limit, offset=offset)
        return {
            "sessions": [s.to_dict() for s in sessions],
            "total": store.count(status=status or None, project=project or None),
        }

    @_as_error
    def session(self, session_id: str) -> dict:
        session = self.tracker.store.get(session_id)
        data = session.to_dict()
        data["recent_activity"] = [
            e.to_dict() for e in self.tracker.activity.history(session_id, limit=20)
        ]
        return data

    @_as_error
    def activity(self, session_id=None, limit=None) -> dict:
        limit = _int_arg("limit", limit, default=50)
        activity = self.tracker.activity
        if session_id is not None:
            self.tracker.store.get(session_id)
            entries = activity.history(session_id, limit=limit)
        else:
            entries = activity.list(limit=limit)
        return {
            "activity": [e.to_dict() for e in entries],
            "total": activity.count(session_id),
        }

    @_as_error
    def metrics_summary(self, since=None, until=None) -> dict:
        summary = self.tracker.metrics.summary(
            since=_time_arg("since", since), until=_time_arg("until", until)
        )
        return summary.to_dict()

    @_as_error
    def token_timeline(self, session_id=None, hours=None, granularity=None, project=None) -> dict:
        hours = _int_arg("hours", hours, default=DEFAULT_TIMELINE_HOURS, minimum=1)
        hours = min(hours, MAX_TIMELINE_HOURS)
        granularity = granularity or "hour"
        points = self.tracker.metrics.timeline(
            session_id=session_id, hours=hours, granularity=granularity, project=project or None
        )
        return {
            "timeline": [p.to_dict() for p in points],
            "total": len(points),
            "hours": hours,
            "granularity": granularity,
        }

    @_as_error
    def projects(self) -> dict:
        projects = self.tracker.store.projects()
        return {"projects": [p.to_dict() for p in projects], "total": len(projects)}

    @_as_error
    def create_session(self, body) -> dict:
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        session = self.tracker.create_session(
            body.get("project_name"),
            body.get("project_path"),
            body.get("model"),
            session_id=body.get("id"),
            git_branch=body.get("git_branch") or "",
        )
        return session.to_dict()
