"""Domain types: sessions, activity, token usage, timeline points, migration records."""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 timestamp as written in Claude Code transcripts."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SessionStatus(str, Enum):
    WORKING = "working"
    IDLE = "idle"
    COMPLETE = "complete"
    ERROR = "error"


# complete and error are left only through an explicit restart
ALLOWED_TRANSITIONS = {
    SessionStatus.WORKING: {SessionStatus.IDLE, SessionStatus.COMPLETE, SessionStatus.ERROR},
    SessionStatus.IDLE: {SessionStatus.WORKING},
    SessionStatus.COMPLETE: set(),
    SessionStatus.ERROR: set(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


class ActivityType(str, Enum):
    MESSAGE_SENT = "message_sent"
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    ERROR = "error"


class EventType(str, Enum):
    SESSION_UPDATED = "session-updated"
    ACTIVITY_APPENDED = "activity-appended"
    ERROR = "error"


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    cost: float = 0.0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read

    def counts(self) -> tuple[int, int, int, int]:
        return (self.input, self.output, self.cache_creation, self.cache_read)

    def is_negative(self) -> bool:
        return any(c < 0 for c in self.counts()) or self.cost < 0

    def add_counts(self, other: "TokenUsage") -> "TokenUsage":
        """Sum the token counts. Cost is left for the caller to reprice."""
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_creation=self.cache_creation + other.cache_creation,
            cache_read=self.cache_read + other.cache_read,
            cost=self.cost,
        )

    def to_dict(self) -> dict:
        return {
            "input": self.input,
            "output": self.output,
            "cache_creation": self.cache_creation,
            "cache_read": self.cache_read,
            "total": self.total,
            "cost": round(self.cost, 6),
        }


@dataclass
class Session:
    id: str
    project_name: str
    project_path: str
    model: str
    status: SessionStatus = SessionStatus.WORKING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    message_count: int = 0
    git_branch: str = ""
    files_modified: list[str] = field(default_factory=list)
    version: int = 0

    @property
    def duration_seconds(self) -> int:
        return max(0, int((self.updated_at - self.created_at).total_seconds()))

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.WORKING

    def copy(self, **changes) -> "Session":
        changes.setdefault("files_modified", list(self.files_modified))
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_name": self.project_name,
            "project_path": self.project_path,
            "model": self.model,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "is_active": self.is_active,
            "message_count": self.message_count,
            "git_branch": self.git_branch,
            "files_modified": list(self.files_modified),
            "token_usage": self.token_usage.to_dict(),
        }


@dataclass
class ActivityEntry:
    id: str
    session_id: str
    type: ActivityType
    detail: str
    timestamp: datetime
    seq: int = 0
    session_name: str = ""

    def sort_key(self) -> tuple[float, int]:
        return (to_epoch(self.timestamp), self.seq)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "session_name": self.session_name,
            "type": self.type.value,
            "details": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TokenTimelinePoint:
    start: datetime
    end: datetime
    granularity: str
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    cost: float = 0.0
    message_count: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read

    def to_dict(self) -> dict:
        return {
            "timestamp": self.start.isoformat(),
            "end": self.end.isoformat(),
            "granularity": self.granularity,
            "input_tokens": self.input,
            "output_tokens": self.output,
            "cache_creation_tokens": self.cache_creation,
            "cache_read_tokens": self.cache_read,
            "total_tokens": self.total,
            "estimated_cost": round(self.cost, 6),
            "message_count": self.message_count,
        }


@dataclass
class MetricsSummary:
    total_sessions: int = 0
    active_sessions: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    total_messages: int = 0
    average_session_duration_minutes: float = 0.0
    most_used_model: str = ""
    model_usage: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_cost"] = round(self.total_cost, 6)
        data["average_session_duration_minutes"] = round(
            self.average_session_duration_minutes, 2
        )
        return data


@dataclass
class Project:
    name: str
    paths: list[str] = field(default_factory=list)
    session_count: int = 0
    active_sessions: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    last_activity: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "paths": list(self.paths),
            "session_count": self.session_count,
            "active_sessions": self.active_sessions,
            "token_usage": self.token_usage.to_dict(),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class Message:
    """A transcript message as served by the message source."""

    id: str
    session_id: str
    timestamp: datetime
    payload: dict = field(default_factory=dict)
    working_directory: str | None = None


@dataclass
class MigrationRecord:
    session_id: str
    old_path: str
    proposed_path: str
    proposed_name: str
    evidence_message_id: str
    evidence_timestamp: datetime
    applied: bool = False

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "old": self.old_path,
            "proposed": self.proposed_path,
            "proposed_name": self.proposed_name,
            "evidence": {
                "message_id": self.evidence_message_id,
                "timestamp": self.evidence_timestamp.isoformat(),
            },
            "applied": self.applied,
        }


@dataclass
class MigrationReport:
    scanned: int = 0
    changed: int = 0
    skipped: int = 0
    failed: int = 0
    unresolved: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Envelope:
    """A typed live-channel message."""

    type: EventType
    session_id: str | None
    data: dict
    timestamp: datetime
    seq: int

    @property
    def entity(self) -> str:
        return self.session_id or "_global"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "seq": self.seq,
        }
