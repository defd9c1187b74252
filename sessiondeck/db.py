"""SQLite record store with WAL mode for concurrent readers.

SQLite with WAL mode supports:
- Multiple concurrent readers
- Single writer (but writers don't block readers)

All writes go through one connection guarded by a lock; each thread gets its
own autocommit reader. Any ``sqlite3.Error`` escaping this module is raised
as ``StoreUnavailable``.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from sessiondeck.config import DB_PATH
from sessiondeck.errors import StoreUnavailable
from sessiondeck.models import (
    ActivityEntry,
    ActivityType,
    Message,
    Session,
    SessionStatus,
    TokenUsage,
    from_epoch,
    to_epoch,
)


def _connect(path: Path, autocommit: bool = False) -> sqlite3.Connection:
    """Create a SQLite connection with optimal settings.

    autocommit=True uses isolation_level=None so readers always see the
    latest committed WAL data without holding a stale snapshot.
    """
    conn = sqlite3.connect(
        str(path),
        check_same_thread=False,  # Allow use across threads
        timeout=30.0,
        isolation_level=None if autocommit else "",
    )
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")  # Still safe with WAL
    conn.execute("PRAGMA busy_timeout=30000")
    conn.execute("PRAGMA cache_size=-64000")  # 64MB cache
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA temp_store=MEMORY")

    return conn


def _migrate_add_columns(conn: sqlite3.Connection, table: str, columns: list):
    """Add columns to table if they don't exist (safe migration)."""
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for col_name, col_type in columns:
        if col_name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}")


def _init_schema(conn: sqlite3.Connection):
    """Initialize database schema."""

    conn.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            project_name TEXT NOT NULL,
            project_path TEXT NOT NULL,
            model TEXT,
            status TEXT NOT NULL DEFAULT 'working',
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            input_tokens INTEGER DEFAULT 0,
            output_tokens INTEGER DEFAULT 0,
            cache_creation_tokens INTEGER DEFAULT 0,
            cache_read_tokens INTEGER DEFAULT 0,
            estimated_cost REAL DEFAULT 0.0,
            message_count INTEGER DEFAULT 0,
            git_branch TEXT DEFAULT '',
            files_modified TEXT DEFAULT '[]',  -- JSON array as text
            version INTEGER NOT NULL DEFAULT 0
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS activity_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT UNIQUE NOT NULL,
            session_id TEXT NOT NULL REFERENCES sessions(id),
            activity_type TEXT NOT NULL,
            details TEXT,
            timestamp REAL NOT NULL
        )
    """)

    # One row per recorded usage delta; the token timeline is built from these
    conn.execute("""
        CREATE TABLE IF NOT EXISTS usage_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL REFERENCES sessions(id),
            message_id TEXT,
            timestamp REAL NOT NULL,
            input_tokens INTEGER DEFAULT 0,
            output_tokens INTEGER DEFAULT 0,
            cache_creation_tokens INTEGER DEFAULT 0,
            cache_read_tokens INTEGER DEFAULT 0,
            estimated_cost REAL DEFAULT 0.0
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            entry_type TEXT,
            timestamp REAL NOT NULL,
            cwd TEXT,
            git_branch TEXT,
            model TEXT,
            payload TEXT,  -- JSON object as text
            input_tokens INTEGER DEFAULT 0,
            output_tokens INTEGER DEFAULT 0,
            cache_creation_tokens INTEGER DEFAULT 0,
            cache_read_tokens INTEGER DEFAULT 0,
            applied INTEGER DEFAULT 0  -- folded into session state
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS ingestion_log (
            file_path TEXT PRIMARY KEY,
            mtime REAL,
            entry_count INTEGER DEFAULT 0,
            ingested_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS skip_cache (
            file_path TEXT PRIMARY KEY,
            mtime REAL,
            error_type TEXT,
            error_message TEXT,
            skip_until TIMESTAMP,
            cached_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Databases created before file-change tracking
    _migrate_add_columns(conn, "sessions", [
        ("git_branch", "TEXT DEFAULT ''"),
        ("files_modified", "TEXT DEFAULT '[]'"),
    ])
    _migrate_add_columns(conn, "messages", [("applied", "INTEGER DEFAULT 0")])

    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_session ON activity_log(session_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_log(timestamp)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_events(timestamp)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_session ON usage_events(session_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, timestamp)")

    conn.commit()


def _row_to_session(row) -> Session:
    return Session(
        id=row["id"],
        project_name=row["project_name"],
        project_path=row["project_path"],
        model=row["model"] or "",
        status=SessionStatus(row["status"]),
        created_at=from_epoch(row["created_at"]),
        updated_at=from_epoch(row["updated_at"]),
        token_usage=TokenUsage(
            input=row["input_tokens"],
            output=row["output_tokens"],
            cache_creation=row["cache_creation_tokens"],
            cache_read=row["cache_read_tokens"],
            cost=row["estimated_cost"],
        ),
        message_count=row["message_count"],
        git_branch=row["git_branch"] or "",
        files_modified=json.loads(row["files_modified"] or "[]"),
        version=row["version"],
    )


def _session_params(session: Session) -> dict:
    usage = session.token_usage
    return {
        "id": session.id,
        "project_name": session.project_name,
        "project_path": session.project_path,
        "model": session.model,
        "status": session.status.value,
        "created_at": to_epoch(session.created_at),
        "updated_at": to_epoch(session.updated_at),
        "input_tokens": usage.input,
        "output_tokens": usage.output,
        "cache_creation_tokens": usage.cache_creation,
        "cache_read_tokens": usage.cache_read,
        "estimated_cost": usage.cost,
        "message_count": session.message_count,
        "git_branch": session.git_branch,
        "files_modified": json.dumps(session.files_modified),
        "version": session.version,
    }


def _row_to_activity(row) -> ActivityEntry:
    return ActivityEntry(
        id=row["id"],
        session_id=row["session_id"],
        type=ActivityType(row["activity_type"]),
        detail=row["details"] or "",
        timestamp=from_epoch(row["timestamp"]),
        seq=row["seq"],
        session_name=row["project_name"] or "",
    )


class Database:
    """Persistence for sessions, activity, usage events and transcript messages."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else DB_PATH
        self._local = threading.local()
        self._writer_lock = threading.Lock()
        self._writer = None

    # -- connections -------------------------------------------------------

    def get_writer(self) -> sqlite3.Connection:
        """Get the serialized writer connection.

        Writes should go through ``transaction``, which holds the writer lock.
        """
        if self._writer is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._writer = _connect(self.path)
                _init_schema(self._writer)
            except sqlite3.Error as e:
                raise StoreUnavailable("Failed to open database", str(e)) from e
        return self._writer

    def get_reader(self) -> sqlite3.Connection:
        """Get a reader connection for this thread."""
        if not hasattr(self._local, "reader"):
            self.get_writer()  # schema must exist before the first read
            try:
                self._local.reader = _connect(self.path, autocommit=True)
            except sqlite3.Error as e:
                raise StoreUnavailable("Failed to open database", str(e)) from e
        return self._local.reader

    @contextmanager
    def transaction(self):
        """Serialized write transaction; rolls back on any error."""
        with self._writer_lock:
            conn = self.get_writer()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable("Database write failed", str(e)) from e
            except Exception:
                conn.rollback()
                raise

    def execute_write(self, sql: str, params=None):
        """Execute a write query with proper locking."""
        with self.transaction() as conn:
            return conn.execute(sql, params or [])

    def execute_read(self, sql: str, params=None) -> list:
        """Execute a read query using this thread's reader connection."""
        try:
            return self.get_reader().execute(sql, params or []).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable("Database read failed", str(e)) from e

    def close(self):
        with self._writer_lock:
            if self._writer is not None:
                self._writer.close()
                self._writer = None
        reader = getattr(self._local, "reader", None)
        if reader is not None:
            reader.close()
            del self._local.reader

    # -- sessions ----------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        rows = self.execute_read("SELECT * FROM sessions WHERE id = ?", [session_id])
        return _row_to_session(rows[0]) if rows else None

    def insert_session(self, session: Session) -> bool:
        """Insert a new session. Returns False if the id is already taken."""
        with self._writer_lock:
            conn = self.get_writer()
            try:
                conn.execute(
                    """
                    INSERT INTO sessions VALUES (
                        :id, :project_name, :project_path, :model, :status,
                        :created_at, :updated_at, :input_tokens, :output_tokens,
                        :cache_creation_tokens, :cache_read_tokens, :estimated_cost,
                        :message_count, :git_branch, :files_modified, :version
                    )
                    """,
                    _session_params(session),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                return False
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable("Database write failed", str(e)) from e
        return True

    def put_session(self, session: Session, expected_version: int, usage_event: dict | None = None) -> bool:
        """Compare-and-swap write of a session snapshot.

        The row is written only if its stored version still equals
        ``expected_version``; ``session.version`` must already hold the new
        version. When ``usage_event`` is given it is inserted in the same
        transaction. Returns False on a version mismatch.
        """
        with self.transaction() as conn:
            params = _session_params(session)
            params["expected_version"] = expected_version
            cur = conn.execute(
                """
                UPDATE sessions SET
                    project_name = :project_name,
                    project_path = :project_path,
                    model = :model,
                    status = :status,
                    updated_at = :updated_at,
                    input_tokens = :input_tokens,
                    output_tokens = :output_tokens,
                    cache_creation_tokens = :cache_creation_tokens,
                    cache_read_tokens = :cache_read_tokens,
                    estimated_cost = :estimated_cost,
                    message_count = :message_count,
                    git_branch = :git_branch,
                    files_modified = :files_modified,
                    version = :version
                WHERE id = :id AND version = :expected_version
                """,
                params,
            )
            if cur.rowcount != 1:
                return False
            if usage_event is not None:
                conn.execute(
                    """
                    INSERT INTO usage_events (
                        session_id, message_id, timestamp, input_tokens, output_tokens,
                        cache_creation_tokens, cache_read_tokens, estimated_cost
                    ) VALUES (
                        :session_id, :message_id, :timestamp, :input_tokens, :output_tokens,
                        :cache_creation_tokens, :cache_read_tokens, :estimated_cost
                    )
                    """,
                    usage_event,
                )
        return True

    def scan_sessions(self) -> list[Session]:
        rows = self.execute_read("SELECT * FROM sessions ORDER BY created_at, id")
        return [_row_to_session(r) for r in rows]

    def _session_filter(self, status=None, project=None) -> tuple[str, list]:
        conditions, params = [], []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if project:
            conditions.append("project_name = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def query_sessions(self, status=None, project=None, limit=None, offset=0) -> list[Session]:
        where, params = self._session_filter(status, project)
        sql = f"SELECT * FROM sessions {where} ORDER BY updated_at DESC, id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        return [_row_to_session(r) for r in self.execute_read(sql, params)]

    def count_sessions(self, status=None, project=None) -> int:
        where, params = self._session_filter(status, project)
        return self.execute_read(f"SELECT COUNT(*) FROM sessions {where}", params)[0][0]

    # -- activity ----------------------------------------------------------

    def insert_activity(self, entry: ActivityEntry) -> int:
        """Append an activity row and return its insertion sequence number."""
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO activity_log (id, session_id, activity_type, details, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                [entry.id, entry.session_id, entry.type.value, entry.detail, to_epoch(entry.timestamp)],
            )
            return cur.lastrowid

    def scan_activity(self, session_id=None, limit=None, since=None) -> list[ActivityEntry]:
        """Activity newest first, ordered by timestamp then insertion order."""
        conditions, params = [], []
        if session_id:
            conditions.append("a.session_id = ?")
            params.append(session_id)
        if since is not None:
            conditions.append("a.timestamp >= ?")
            params.append(since)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = f"""
            SELECT a.*, s.project_name
            FROM activity_log a
            LEFT JOIN sessions s ON s.id = a.session_id
            {where}
            ORDER BY a.timestamp DESC, a.seq DESC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_activity(r) for r in self.execute_read(sql, params)]

    def count_activity(self, session_id=None) -> int:
        if session_id:
            rows = self.execute_read("SELECT COUNT(*) FROM activity_log WHERE session_id = ?", [session_id])
        else:
            rows = self.execute_read("SELECT COUNT(*) FROM activity_log")
        return rows[0][0]

    # -- usage -------------------------------------------------------------

    def scan_usage_events(self, since: float, until: float, session_id=None, project=None) -> list:
        conditions = ["u.timestamp >= ?", "u.timestamp <= ?"]
        params = [since, until]
        if session_id:
            conditions.append("u.session_id = ?")
            params.append(session_id)
        if project:
            conditions.append("s.project_name = ?")
            params.append(project)
        return self.execute_read(
            f"""
            SELECT u.*
            FROM usage_events u
            JOIN sessions s ON s.id = u.session_id
            WHERE {' AND '.join(conditions)}
            ORDER BY u.timestamp, u.id
            """,
            params,
        )

    # -- messages ----------------------------------------------------------

    def insert_message(self, conn: sqlite3.Connection, entry: dict) -> bool:
        """Insert a parsed transcript entry on an open writer. False if already stored."""
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO messages (
                id, session_id, entry_type, timestamp, cwd, git_branch, model, payload,
                input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens
            ) VALUES (
                :entry_id, :session_id, :entry_type, :timestamp, :cwd, :git_branch,
                :model, :payload, :input_tokens, :output_tokens,
                :cache_creation_tokens, :cache_read_tokens
            )
            """,
            {**entry, "payload": json.dumps(entry.get("payload") or {})},
        )
        return cur.rowcount == 1

    def unapplied_message_ids(self, conn: sqlite3.Connection, ids: list[str]) -> set[str]:
        """Which of ``ids`` are stored but not yet folded into session state."""
        pending = set()
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            marks = ", ".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT id FROM messages WHERE applied = 0 AND id IN ({marks})", chunk
            ).fetchall()
            pending.update(r[0] for r in rows)
        return pending

    def mark_message_applied(self, message_id: str):
        self.execute_write("UPDATE messages SET applied = 1 WHERE id = ?", [message_id])

    def messages_for_session(self, session_id: str) -> list[Message]:
        """Messages of one session in chronological order."""
        rows = self.execute_read(
            "SELECT id, session_id, timestamp, cwd, payload FROM messages "
            "WHERE session_id = ? ORDER BY timestamp ASC, rowid ASC",
            [session_id],
        )
        return [
            Message(
                id=r["id"],
                session_id=r["session_id"],
                timestamp=from_epoch(r["timestamp"]),
                payload=json.loads(r["payload"] or "{}"),
                working_directory=r["cwd"] or None,
            )
            for r in rows
        ]
