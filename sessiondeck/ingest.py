"""JSONL transcripts → messages, sessions, usage and activity, ingested incrementally."""

import json
import logging
import os
from pathlib import Path

from sessiondeck.config import CLAUDE_PROJECTS_DIR
from sessiondeck.errors import SessionDeckError, StoreUnavailable
from sessiondeck.models import SessionStatus, TokenUsage, from_epoch, parse_timestamp, to_epoch
from sessiondeck.reconcile import project_name_from_path

logger = logging.getLogger(__name__)

FILE_TOOLS = {"Edit", "Write", "MultiEdit", "NotebookEdit"}
MESSAGE_TYPES = {"user", "assistant"}


def find_jsonl_files(projects_dir: Path | None = None) -> list[tuple[Path, str]]:
    """Find all JSONL files and the project directory they belong to."""
    root = projects_dir or CLAUDE_PROJECTS_DIR
    results = []
    if not root.exists():
        return results
    for project_dir in sorted(root.iterdir()):
        if not project_dir.is_dir():
            continue
        for jsonl_file in sorted(project_dir.glob("*.jsonl")):
            results.append((jsonl_file, project_dir.name))
    return results


def decode_project_dir(dir_name: str) -> str:
    """Best-effort path from Claude's encoded project directory name.

    Claude Code replaces every ``/`` with ``-``, so dashes inside directory
    names cannot be told apart. The reconciler repairs this from the
    recorded working directory.
    """
    if dir_name.startswith("-"):
        return "/" + dir_name[1:].replace("-", "/")
    return dir_name


def needs_ingestion(file_path: Path, conn) -> bool:
    """Check if file needs (re-)ingestion based on mtime and skip cache."""
    mtime = os.path.getmtime(file_path)

    # Files that failed parsing are skipped until they change
    skip_result = conn.execute(
        "SELECT mtime FROM skip_cache WHERE file_path = ?", [str(file_path)]
    ).fetchone()
    if skip_result is not None and mtime <= skip_result[0]:
        return False

    result = conn.execute(
        "SELECT mtime FROM ingestion_log WHERE file_path = ?", [str(file_path)]
    ).fetchone()
    if result is None:
        return True
    return mtime > result[0]


def mark_skip(file_path: Path, error_type: str, error_message: str, conn):
    """Mark a file to be skipped until its mtime changes."""
    mtime = os.path.getmtime(file_path)
    conn.execute(
        """
        INSERT OR REPLACE INTO skip_cache (file_path, mtime, error_type, error_message, skip_until)
        VALUES (?, ?, ?, ?, datetime('now', '+1 day'))
        """,
        [str(file_path), mtime, error_type, error_message[:500]],
    )


def clear_skip(file_path: Path, conn):
    """Clear a file from the skip cache after successful ingestion."""
    conn.execute("DELETE FROM skip_cache WHERE file_path = ?", [str(file_path)])


def parse_entry(line: str) -> dict | None:
    """Parse a single JSONL line into a message dict, or None if it isn't one."""
    try:
        d = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(d, dict):
        return None

    entry_type = d.get("type")
    if entry_type in ("progress", "file-history-snapshot", "summary"):
        return None

    entry_id = d.get("uuid")
    session_id = d.get("sessionId")
    timestamp = parse_timestamp(d.get("timestamp"))
    if not entry_id or not session_id or timestamp is None:
        return None

    msg = d.get("message") or {}
    usage = msg.get("usage") or {}
    model = msg.get("model")
    if model == "<synthetic>":
        model = None

    content = msg.get("content", "")
    text_parts = []
    tool_names = []
    files = []
    is_error = False
    if isinstance(content, str):
        text_parts.append(content)
    elif isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            btype = block.get("type", "")
            if btype == "text":
                text_parts.append(block.get("text", ""))
            elif btype == "tool_use":
                name = block.get("name", "")
                tool_names.append(name)
                path = (block.get("input") or {}).get("file_path")
                if name in FILE_TOOLS and path:
                    files.append(path)
            elif btype == "tool_result" and block.get("is_error"):
                is_error = True

    return {
        "entry_id": entry_id,
        "session_id": session_id,
        "entry_type": entry_type,
        "timestamp": to_epoch(timestamp),
        "cwd": d.get("cwd") or None,
        "git_branch": d.get("gitBranch") or "",
        "model": model,
        "payload": {
            "role": msg.get("role") or entry_type,
            "text": "\n".join(t for t in text_parts if t),
            "tool_names": tool_names,
            "is_error": is_error,
        },
        "files": files,
        "input_tokens": int(usage.get("input_tokens") or 0),
        "output_tokens": int(usage.get("output_tokens") or 0),
        "cache_creation_tokens": int(usage.get("cache_creation_input_tokens") or 0),
        "cache_read_tokens": int(usage.get("cache_read_input_tokens") or 0),
    }


def _describe(entry: dict) -> str:
    payload = entry["payload"]
    if entry["entry_type"] == "user":
        text = payload["text"].strip().splitlines()
        return f"User: {text[0][:120]}" if text else "User sent a message"
    if payload["tool_names"]:
        return f"Assistant used {', '.join(dict.fromkeys(payload['tool_names']))}"
    tokens = entry["input_tokens"] + entry["output_tokens"]
    return f"Assistant replied ({tokens} tokens)"


def _apply_entry(tracker, entry: dict, project_dir: str):
    """Fold one newly stored message into the session state."""
    at = from_epoch(entry["timestamp"])
    session_id = entry["session_id"]
    if not tracker.store.exists(session_id):
        path = entry["cwd"] or decode_project_dir(project_dir)
        tracker.create_session(
            project_name_from_path(path),
            path,
            entry["model"],
            session_id=session_id,
            git_branch=entry["git_branch"],
            at=at,
        )

    session = tracker.store.get(session_id)
    changes = {}
    if entry["model"] and entry["model"] != session.model:
        changes["model"] = entry["model"]
    if entry["git_branch"] and entry["git_branch"] != session.git_branch:
        changes["git_branch"] = entry["git_branch"]
    new_files = [f for f in entry["files"] if f not in session.files_modified]
    if new_files:
        changes["files_modified"] = session.files_modified + new_files
    if changes:
        tracker.store.update(session_id, changes, at=at)

    if entry["entry_type"] not in MESSAGE_TYPES:
        return
    usage = TokenUsage(
        input=entry["input_tokens"],
        output=entry["output_tokens"],
        cache_creation=entry["cache_creation_tokens"],
        cache_read=entry["cache_read_tokens"],
    )
    if session.status in (SessionStatus.WORKING, SessionStatus.IDLE):
        tracker.record_message(
            session_id, usage, _describe(entry), message_id=entry["entry_id"], at=at
        )
    else:
        # complete/error sessions keep their status until restarted
        tracker.store.record_usage(session_id, usage, message_id=entry["entry_id"], at=at)


def ingest_file(file_path: Path, project_dir: str, tracker) -> int:
    """Ingest a single JSONL file. Returns the number of messages applied.

    Messages are stored first in one transaction; only entries not yet
    folded into session state are then applied, each marked once done, so
    re-reading a file that grew never double-counts usage and a pass that
    failed part-way picks up where it stopped.
    """
    entries = []
    with open(file_path, "r", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            entry = parse_entry(line)
            if entry:
                entries.append(entry)

    entries.sort(key=lambda e: e["timestamp"])
    with tracker.db.transaction() as conn:
        for entry in entries:
            tracker.db.insert_message(conn, entry)
        pending = tracker.db.unapplied_message_ids(conn, [e["entry_id"] for e in entries])
        mtime = os.path.getmtime(file_path)
        conn.execute(
            "INSERT OR REPLACE INTO ingestion_log VALUES (?, ?, ?, current_timestamp)",
            [str(file_path), mtime, len(entries)],
        )

    fresh = []
    for entry in entries:
        # a uuid repeated within the file is applied once
        if entry["entry_id"] in pending:
            pending.discard(entry["entry_id"])
            fresh.append(entry)
    for entry in fresh:
        _apply_entry(tracker, entry, project_dir)
        tracker.db.mark_message_applied(entry["entry_id"])
    return len(fresh)


def run_ingest(tracker, projects_dir: Path | None = None) -> dict:
    """Run incremental ingestion over every transcript. Returns stats."""
    files = find_jsonl_files(projects_dir)

    stats = {
        "total_files": len(files),
        "ingested_files": 0,
        "total_messages": 0,
        "skipped_files": 0,
        "failed_files": 0,
    }

    for file_path, project_dir in files:
        try:
            if not needs_ingestion(file_path, tracker.db.get_reader()):
                stats["skipped_files"] += 1
                continue
            count = ingest_file(file_path, project_dir, tracker)
            stats["ingested_files"] += 1
            stats["total_messages"] += count
            with tracker.db.transaction() as conn:
                clear_skip(file_path, conn)
        except StoreUnavailable:
            raise
        except FileNotFoundError:
            # removed between discovery and reading; nothing to skip-cache
            stats["skipped_files"] += 1
            logger.debug("%s vanished before ingestion", file_path)
        except (OSError, SessionDeckError) as e:
            error_type = type(e).__name__
            with tracker.db.transaction() as conn:
                mark_skip(file_path, error_type, str(e), conn)
            stats["failed_files"] += 1
            logger.warning("Failed to ingest %s: %s: %s", file_path, error_type, e)

    stats["total_sessions"] = tracker.store.count()
    stats["total_projects"] = len(tracker.store.projects())
    return stats
