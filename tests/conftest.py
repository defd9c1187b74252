from datetime import datetime, timezone

import pytest

from sessiondeck.core import Tracker
from sessiondeck.models import to_epoch


@pytest.fixture
def tracker(tmp_path):
    t = Tracker(tmp_path / "test.sqlite")
    yield t
    t.close()


def drain(sub, timeout=0.2):
    """Collect everything currently queued for a subscription."""
    out = []
    while True:
        envelope = sub.get(timeout=timeout)
        if envelope is None:
            return out
        out.append(envelope)


def store_message(db, session_id, message_id, when: datetime, cwd=None, **usage):
    """Write a transcript message row directly, as the ingester would."""
    entry = {
        "entry_id": message_id,
        "session_id": session_id,
        "entry_type": "user",
        "timestamp": to_epoch(when),
        "cwd": cwd,
        "git_branch": "",
        "model": None,
        "payload": {"role": "user", "text": "hi"},
        "input_tokens": usage.get("input_tokens", 0),
        "output_tokens": usage.get("output_tokens", 0),
        "cache_creation_tokens": 0,
        "cache_read_tokens": 0,
    }
    with db.transaction() as conn:
        return db.insert_message(conn, entry)


T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
