"""Tests for ActivityRecorder and the Tracker operations built on it."""

from datetime import timedelta

import pytest

from conftest import drain
from sessiondeck.core import Tracker
from sessiondeck.errors import NotFound, ValidationError
from sessiondeck.models import ActivityType, EventType, SessionStatus, TokenUsage, utcnow


class TestAppend:
    def test_unknown_session(self, tracker):
        with pytest.raises(NotFound):
            tracker.activity.append("missing", ActivityType.MESSAGE_SENT)
        assert tracker.activity.count() == 0

    def test_unknown_type(self, tracker):
        s = tracker.store.create("deck", "/p")
        with pytest.raises(ValidationError):
            tracker.activity.append(s.id, "exploded")

    def test_entry_carries_project_name(self, tracker):
        s = tracker.store.create("deck", "/p")
        entry = tracker.activity.append(s.id, "message_sent", "hello")
        assert entry.session_name == "deck"
        assert entry.to_dict()["details"] == "hello"

    def test_broadcast_after_session_update(self, tracker):
        sub = tracker.broadcaster.subscribe()
        s = tracker.create_session("deck", "/p")
        tracker.broadcaster.flush()

        events = drain(sub)
        assert [e.type for e in events] == [EventType.SESSION_UPDATED, EventType.ACTIVITY_APPENDED]
        assert [e.seq for e in events] == [1, 2]
        assert events[1].data["session_id"] == s.id


class TestFeed:
    def test_newest_first(self, tracker):
        s = tracker.store.create("deck", "/p")
        now = utcnow()
        for i in range(3):
            tracker.activity.append(s.id, "message_sent", f"m{i}", at=now + timedelta(seconds=i))

        assert [e.detail for e in tracker.activity.list()] == ["m2", "m1", "m0"]

    def test_same_timestamp_keeps_insertion_order(self, tracker):
        s = tracker.store.create("deck", "/p")
        now = utcnow()
        for i in range(3):
            tracker.activity.append(s.id, "message_sent", f"m{i}", at=now)

        assert [e.detail for e in tracker.activity.list()] == ["m2", "m1", "m0"]

    def test_window_is_bounded(self, tmp_path):
        t = Tracker(tmp_path / "db.sqlite", window=3)
        try:
            s = t.store.create("deck", "/p")
            for i in range(5):
                t.activity.append(s.id, "message_sent", f"m{i}")

            assert [e.detail for e in t.activity.list()] == ["m4", "m3", "m2"]
            assert len(t.activity.history(s.id)) == 5
        finally:
            t.close()

    def test_old_entries_leave_the_feed(self, tracker):
        s = tracker.store.create("deck", "/p")
        tracker.activity.append(s.id, "message_sent", "ancient", at=utcnow() - timedelta(days=3))
        tracker.activity.append(s.id, "message_sent", "fresh")

        assert [e.detail for e in tracker.activity.list()] == ["fresh"]
        assert tracker.activity.count(s.id) == 2

    def test_filter_by_session(self, tracker):
        a = tracker.store.create("a", "/a")
        b = tracker.store.create("b", "/b")
        tracker.activity.append(a.id, "message_sent", "to a")
        tracker.activity.append(b.id, "message_sent", "to b")

        assert [e.detail for e in tracker.activity.list(session_id=a.id)] == ["to a"]

    def test_feed_survives_restart(self, tmp_path):
        path = tmp_path / "db.sqlite"
        t = Tracker(path)
        s = t.store.create("deck", "/p")
        t.activity.append(s.id, "message_sent", "persisted")
        t.close()

        t2 = Tracker(path)
        try:
            assert [e.detail for e in t2.activity.list()] == ["persisted"]
        finally:
            t2.close()


class TestTrackerOperations:
    def test_record_message_wakes_idle_session(self, tracker):
        s = tracker.create_session("deck", "/p")
        tracker.store.update(s.id, {"status": "idle"})

        updated = tracker.record_message(s.id, TokenUsage(input=4), "hi")

        assert updated.status == SessionStatus.WORKING
        assert updated.token_usage.input == 4
        assert tracker.activity.list(session_id=s.id)[0].type == ActivityType.MESSAGE_SENT

    def test_record_message_wakes_in_one_write(self, tracker):
        s = tracker.create_session("deck", "/p")
        idle = tracker.store.update(s.id, {"status": "idle"})
        sub = tracker.broadcaster.subscribe(session_id=s.id)

        tracker.record_message(s.id, TokenUsage(input=4), "hi")
        tracker.broadcaster.flush()

        updates = [e for e in drain(sub) if e.type == EventType.SESSION_UPDATED]
        assert len(updates) == 1
        assert updates[0].data["status"] == "working"
        assert updates[0].data["token_usage"]["input"] == 4
        assert tracker.store.get(s.id).version == idle.version + 1

    def test_record_message_keeps_finished_status(self, tracker):
        s = tracker.create_session("deck", "/p")
        tracker.store.update(s.id, {"status": "complete"})

        updated = tracker.record_message(s.id, TokenUsage(input=4), "late reply")

        assert updated.status == SessionStatus.COMPLETE
        assert updated.token_usage.input == 4

    def test_report_error(self, tracker):
        s = tracker.create_session("deck", "/p")
        sub = tracker.broadcaster.subscribe(session_id=s.id)

        tracker.report_error(s.id, "tool crashed")
        tracker.broadcaster.flush()

        assert tracker.store.get(s.id).status == SessionStatus.ERROR
        assert EventType.ERROR in [e.type for e in drain(sub)]

    def test_report_error_on_idle_session_keeps_status(self, tracker):
        s = tracker.create_session("deck", "/p")
        tracker.store.update(s.id, {"status": "idle"})
        tracker.report_error(s.id, "late failure")
        assert tracker.store.get(s.id).status == SessionStatus.IDLE
