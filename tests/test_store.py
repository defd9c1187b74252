"""Tests for SessionStore: validation, lifecycle, usage accounting and concurrency."""

import threading
import typing
from datetime import timedelta

import pytest

from conftest import T0, drain
from sessiondeck.config import MODEL_PRICING
from sessiondeck.errors import ConcurrencyConflict, NotFound, ValidationError
from sessiondeck.models import EventType, SessionStatus, TokenUsage


# ---------------------------------------------------------------------------
# create / get
# ---------------------------------------------------------------------------

class TestCreate:
    def test_new_session_is_working_with_zero_usage(self, tracker):
        s = tracker.store.create("deck", "/src/deck", "claude-sonnet-4")

        assert s.status == SessionStatus.WORKING
        assert s.token_usage == TokenUsage()
        assert s.message_count == 0
        assert s.created_at == s.updated_at
        assert tracker.store.get(s.id).project_path == "/src/deck"

    def test_model_defaults(self, tracker):
        s = tracker.store.create("deck", "/src/deck")
        assert s.model

    @pytest.mark.parametrize("name,path", [("", "/p"), ("  ", "/p"), ("deck", ""), (None, "/p")])
    def test_rejects_empty_fields(self, tracker, name, path):
        with pytest.raises(ValidationError):
            tracker.store.create(name, path)
        assert tracker.store.count() == 0

    def test_duplicate_id_rejected(self, tracker):
        tracker.store.create("deck", "/p", session_id="s1")
        with pytest.raises(ValidationError):
            tracker.store.create("other", "/q", session_id="s1")
        assert tracker.store.get("s1").project_name == "deck"

    def test_get_unknown(self, tracker):
        with pytest.raises(NotFound):
            tracker.store.get("nope")

    def test_create_broadcasts_session(self, tracker):
        sub = tracker.broadcaster.subscribe()
        s = tracker.store.create("deck", "/p")
        tracker.broadcaster.flush()

        events = drain(sub)
        assert [e.type for e in events] == [EventType.SESSION_UPDATED]
        assert events[0].data["id"] == s.id
        assert events[0].data["status"] == "working"


# ---------------------------------------------------------------------------
# update / transitions
# ---------------------------------------------------------------------------

class TestUpdate:
    def test_merges_only_given_fields(self, tracker):
        s = tracker.store.create("deck", "/p", "claude-sonnet-4", git_branch="main", at=T0)
        updated = tracker.store.update(s.id, {"git_branch": "feature"}, at=T0 + timedelta(minutes=1))

        assert updated.git_branch == "feature"
        assert updated.model == "claude-sonnet-4"
        assert updated.project_path == "/p"
        assert updated.updated_at == T0 + timedelta(minutes=1)
        assert updated.version == s.version + 1

    def test_unknown_field(self, tracker):
        s = tracker.store.create("deck", "/p")
        with pytest.raises(ValidationError):
            tracker.store.update(s.id, {"message_count": 99})

    def test_unknown_status(self, tracker):
        s = tracker.store.create("deck", "/p")
        with pytest.raises(ValidationError):
            tracker.store.update(s.id, {"status": "sleeping"})

    def test_idle_and_back(self, tracker):
        s = tracker.store.create("deck", "/p")
        assert tracker.store.update(s.id, {"status": "idle"}).status == SessionStatus.IDLE
        assert tracker.store.update(s.id, {"status": "working"}).status == SessionStatus.WORKING

    @pytest.mark.parametrize("terminal", ["complete", "error"])
    def test_terminal_states_need_restart(self, tracker, terminal):
        s = tracker.store.create("deck", "/p")
        tracker.store.update(s.id, {"status": terminal})
        with pytest.raises(ValidationError):
            tracker.store.update(s.id, {"status": "working"})

        assert tracker.store.restart(s.id).status == SessionStatus.WORKING

    def test_idle_cannot_complete_directly(self, tracker):
        s = tracker.store.create("deck", "/p")
        tracker.store.update(s.id, {"status": "idle"})
        with pytest.raises(ValidationError):
            tracker.store.update(s.id, {"status": "complete"})

    def test_failed_update_writes_nothing(self, tracker):
        s = tracker.store.create("deck", "/p")
        with pytest.raises(ValidationError):
            tracker.store.update(s.id, {"project_path": ""})
        assert tracker.store.get(s.id).version == s.version

    def test_updated_at_never_moves_backwards(self, tracker):
        s = tracker.store.create("deck", "/p", at=T0)
        updated = tracker.store.update(s.id, {"git_branch": "x"}, at=T0 - timedelta(hours=1))
        assert updated.updated_at == T0

    def test_set_project_path_keeps_updated_at(self, tracker):
        s = tracker.store.create("deck", "/old/deck", at=T0)
        fixed = tracker.store.set_project_path(s.id, "/new/deck", "deck")
        assert fixed.project_path == "/new/deck"
        assert fixed.updated_at == T0


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------

class TestList:
    def test_list_annotations_resolve(self):
        from sessiondeck.activity import ActivityRecorder
        from sessiondeck.models import ActivityEntry, Session
        from sessiondeck.store import SessionStore

        assert typing.get_type_hints(SessionStore.list)["return"] == list[Session]
        assert typing.get_type_hints(ActivityRecorder.list)["return"] == list[ActivityEntry]

    def test_most_recently_updated_first(self, tracker):
        a = tracker.store.create("a", "/a", at=T0)
        b = tracker.store.create("b", "/b", at=T0 + timedelta(minutes=1))
        tracker.store.update(a.id, {"git_branch": "x"}, at=T0 + timedelta(minutes=2))

        assert [s.id for s in tracker.store.list()] == [a.id, b.id]

    def test_filters_and_paging(self, tracker):
        for i in range(5):
            tracker.store.create("a" if i % 2 else "b", f"/p{i}", at=T0 + timedelta(minutes=i))
        assert tracker.store.count(project="b") == 3
        assert len(tracker.store.list(limit=2)) == 2
        assert len(tracker.store.list(limit=2, offset=4)) == 1
        assert tracker.store.list(status="idle") == []

    def test_projects_grouping(self, tracker):
        tracker.store.create("deck", "/a/deck", at=T0)
        tracker.store.create("deck", "/b/deck", at=T0 + timedelta(minutes=1))
        tracker.store.create("other", "/other", at=T0 + timedelta(minutes=2))

        projects = tracker.store.projects()
        assert [p.name for p in projects] == ["other", "deck"]
        assert projects[1].session_count == 2
        assert sorted(projects[1].paths) == ["/a/deck", "/b/deck"]


# ---------------------------------------------------------------------------
# usage
# ---------------------------------------------------------------------------

class TestRecordUsage:
    def test_adds_and_broadcasts(self, tracker):
        s = tracker.store.create("deck", "/p", "claude-sonnet-4")
        sub = tracker.broadcaster.subscribe(session_id=s.id)

        tracker.store.record_usage(s.id, TokenUsage(input=10, output=5))
        tracker.broadcaster.flush()

        stored = tracker.store.get(s.id)
        assert stored.token_usage.input == 10
        assert stored.token_usage.output == 5
        assert stored.message_count == 1

        events = drain(sub)
        assert events[-1].type == EventType.SESSION_UPDATED
        assert events[-1].data["token_usage"]["input"] == 10

    def test_cost_from_pricing_table(self, tracker):
        s = tracker.store.create("deck", "/p", "claude-sonnet-4")
        tracker.store.record_usage(s.id, TokenUsage(input=1000, output=1000))

        inp, out, _, _ = MODEL_PRICING["claude-sonnet-4"]
        assert tracker.store.get(s.id).token_usage.cost == pytest.approx(inp + out)

    def test_rejects_negative(self, tracker):
        s = tracker.store.create("deck", "/p")
        with pytest.raises(ValidationError):
            tracker.store.record_usage(s.id, TokenUsage(input=-1))
        assert tracker.store.get(s.id).message_count == 0

    def test_concurrent_deltas_are_not_lost(self, tracker):
        s = tracker.store.create("deck", "/p")
        threads_n, per_thread = 8, 25

        def worker():
            for _ in range(per_thread):
                tracker.store.record_usage(s.id, TokenUsage(input=3, output=1))

        threads = [threading.Thread(target=worker) for _ in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = tracker.store.get(s.id)
        assert stored.token_usage.input == 3 * threads_n * per_thread
        assert stored.token_usage.output == threads_n * per_thread
        assert stored.message_count == threads_n * per_thread

    def test_concurrent_updates_reach_viewers_in_order(self, tracker):
        s = tracker.store.create("deck", "/p")
        other = tracker.store.create("other", "/o")
        watching = tracker.broadcaster.subscribe(session_id=s.id)
        elsewhere = tracker.broadcaster.subscribe(session_id=other.id)
        threads_n, per_thread, v = 4, 10, 7

        def worker():
            for _ in range(per_thread):
                tracker.store.record_usage(s.id, TokenUsage(input=v))

        threads = [threading.Thread(target=worker) for _ in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        tracker.broadcaster.flush()

        events = [e for e in drain(watching) if e.type == EventType.SESSION_UPDATED]
        assert len(events) == threads_n * per_thread
        seqs = [e.seq for e in events]
        totals = [e.data["token_usage"]["input"] for e in events]
        assert all(a < b for a, b in zip(seqs, seqs[1:]))
        assert all(a < b for a, b in zip(totals, totals[1:]))
        assert totals[-1] == threads_n * per_thread * v
        assert drain(elsewhere) == []

    def test_cas_gives_up(self, tracker, monkeypatch):
        s = tracker.store.create("deck", "/p")
        monkeypatch.setattr(tracker.db, "put_session", lambda *a, **kw: False)
        with pytest.raises(ConcurrencyConflict):
            tracker.store.record_usage(s.id, TokenUsage(input=1))


class TestSweepIdle:
    def test_quiet_working_sessions_go_idle(self, tracker):
        quiet = tracker.store.create("a", "/a", at=T0)
        busy = tracker.store.create("b", "/b", at=T0 + timedelta(minutes=20))

        swept = tracker.store.sweep_idle(600, now=T0 + timedelta(minutes=25))

        assert [s.id for s in swept] == [quiet.id]
        assert tracker.store.get(quiet.id).status == SessionStatus.IDLE
        assert tracker.store.get(busy.id).status == SessionStatus.WORKING
