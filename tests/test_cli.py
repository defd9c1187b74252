"""Tests for the click CLI."""

import json
from datetime import timedelta

import pytest
from click.testing import CliRunner

from conftest import T0, store_message
from sessiondeck.__main__ import cli
from sessiondeck.core import Tracker
from sessiondeck.errors import StoreUnavailable
from sessiondeck.store import SessionStore


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "cli.sqlite"
    t = Tracker(path)
    for sid, old, new in [("a", "/old/a", "/new/a"), ("b", "/old/b", "/new/b")]:
        t.store.create("placeholder", old, session_id=sid, at=T0)
        store_message(t.db, sid, f"{sid}-1", T0 + timedelta(seconds=1), cwd=new)
    t.close()
    return path


def _paths(db_path):
    t = Tracker(db_path)
    try:
        return {s.id: s.project_path for s in t.store.list()}
    finally:
        t.close()


class TestMigratePaths:
    def test_dry_run_changes_nothing(self, db_path):
        result = CliRunner().invoke(cli, ["migrate-paths", "--db", str(db_path), "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "/old/a -> /new/a" in result.output
        assert _paths(db_path) == {"a": "/old/a", "b": "/old/b"}

    def test_declined_confirmation(self, db_path):
        result = CliRunner().invoke(cli, ["migrate-paths", "--db", str(db_path)], input="n\n")
        assert result.exit_code == 0
        assert "Aborted" in result.output
        assert _paths(db_path)["a"] == "/old/a"

    def test_apply_with_yes(self, db_path):
        result = CliRunner().invoke(cli, ["migrate-paths", "--db", str(db_path), "--yes"])
        assert result.exit_code == 0, result.output
        assert "Updated 2" in result.output
        assert _paths(db_path) == {"a": "/new/a", "b": "/new/b"}

    def test_partial_failure_exits_nonzero(self, db_path, monkeypatch):
        original = SessionStore.set_project_path

        def flaky(self, session_id, *args, **kwargs):
            if session_id == "b":
                raise StoreUnavailable("locked")
            return original(self, session_id, *args, **kwargs)

        monkeypatch.setattr(SessionStore, "set_project_path", flaky)
        result = CliRunner().invoke(cli, ["migrate-paths", "--db", str(db_path), "--yes"])

        assert result.exit_code == 1
        assert "failed 1" in result.output
        monkeypatch.undo()
        assert _paths(db_path) == {"a": "/new/a", "b": "/old/b"}


class TestIngestAndSummary:
    def test_ingest_then_summary(self, tmp_path):
        project = tmp_path / "projects" / "-srv-app"
        project.mkdir(parents=True)
        record = {
            "type": "assistant",
            "uuid": "a1",
            "sessionId": "s1",
            "timestamp": "2025-01-15T10:00:00Z",
            "cwd": "/srv/app",
            "message": {"role": "assistant", "model": "claude-sonnet-4", "content": "ok",
                        "usage": {"input_tokens": 1000, "output_tokens": 100}},
        }
        (project / "s1.jsonl").write_text(json.dumps(record) + "\n")
        db = tmp_path / "data.sqlite"

        runner = CliRunner()
        result = runner.invoke(
            cli, ["ingest", "--db", str(db), "--projects-dir", str(tmp_path / "projects")]
        )
        assert result.exit_code == 0, result.output
        assert "1/1 files ingested" in result.output

        result = runner.invoke(cli, ["summary", "--db", str(db)])
        assert result.exit_code == 0, result.output
        assert "Sessions:      1" in result.output
        assert "1,100" in result.output
