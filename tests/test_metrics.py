"""Tests for MetricsSummarizer: timeline density/conservation and summaries."""

from datetime import timedelta

import pytest

from conftest import T0
from sessiondeck.errors import NotFound, ValidationError
from sessiondeck.models import TokenUsage


NOW = T0 + timedelta(hours=24)


def _session_with_usage(tracker, name, offsets_minutes, model="claude-sonnet-4"):
    s = tracker.store.create(name, f"/src/{name}", model, at=NOW - timedelta(hours=23))
    for minutes in offsets_minutes:
        tracker.store.record_usage(
            s.id, TokenUsage(input=100, output=10, cache_read=5), at=NOW - timedelta(minutes=minutes)
        )
    return tracker.store.get(s.id)


class TestTimeline:
    def test_dense_and_contiguous(self, tracker):
        _session_with_usage(tracker, "deck", [30])
        points = tracker.metrics.timeline(hours=24, granularity="hour", now=NOW)

        assert len(points) == 24
        assert points[0].start == NOW - timedelta(hours=24)
        assert points[-1].end == NOW
        for prev, cur in zip(points, points[1:]):
            assert prev.end == cur.start
        assert sum(1 for p in points if p.total) == 1

    def test_partial_last_bucket(self, tracker):
        points = tracker.metrics.timeline(hours=1.5, granularity="hour", now=NOW)
        assert len(points) == 2
        assert points[-1].end == NOW
        assert points[-1].end - points[-1].start == timedelta(minutes=30)

    def test_conserves_session_totals(self, tracker):
        s = _session_with_usage(tracker, "deck", [5, 65, 300, 1200])
        points = tracker.metrics.timeline(session_id=s.id, hours=24, granularity="hour", now=NOW)

        assert sum(p.input for p in points) == s.token_usage.input
        assert sum(p.output for p in points) == s.token_usage.output
        assert sum(p.cache_read for p in points) == s.token_usage.cache_read
        assert sum(p.total for p in points) == s.token_usage.total
        assert sum(p.cost for p in points) == pytest.approx(s.token_usage.cost)
        assert sum(p.message_count for p in points) == 4

    def test_events_outside_window_excluded(self, tracker):
        _session_with_usage(tracker, "deck", [30, 60 * 30])
        points = tracker.metrics.timeline(hours=24, granularity="hour", now=NOW)
        assert sum(p.message_count for p in points) == 1

    def test_scoped_to_session_and_project(self, tracker):
        a = _session_with_usage(tracker, "a", [10])
        _session_with_usage(tracker, "b", [10, 20])

        by_session = tracker.metrics.timeline(session_id=a.id, hours=1, granularity="minute", now=NOW)
        by_project = tracker.metrics.timeline(project="b", hours=1, granularity="minute", now=NOW)

        assert len(by_session) == 60
        assert sum(p.message_count for p in by_session) == 1
        assert sum(p.message_count for p in by_project) == 2

    def test_empty_range_is_all_zero(self, tracker):
        points = tracker.metrics.timeline(hours=2, granularity="minute", now=NOW)
        assert len(points) == 120
        assert all(p.total == 0 and p.cost == 0 for p in points)

    def test_unknown_granularity(self, tracker):
        with pytest.raises(ValidationError):
            tracker.metrics.timeline(granularity="fortnight")

    def test_non_positive_hours(self, tracker):
        with pytest.raises(ValidationError):
            tracker.metrics.timeline(hours=0)

    def test_unknown_session(self, tracker):
        with pytest.raises(NotFound):
            tracker.metrics.timeline(session_id="missing")


class TestSummary:
    def test_totals(self, tracker):
        a = _session_with_usage(tracker, "a", [10, 20])
        b = _session_with_usage(tracker, "b", [10], model="claude-opus-4")
        tracker.store.update(b.id, {"status": "complete"})

        summary = tracker.metrics.summary()

        assert summary.total_sessions == 2
        assert summary.active_sessions == 1
        assert summary.total_messages == 3
        assert summary.total_tokens == a.token_usage.total + b.token_usage.total
        assert summary.total_cost == pytest.approx(a.token_usage.cost + b.token_usage.cost)
        assert summary.most_used_model in ("claude-sonnet-4", "claude-opus-4")
        assert summary.model_usage == {"claude-sonnet-4": 1, "claude-opus-4": 1}

    def test_empty(self, tracker):
        summary = tracker.metrics.summary()
        assert summary.total_sessions == 0
        assert summary.to_dict()["average_session_duration_minutes"] == 0

    def test_range_filters_by_lifetime(self, tracker):
        tracker.store.create("old", "/old", at=T0 - timedelta(days=10))
        tracker.store.create("new", "/new", at=T0)

        summary = tracker.metrics.summary(since=T0 - timedelta(days=1))
        assert summary.total_sessions == 1

    def test_inverted_range(self, tracker):
        with pytest.raises(ValidationError):
            tracker.metrics.summary(since=T0, until=T0 - timedelta(days=1))
