"""Derived metrics: rolling summaries and dense token timelines.

Nothing here is persisted; every call recomputes from the session store and
the recorded usage events.
"""

import math
from collections import Counter
from datetime import timedelta

from sessiondeck.config import DEFAULT_TIMELINE_HOURS, GRANULARITY_SECONDS
from sessiondeck.errors import ValidationError
from sessiondeck.models import MetricsSummary, TokenTimelinePoint, to_epoch, utcnow


class MetricsSummarizer:
    def __init__(self, db, store):
        self.db = db
        self.store = store

    def summary(self, since=None, until=None) -> MetricsSummary:
        """Roll up sessions whose lifetime intersects ``[since, until]``."""
        if since is not None and until is not None and since > until:
            raise ValidationError("since must not be after until")
        sessions = [
            s for s in self.db.scan_sessions()
            if (since is None or s.updated_at >= since) and (until is None or s.created_at <= until)
        ]
        result = MetricsSummary(total_sessions=len(sessions))
        if not sessions:
            return result

        models = Counter(s.model for s in sessions if s.model)
        result.active_sessions = sum(1 for s in sessions if s.is_active)
        result.total_cost = sum(s.token_usage.cost for s in sessions)
        result.total_tokens = sum(s.token_usage.total for s in sessions)
        result.total_messages = sum(s.message_count for s in sessions)
        result.average_session_duration_minutes = (
            sum(s.duration_seconds for s in sessions) / len(sessions) / 60.0
        )
        result.model_usage = dict(models)
        if models:
            result.most_used_model = models.most_common(1)[0][0]
        return result

    def timeline(self, session_id=None, hours=DEFAULT_TIMELINE_HOURS, granularity="hour",
                 project=None, now=None) -> list[TokenTimelinePoint]:
        """Token usage bucketed over exactly ``[now - hours, now]``.

        Buckets are fixed-width, anchored at the range start, ascending and
        gap-free; empty buckets carry zeros and the last one ends at ``now``.
        """
        width = GRANULARITY_SECONDS.get(granularity)
        if width is None:
            raise ValidationError(
                f"Unknown granularity {granularity!r}; expected one of {', '.join(GRANULARITY_SECONDS)}"
            )
        if hours is None or hours <= 0:
            raise ValidationError("hours must be positive")
        if session_id is not None:
            self.store.get(session_id)

        now = now or utcnow()
        start = now - timedelta(hours=hours)
        start_epoch = to_epoch(start)
        count = max(1, math.ceil(hours * 3600 / width))

        points = [
            TokenTimelinePoint(
                start=start + timedelta(seconds=i * width),
                end=min(start + timedelta(seconds=(i + 1) * width), now),
                granularity=granularity,
            )
            for i in range(count)
        ]

        events = self.db.scan_usage_events(
            start_epoch, to_epoch(now), session_id=session_id, project=project
        )
        for e in events:
            idx = min(int((e["timestamp"] - start_epoch) // width), count - 1)
            p = points[idx]
            p.input += e["input_tokens"]
            p.output += e["output_tokens"]
            p.cache_creation += e["cache_creation_tokens"]
            p.cache_read += e["cache_read_tokens"]
            p.cost += e["estimated_cost"]
            p.message_count += 1
        return points
