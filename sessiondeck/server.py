"""Flask REST API and server-sent event stream."""

import json
import logging

from flask import Flask, Response, jsonify, request, stream_with_context

from sessiondeck import get_version_info
from sessiondeck.query import QueryService, is_error

logger = logging.getLogger(__name__)

app = Flask(__name__)

HEARTBEAT_SECONDS = 15.0

# Set by __main__.py (or tests) before the first request
_tracker = None
_query: QueryService | None = None
_worker = None


def set_tracker(tracker):
    global _tracker, _query
    _tracker = tracker
    _query = QueryService(tracker) if tracker is not None else None


def set_worker(worker):
    global _worker
    _worker = worker


def _respond(result: dict, status: int = 200):
    if is_error(result):
        return jsonify(result), result["code"]
    return jsonify(result), status


def _service() -> QueryService:
    if _query is None:
        raise RuntimeError("No tracker configured; call set_tracker() first")
    return _query


@app.route("/api/health")
def api_health():
    return jsonify(
        {
            "status": "ok" if _tracker is not None else "starting",
            "viewers": _tracker.broadcaster.viewer_count if _tracker is not None else 0,
        }
    )


@app.route("/api/version")
def api_version():
    return jsonify(get_version_info())


@app.route("/api/status")
def api_status():
    if _worker is None:
        return jsonify({"state": "idle", "step": "", "ready": True})
    return jsonify(_worker.status)


@app.route("/api/refresh", methods=["POST"])
def api_refresh():
    """Queue an ingestion pass in the background. Poll /api/status for progress."""
    if _worker is None:
        return jsonify({"error": "No background worker available", "code": 500, "details": ""}), 500
    queued = _worker.is_busy
    _worker.request_refresh()
    return jsonify({"ok": True, "queued": queued})


@app.route("/api/sessions", methods=["GET"])
def api_sessions():
    return _respond(
        _service().sessions(
            status=request.args.get("status"),
            project=request.args.get("project"),
            limit=request.args.get("limit"),
            offset=request.args.get("offset"),
        )
    )


@app.route("/api/sessions", methods=["POST"])
def api_create_session():
    return _respond(_service().create_session(request.get_json(silent=True)), 201)


@app.route("/api/sessions/<session_id>")
def api_session_detail(session_id):
    return _respond(_service().session(session_id))


@app.route("/api/sessions/<session_id>/activity")
def api_session_activity(session_id):
    return _respond(_service().activity(session_id=session_id, limit=request.args.get("limit")))


@app.route("/api/sessions/<session_id>/tokens/timeline")
def api_session_timeline(session_id):
    return _respond(
        _service().token_timeline(
            session_id=session_id,
            hours=request.args.get("hours"),
            granularity=request.args.get("granularity"),
        )
    )


@app.route("/api/activity")
def api_activity():
    return _respond(_service().activity(limit=request.args.get("limit")))


@app.route("/api/metrics/summary")
def api_metrics_summary():
    return _respond(
        _service().metrics_summary(since=request.args.get("since"), until=request.args.get("until"))
    )


@app.route("/api/analytics/tokens/timeline")
def api_tokens_timeline():
    return _respond(
        _service().token_timeline(
            hours=request.args.get("hours"),
            granularity=request.args.get("granularity"),
            project=request.args.get("project"),
        )
    )


@app.route("/api/projects")
def api_projects():
    return _respond(_service().projects())


def _sse(envelope) -> str:
    return f"id: {envelope.seq}\nevent: {envelope.type.value}\ndata: {json.dumps(envelope.to_dict())}\n\n"


@app.route("/api/stream")
def api_stream():
    """Live envelopes as server-sent events, optionally scoped to one session."""
    service = _service()
    session_id = request.args.get("session_id") or None
    if session_id is not None:
        found = service.session(session_id)
        if is_error(found):
            return _respond(found)

    broadcaster = service.tracker.broadcaster
    sub = broadcaster.subscribe(session_id=session_id)

    def generate():
        try:
            yield ": connected\n\n"
            while not sub.closed:
                envelope = sub.get(timeout=HEARTBEAT_SECONDS)
                if envelope is None:
                    if sub.closed:
                        break
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(envelope)
            if sub.close_reason and sub.close_reason != "unsubscribed":
                yield f"event: error\ndata: {json.dumps({'error': sub.close_reason})}\n\n"
        finally:
            broadcaster.unsubscribe(sub)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def create_app(tracker=None):
    """Return the Flask application instance (for testing and WSGI)."""
    if tracker is not None:
        set_tracker(tracker)
    return app
