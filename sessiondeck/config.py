"""Configuration: paths, limits, timeline granularities and model pricing."""

import os
from pathlib import Path

# Paths
DB_PATH = Path(
    os.environ.get("SESSIONDECK_DB", Path.home() / ".sessiondeck" / "sessions.sqlite")
)
CLAUDE_PROJECTS_DIR = Path(
    os.environ.get("SESSIONDECK_PROJECTS_DIR", Path.home() / ".claude" / "projects")
)
SERVER_PORT = int(os.environ.get("SESSIONDECK_PORT", "8420"))

# Activity feed window (in-memory only; older entries live in the database)
ACTIVITY_WINDOW = int(os.environ.get("SESSIONDECK_ACTIVITY_WINDOW", "500"))
ACTIVITY_MAX_AGE = float(os.environ.get("SESSIONDECK_ACTIVITY_MAX_AGE", "86400"))

# Live updates
VIEWER_QUEUE_SIZE = int(os.environ.get("SESSIONDECK_VIEWER_QUEUE", "256"))
DELIVERY_TIMEOUT = float(os.environ.get("SESSIONDECK_DELIVERY_TIMEOUT", "10"))

# Session lifecycle
IDLE_AFTER = float(os.environ.get("SESSIONDECK_IDLE_AFTER", "900"))
MAX_WRITE_RETRIES = 5
DEFAULT_MODEL = "claude-opus-4-20250514"

# Token timeline
GRANULARITY_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}
DEFAULT_TIMELINE_HOURS = 24
MAX_TIMELINE_HOURS = 720

# Pricing per 1K tokens: (input, output, cache_creation, cache_read).
# 5-minute cache tier.
MODEL_PRICING = {
    # Claude 4
    "claude-opus-4": (0.015, 0.075, 0.01875, 0.0015),
    "claude-opus-4-20250514": (0.015, 0.075, 0.01875, 0.0015),
    "claude-sonnet-4": (0.003, 0.015, 0.00375, 0.0003),
    "claude-sonnet-4-20250514": (0.003, 0.015, 0.00375, 0.0003),
    # Claude 3.x
    "claude-3-opus": (0.015, 0.075, 0.01875, 0.0015),
    "claude-3-sonnet": (0.003, 0.015, 0.00375, 0.0003),
    "claude-3.5-sonnet": (0.003, 0.015, 0.00375, 0.0003),
    "claude-3.7-sonnet": (0.003, 0.015, 0.00375, 0.0003),
    "claude-3-haiku": (0.00025, 0.00125, 0.0003, 0.00003),
    "claude-3.5-haiku": (0.0008, 0.004, 0.001, 0.00008),
}

# Unknown models are priced as Sonnet
DEFAULT_PRICING = (0.003, 0.015, 0.00375, 0.0003)
