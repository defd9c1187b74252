"""Background worker: re-ingests changed transcripts and marks quiet sessions idle."""

import logging
import threading
import time

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from sessiondeck.config import CLAUDE_PROJECTS_DIR, IDLE_AFTER
from sessiondeck.ingest import run_ingest

logger = logging.getLogger(__name__)


class _TranscriptChangeHandler(FileSystemEventHandler):
    """Calls ``notify`` whenever a transcript file is written or appears."""

    def __init__(self, notify):
        super().__init__()
        self._notify = notify

    def _check(self, event):
        if not event.is_directory and str(event.src_path).endswith(".jsonl"):
            self._notify()

    on_created = _check
    on_modified = _check


class IngestionWorker(threading.Thread):
    """Daemon thread that watches the projects directory for changed transcripts.

    A short debounce cooldown keeps a burst of writes to one transcript from
    triggering an ingestion per line. Every wake-up (change or timeout) also
    sweeps long-quiet working sessions to idle.

    The ``status`` attribute is a dict visible to other threads:
      {"state": "idle"/"ingesting", "step": "...", "ready": True/False,
       "last_stats": {...}}
    """

    def __init__(self, tracker, projects_dir=None, run_immediately: bool = False,
                 cooldown: float = 2.0, sweep_interval: float = 60.0, idle_after: float = IDLE_AFTER):
        super().__init__(daemon=True, name="ingestion-worker")
        self.tracker = tracker
        self.projects_dir = projects_dir or CLAUDE_PROJECTS_DIR
        self._run_immediately = run_immediately
        self._cooldown = cooldown
        self._sweep_interval = sweep_interval
        self._idle_after = idle_after
        self._stop_event = threading.Event()
        self._change_event = threading.Event()
        self._last_run: float = 0.0
        self._observer: Observer | None = None
        self.status: dict = {"state": "idle", "step": "", "ready": True, "last_stats": None}

    def stop(self):
        self._stop_event.set()
        self._change_event.set()  # Wake the run loop so it can exit
        if self._observer is not None:
            self._observer.stop()

    def request_refresh(self):
        """Ask for an ingestion pass on the next loop. Non-blocking."""
        self._change_event.set()

    @property
    def is_busy(self) -> bool:
        return self.status.get("state") != "idle"

    def _on_fs_change(self):
        self._change_event.set()

    def _start_observer(self):
        """Start the watchdog observer if the watch directory exists."""
        if not self.projects_dir.exists():
            logger.info("%s does not exist; not watching", self.projects_dir)
            return
        handler = _TranscriptChangeHandler(self._on_fs_change)
        self._observer = Observer()
        self._observer.schedule(handler, str(self.projects_dir), recursive=True)
        self._observer.start()

    def run(self):
        self._start_observer()
        pending = self._run_immediately

        while not self._stop_event.is_set():
            if pending:
                # Debounce: don't ingest more often than the cooldown allows
                wait = self._cooldown - (time.monotonic() - self._last_run)
                if wait > 0 and self._stop_event.wait(wait):
                    break
                pending = not self._run_step("Ingesting transcripts", self._ingest)
            self._run_step("Sweeping idle sessions", self._sweep)

            changed = self._change_event.wait(timeout=self._sweep_interval)
            self._change_event.clear()
            pending = pending or changed

        if self._observer is not None:
            self._observer.join()

    def _run_step(self, step: str, fn) -> bool:
        self.status = {**self.status, "state": "ingesting", "step": step, "ready": False}
        try:
            fn()
            return True
        except Exception:
            # the worker outlives any single failed pass
            logger.exception("%s failed", step)
            return False
        finally:
            self.status = {**self.status, "state": "idle", "step": "", "ready": True}

    def _ingest(self):
        stats = run_ingest(self.tracker, self.projects_dir)
        self._last_run = time.monotonic()
        self.status = {**self.status, "last_stats": stats}
        if stats["ingested_files"]:
            logger.info(
                "Ingested %d messages from %d files", stats["total_messages"], stats["ingested_files"]
            )

    def _sweep(self):
        self.tracker.store.sweep_idle(self._idle_after)
