"""Project-path reconciliation.

Historical sessions can carry a wrong or placeholder ``project_path``. The
working directory recorded on a session's messages is the primary source:
the first message (chronologically) that carries one decides the path.
Later messages never override it.

Preview and apply are separate calls. ``dry_run`` never writes; ``apply``
writes only the records it is handed, one session at a time, and only when
the caller passes ``confirm=True``.
"""

import logging
import os
import threading

from sessiondeck.errors import ReconciliationFailure, ValidationError
from sessiondeck.models import Message, MigrationRecord, MigrationReport

logger = logging.getLogger(__name__)


def project_name_from_path(path: str) -> str:
    """Last path segment, ignoring a trailing slash."""
    trimmed = path.rstrip("/\\")
    return os.path.basename(trimmed) or trimmed or path


def first_working_directory(messages: list[Message]) -> Message | None:
    for message in messages:
        if message.working_directory and message.working_directory.strip():
            return message
    return None


class ProjectPathReconciler:
    def __init__(self, store, message_source):
        """``message_source`` provides ``messages_for_session(session_id)``."""
        self.store = store
        self.message_source = message_source

    def dry_run(self, cancel: threading.Event | None = None) -> tuple[list[MigrationRecord], MigrationReport]:
        """Compute the corrections that ``apply`` would make, without writing anything."""
        records: list[MigrationRecord] = []
        report = MigrationReport()
        for session in self.store.list():
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            report.scanned += 1
            evidence = first_working_directory(
                self.message_source.messages_for_session(session.id)
            )
            if evidence is None:
                report.skipped += 1
                report.unresolved.append(session.id)
                continue
            proposed = evidence.working_directory.strip()
            if proposed == session.project_path:
                report.skipped += 1
                continue
            records.append(
                MigrationRecord(
                    session_id=session.id,
                    old_path=session.project_path,
                    proposed_path=proposed,
                    proposed_name=project_name_from_path(proposed),
                    evidence_message_id=evidence.id,
                    evidence_timestamp=evidence.timestamp,
                )
            )
        logger.info(
            "Scanned %d sessions: %d to update, %d unresolved",
            report.scanned, len(records), len(report.unresolved),
        )
        return records, report

    def apply(self, records: list[MigrationRecord], confirm: bool = False,
              cancel: threading.Event | None = None) -> MigrationReport:
        """Apply dry-run records independently per session.

        A failing session is counted and reported; corrections already made
        stay in place. Cancelling stops before the next session.
        """
        if not confirm:
            raise ValidationError("Refusing to apply project path corrections without confirmation")

        report = MigrationReport(scanned=len(records))
        for record in records:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            if not record.proposed_path:
                report.skipped += 1
                continue
            try:
                current = self.store.get(record.session_id)
                if current.project_path == record.proposed_path:
                    report.skipped += 1
                    continue
                self.store.set_project_path(
                    record.session_id, record.proposed_path, record.proposed_name
                )
            except Exception as e:
                failure = ReconciliationFailure(record.session_id, f"{type(e).__name__}: {e}")
                report.failed += 1
                report.failures[record.session_id] = failure.reason
                logger.warning("%s", failure)
                continue
            record.applied = True
            report.changed += 1
            logger.debug(
                "Session %s: %s -> %s", record.session_id, record.old_path, record.proposed_path
            )

        if report.cancelled:
            logger.info("Reconciliation cancelled after %d corrections", report.changed)
        return report
