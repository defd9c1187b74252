"""CLI entry point: sessiondeck serve / ingest / summary / migrate-paths."""

import logging
import sys
from pathlib import Path

import click

from sessiondeck.config import CLAUDE_PROJECTS_DIR, DB_PATH, SERVER_PORT

db_option = click.option(
    "--db", type=click.Path(dir_okay=False, path_type=Path), default=DB_PATH,
    show_default=True, help="SQLite database path",
)
projects_option = click.option(
    "--projects-dir", type=click.Path(file_okay=False, path_type=Path), default=CLAUDE_PROJECTS_DIR,
    show_default=True, help="Claude Code projects directory to ingest",
)


def _tracker(db: Path):
    from sessiondeck.core import Tracker

    return Tracker(db.expanduser())


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log debug output.")
def cli(verbose: bool):
    """sessiondeck: live tracking for Claude Code sessions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@db_option
@projects_option
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=SERVER_PORT, show_default=True, type=int)
def serve(db: Path, projects_dir: Path, host: str, port: int):
    """Serve the REST API and live stream while watching for new transcripts."""
    from werkzeug.serving import make_server

    from sessiondeck.server import app, set_tracker, set_worker
    from sessiondeck.watcher import IngestionWorker

    tracker = _tracker(db)
    needs_ingest = tracker.store.count() == 0
    if needs_ingest:
        click.echo("No data found. Ingesting in background...")

    worker = IngestionWorker(tracker, projects_dir, run_immediately=True)
    set_tracker(tracker)
    set_worker(worker)
    worker.start()

    server = make_server(host, port, app, threaded=True)
    click.echo(f"Starting server on http://{host}:{port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
        worker.stop()
        tracker.close()


@cli.command()
@click.option("--force", is_flag=True, default=False, help="Re-read all files, ignoring the ingestion log.")
@db_option
@projects_option
def ingest(force: bool, db: Path, projects_dir: Path):
    """Run a one-shot incremental ingestion of all JSONL files."""
    from sessiondeck.ingest import run_ingest

    tracker = _tracker(db)
    try:
        if force:
            with tracker.db.transaction() as conn:
                conn.execute("DELETE FROM ingestion_log")
                conn.execute("DELETE FROM skip_cache")
            click.echo("Cleared ingestion log. Already stored messages are not counted twice.")

        stats = run_ingest(tracker, projects_dir)
    finally:
        tracker.close()
    click.echo(
        f"Done. "
        f"{stats['ingested_files']}/{stats['total_files']} files ingested, "
        f"{stats['total_messages']} new messages "
        f"({stats['skipped_files']} skipped, {stats['failed_files']} failed). "
        f"DB totals: {stats['total_sessions']} sessions, "
        f"{stats['total_projects']} projects."
    )
    if stats["failed_files"]:
        sys.exit(1)


@cli.command()
@db_option
def summary(db: Path):
    """Print the rolling metrics summary."""
    tracker = _tracker(db)
    try:
        s = tracker.metrics.summary()
    finally:
        tracker.close()
    click.echo(f"Sessions:      {s.total_sessions} ({s.active_sessions} active)")
    click.echo(f"Messages:      {s.total_messages}")
    click.echo(f"Tokens:        {s.total_tokens:,}")
    click.echo(f"Cost:          ${s.total_cost:.2f}")
    click.echo(f"Avg duration:  {s.average_session_duration_minutes:.1f} min")
    if s.most_used_model:
        click.echo(f"Top model:     {s.most_used_model}")


@cli.command("migrate-paths")
@db_option
@click.option("--dry-run", is_flag=True, default=False, help="Only show the proposed corrections.")
@click.option("--yes", is_flag=True, default=False, help="Apply without asking for confirmation.")
def migrate_paths(db: Path, dry_run: bool, yes: bool):
    """Correct session project paths from the working directory in their transcripts."""
    tracker = _tracker(db)
    try:
        records, report = tracker.reconciler.dry_run()
        for record in records:
            click.echo(f"{record.session_id}: {record.old_path} -> {record.proposed_path}")
        click.echo(
            f"Scanned {report.scanned} sessions: {len(records)} to update, "
            f"{report.skipped} skipped ({len(report.unresolved)} without a working directory)."
        )
        if dry_run or not records:
            return

        if not yes and not click.confirm(f"Apply {len(records)} corrections?", default=False):
            click.echo("Aborted; nothing changed.")
            return

        result = tracker.reconciler.apply(records, confirm=True)
    finally:
        tracker.close()

    click.echo(f"Updated {result.changed}, skipped {result.skipped}, failed {result.failed}.")
    for session_id, reason in result.failures.items():
        click.echo(f"  {session_id}: {reason}", err=True)
    if not result.ok:
        sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
