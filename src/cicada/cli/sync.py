"""Sync command for the cicada CLI.

Commands:
- sync: One-shot synchronization of SOURCE into DESTINATION
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

import click

from cicada.cli.config import (
    get_concurrency,
    get_default_excludes,
    get_s3_settings,
    get_section,
    load_config,
)
from cicada.core.config import SyncOptions
from cicada.core.errors import CicadaError, ConfigError
from cicada.sync.backend import create_backend
from cicada.sync.engine import SyncEngine, SyncReport
from cicada.sync.exclude import ExcludeMatcher
from cicada.sync.pool import WorkerPool
from cicada.sync.types import ActionType, ProgressUpdate

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_NOT_STARTED = 2
EXIT_INTERRUPTED = 130

# Symbols printed for completed actions
ARROWS = {
    ActionType.UPLOAD.value: "↑",
    ActionType.UPDATE.value: "↻",
    ActionType.DELETE.value: "✗",
}


def _collect_excludes(
    config: dict[str, object],
    exclude: tuple[str, ...],
    exclude_from: Path | None,
) -> list[str]:
    patterns = list(exclude) if exclude else get_default_excludes(config)  # type: ignore[arg-type]
    if exclude_from is not None:
        matcher = ExcludeMatcher()
        matcher.load_from_file(exclude_from)
        patterns.extend(matcher.patterns)
    return patterns


def display_report(report: SyncReport, dry_run: bool) -> None:
    """Print the plan (dry run) or the summary of an executed pass."""
    if dry_run:
        for action in report.plan:
            if action.action_type != ActionType.SKIP:
                click.echo(f"  {action.action_type.value:<6} {action.path}")

    for line in report.summary():
        if line.startswith("Failures:") or line.startswith("Interrupted:"):
            click.echo(click.style(line, fg="red"))
        else:
            click.echo(line)


@click.command()
@click.argument("source")
@click.argument("destination")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be done without changing anything.")
@click.option("--delete", is_flag=True, default=None, help="Delete destination files missing from the source.")
@click.option(
    "--concurrency", "-j",
    type=click.IntRange(min=1),
    default=None,
    help="Number of parallel transfers.",
)
@click.option("--exclude", "-x", multiple=True, help="Glob pattern to exclude (repeatable).")
@click.option(
    "--exclude-from",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with one exclude pattern per line.",
)
@click.option("--no-checksum", is_flag=True, help="Compare size and modification time only.")
@click.option("--min-age", type=click.FloatRange(min=0), default=0.0, help="Skip files modified less than N seconds ago.")
@click.option("--quiet", "-q", is_flag=True, help="Only print the summary.")
def sync(
    source: str,
    destination: str,
    dry_run: bool,
    delete: bool | None,
    concurrency: int | None,
    exclude: tuple[str, ...],
    exclude_from: Path | None,
    no_checksum: bool,
    min_age: float,
    quiet: bool,
) -> None:
    """Synchronize SOURCE into DESTINATION.

    Both may be local directories or s3://bucket/prefix URIs. Without
    --delete the sync is additive: destination-only files are kept.

    Exit status: 0 on success, 1 when some transfers failed, 2 when the
    sync could not start, 130 when interrupted with Ctrl+C. A first Ctrl+C
    lets in-flight transfers finish and reports the rest as interrupted.
    """
    echo_lock = threading.Lock()

    def on_progress(update: ProgressUpdate) -> None:
        arrow = ARROWS.get(update.operation)
        if quiet or not update.finished or arrow is None:
            return
        with echo_lock:
            if update.error:
                click.echo(click.style(f"  ! {update.path}: {update.error}", fg="red"))
            else:
                click.echo(f"  {arrow} {update.path}")

    try:
        config = load_config()
        sync_config = get_section(config, "sync")
        options = SyncOptions(
            dry_run=dry_run,
            delete=bool(sync_config.get("delete", False)) if delete is None else delete,
            concurrency=concurrency or get_concurrency(config),
            exclude=_collect_excludes(config, exclude, exclude_from),
            checksums=not no_checksum,
            min_age_seconds=min_age,
            progress=None if dry_run else on_progress,
        )
        s3_settings = get_s3_settings(config)
        source_backend = create_backend(source, s3_settings, checksums=options.checksums)
        dest_backend = create_backend(destination, s3_settings, checksums=options.checksums)
    except (ConfigError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_NOT_STARTED)

    if not quiet:
        mode = "mirror" if options.delete else "additive"
        click.echo(f"Syncing {source_backend.location} -> {dest_backend.location} ({mode})")

    pool = WorkerPool(max_workers=options.concurrency, name="Transfer")
    stopping: list[threading.Thread] = []

    def on_interrupt(signum: int, frame: object) -> None:
        if stopping:
            raise KeyboardInterrupt
        click.echo("\nInterrupted: finishing in-flight transfers (Ctrl+C again to abort)", err=True)
        # Queued transfers are reported as interrupted once the pool stops
        thread = threading.Thread(target=pool.shutdown, name="TransferShutdown", daemon=True)
        stopping.append(thread)
        thread.start()

    # Signal handlers can only be installed from the main thread
    on_main = threading.current_thread() is threading.main_thread()
    previous = signal.signal(signal.SIGINT, on_interrupt) if on_main else None
    pool.start()
    try:
        with source_backend, dest_backend:
            report = SyncEngine(source_backend, dest_backend, options, pool=pool).run()
    except CicadaError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_NOT_STARTED)
    finally:
        if on_main:
            signal.signal(signal.SIGINT, previous)
        if not stopping:
            pool.shutdown()

    if stopping:
        stopping[0].join()
    display_report(report, dry_run)
    if stopping:
        sys.exit(EXIT_INTERRUPTED)
    if not report.ok:
        sys.exit(EXIT_PARTIAL)
