"""Watch commands for the cicada CLI.

Commands:
- watch add: Register a new watch
- watch list: Show watches with their state and counters
- watch remove / enable / disable: Manage one watch
- watch run: Run every enabled watch in the foreground
"""

from __future__ import annotations

import re
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path

import click

from cicada.cli.config import (
    get_concurrency,
    get_default_excludes,
    get_s3_settings,
    get_watch_db,
    load_config,
)
from cicada.core.config import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_MIN_AGE_SECONDS, WatchConfig
from cicada.core.errors import CicadaError, ConfigError
from cicada.watch.registry import WatchRegistry, WatchStatus
from cicada.watch.store import WatchStore


def _open_registry() -> WatchRegistry:
    config = load_config()
    return WatchRegistry(
        WatchStore(get_watch_db()),
        concurrency=get_concurrency(config),
        s3_settings=get_s3_settings(config),
    )


def _default_id(source: str) -> str:
    """Derive a watch id from the source directory name."""
    name = Path(source).expanduser().resolve().name or "watch"
    return re.sub(r"[^A-Za-z0-9_-]+", "-", name).strip("-") or "watch"


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _echo_status(status: WatchStatus) -> None:
    config = status.config
    click.echo(f"{config.id}  [{status.phase.value}]")
    click.echo(f"  {config.source} -> {config.destination}")
    click.echo(
        f"  debounce={config.debounce_seconds:g}s min_age={config.min_age_seconds:g}s "
        f"delete_source={config.delete_source} sync_on_start={config.sync_on_start}"
    )
    if config.exclude:
        click.echo(f"  exclude: {', '.join(config.exclude)}")
    click.echo(
        f"  last sync: {_format_time(status.last_sync_time)}, syncs={status.total_syncs}, "
        f"files={status.total_files}, transferred={_format_bytes(status.total_bytes)}"
    )
    if status.pending_paths:
        click.echo(f"  pending: {len(status.pending_paths)} paths")
    if status.error_count:
        click.echo(click.style(f"  errors: {status.error_count}, last: {status.last_error}", fg="yellow"))


@click.group()
def watch() -> None:
    """Manage continuous sync watches."""


@watch.command("add")
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.argument("destination")
@click.option("--id", "watch_id", help="Watch identifier (defaults to the source directory name).")
@click.option(
    "--debounce",
    type=click.FloatRange(min=0),
    default=DEFAULT_DEBOUNCE_SECONDS,
    show_default=True,
    help="Seconds of quiet after the last change before syncing.",
)
@click.option(
    "--min-age",
    type=click.FloatRange(min=0),
    default=DEFAULT_MIN_AGE_SECONDS,
    show_default=True,
    help="Minimum seconds since a file's last modification before it is synced.",
)
@click.option("--delete-source", is_flag=True, help="Remove source files once confirmed at the destination.")
@click.option("--sync-on-start/--no-sync-on-start", default=True, show_default=True, help="Sync when the watch starts.")
@click.option("--exclude", "-x", multiple=True, help="Glob pattern to exclude (repeatable).")
@click.option("--enabled/--disabled", default=True, show_default=True, help="Initial state of the watch.")
def add(
    source: str,
    destination: str,
    watch_id: str | None,
    debounce: float,
    min_age: float,
    delete_source: bool,
    sync_on_start: bool,
    exclude: tuple[str, ...],
    enabled: bool,
) -> None:
    """Watch SOURCE and sync it into DESTINATION."""
    try:
        config = WatchConfig(
            id=watch_id or _default_id(source),
            source=str(Path(source).expanduser().resolve()),
            destination=destination,
            debounce_seconds=debounce,
            min_age_seconds=min_age,
            delete_source=delete_source,
            sync_on_start=sync_on_start,
            exclude=list(exclude) if exclude else get_default_excludes(load_config()),
            enabled=enabled,
        )
        registry = _open_registry()
        registry.add(config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(f"Added watch {config.id}: {config.source} -> {config.destination}")


@watch.command("list")
def list_watches() -> None:
    """List configured watches."""
    try:
        statuses = _open_registry().list()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    if not statuses:
        click.echo("No watches configured.")
        return
    for status in statuses:
        _echo_status(status)


@watch.command("remove")
@click.argument("watch_id")
def remove(watch_id: str) -> None:
    """Remove a watch."""
    try:
        _open_registry().remove(watch_id)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(f"Removed watch {watch_id}")


@watch.command("enable")
@click.argument("watch_id")
def enable(watch_id: str) -> None:
    """Enable a watch.

    Updates the stored definition only. A running `cicada watch run`
    picks the change up when it is restarted.
    """
    try:
        _open_registry().enable(watch_id)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(f"Enabled watch {watch_id}")


@watch.command("disable")
@click.argument("watch_id")
def disable(watch_id: str) -> None:
    """Disable a watch.

    Updates the stored definition only. A running `cicada watch run`
    picks the change up when it is restarted.
    """
    try:
        _open_registry().disable(watch_id)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(f"Disabled watch {watch_id}")


@watch.command("run")
@click.option(
    "--grace-period",
    type=click.FloatRange(min=0),
    default=30.0,
    show_default=True,
    help="Seconds to let in-flight transfers finish on shutdown.",
)
def run(grace_period: float) -> None:
    """Run all enabled watches until interrupted (Ctrl+C)."""
    try:
        registry = _open_registry()
        started = registry.start_all()
    except CicadaError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if not started:
        click.echo("No enabled watches.")
        registry.shutdown(grace_period)
        return

    click.echo(f"Running {len(started)} watches: {', '.join(started)} (Ctrl+C to stop)")

    stop = threading.Event()

    def on_signal(signum: int, frame: object) -> None:
        stop.set()

    previous = signal.signal(signal.SIGTERM, on_signal)
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        signal.signal(signal.SIGTERM, previous)

    click.echo("\nStopping...")
    interrupted = registry.shutdown(grace_period)
    for watch_id, paths in interrupted.items():
        click.echo(click.style(f"  {watch_id}: {len(paths)} transfers interrupted", fg="yellow"))
