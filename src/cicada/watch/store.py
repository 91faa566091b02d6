"""Persistent watch definitions and counters.

This module provides:
- WatchStore: SQLite-backed storage for watch configs and runtime counters
- WatchStats: Persisted counters of one watch

Architecture:
    One row per watch in ``watches`` (the WatchConfig fields) and one row in
    ``watch_stats`` (counters and pending paths). Only the WatchRegistry
    writes to the store; the internal lock serializes its writes coming
    from several coordinator threads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from cicada.core.config import WatchConfig
from cicada.core.errors import ConfigError

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


@dataclass
class WatchStats:
    """Persisted runtime counters of one watch.

    Attributes:
        last_sync_time: Wall-clock time of the last completed pass.
        total_syncs: Number of completed passes.
        total_files: Files transferred over all passes.
        total_bytes: Bytes transferred over all passes.
        error_count: Passes that failed fatally or had failed tasks.
        last_error: Most recent error message.
        pending_paths: Dirty paths not yet synced.
    """

    last_sync_time: float | None = None
    total_syncs: int = 0
    total_files: int = 0
    total_bytes: int = 0
    error_count: int = 0
    last_error: str | None = None
    pending_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> WatchStats:
        """Create WatchStats from database row."""
        pending = json.loads(row["pending_paths"]) if row["pending_paths"] else []
        return cls(
            last_sync_time=row["last_sync_time"],
            total_syncs=row["total_syncs"],
            total_files=row["total_files"],
            total_bytes=row["total_bytes"],
            error_count=row["error_count"],
            last_error=row["last_error"],
            pending_paths=pending,
        )


def _config_from_row(row: sqlite3.Row) -> WatchConfig:
    return WatchConfig(
        id=row["id"],
        source=row["source"],
        destination=row["destination"],
        debounce_seconds=row["debounce_seconds"],
        min_age_seconds=row["min_age_seconds"],
        delete_source=bool(row["delete_source"]),
        sync_on_start=bool(row["sync_on_start"]),
        exclude=json.loads(row["exclude"]) if row["exclude"] else [],
        enabled=bool(row["enabled"]),
    )


class WatchStore:
    """SQLite store for watch definitions and counters."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (and create if needed) the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = str(db_path)
        if self._db_path != MEMORY:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        if self._db_path != MEMORY:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS watches (
                id TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                destination TEXT NOT NULL,
                debounce_seconds REAL NOT NULL,
                min_age_seconds REAL NOT NULL,
                delete_source INTEGER NOT NULL,
                sync_on_start INTEGER NOT NULL,
                exclude TEXT,
                enabled INTEGER NOT NULL,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS watch_stats (
                watch_id TEXT PRIMARY KEY REFERENCES watches(id) ON DELETE CASCADE,
                last_sync_time REAL,
                total_syncs INTEGER NOT NULL DEFAULT 0,
                total_files INTEGER NOT NULL DEFAULT 0,
                total_bytes INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                pending_paths TEXT
            );
        """)

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Watch definitions ===

    def add_watch(self, config: WatchConfig) -> None:
        """Insert a new watch.

        Raises:
            ConfigError: If a watch with the same id exists.
        """
        with self._lock:
            try:
                self._conn.execute("BEGIN")
                self._conn.execute(
                    """
                    INSERT INTO watches (
                        id, source, destination, debounce_seconds, min_age_seconds,
                        delete_source, sync_on_start, exclude, enabled, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        config.id,
                        config.source,
                        config.destination,
                        config.debounce_seconds,
                        config.min_age_seconds,
                        int(config.delete_source),
                        int(config.sync_on_start),
                        json.dumps(config.exclude),
                        int(config.enabled),
                        time.time(),
                    ),
                )
                self._conn.execute(
                    "INSERT INTO watch_stats (watch_id) VALUES (?)",
                    (config.id,),
                )
                self._conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                self._conn.execute("ROLLBACK")
                raise ConfigError(f"watch already exists: {config.id}") from e

    def get_watch(self, watch_id: str) -> WatchConfig | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM watches WHERE id = ?", (watch_id,),
            ).fetchone()
        return _config_from_row(row) if row else None

    def list_watches(self) -> list[WatchConfig]:
        """List all watches in creation order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM watches ORDER BY created_at, rowid"
            ).fetchall()
        return [_config_from_row(row) for row in rows]

    def remove_watch(self, watch_id: str) -> bool:
        """Delete a watch and its counters.

        Returns:
            True if the watch existed.
        """
        with self._lock:
            cursor = self._conn.execute("DELETE FROM watches WHERE id = ?", (watch_id,))
        return cursor.rowcount > 0

    def set_enabled(self, watch_id: str, enabled: bool) -> bool:
        """Update the enabled flag.

        Returns:
            True if the watch exists.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE watches SET enabled = ? WHERE id = ?",
                (int(enabled), watch_id),
            )
        return cursor.rowcount > 0

    # === Counters ===

    def get_stats(self, watch_id: str) -> WatchStats | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM watch_stats WHERE watch_id = ?", (watch_id,),
            ).fetchone()
        return WatchStats.from_row(row) if row else None

    def record_sync(
        self,
        watch_id: str,
        files: int,
        bytes_transferred: int,
        error: str | None = None,
        timestamp: float | None = None,
    ) -> None:
        """Add one completed pass to the counters.

        Args:
            watch_id: Watch identifier.
            files: Files transferred in the pass.
            bytes_transferred: Bytes transferred in the pass.
            error: Failure summary if some tasks failed.
            timestamp: Completion time (defaults to now).
        """
        with self._lock:
            self._conn.execute(
                """
                UPDATE watch_stats SET
                    last_sync_time = ?,
                    total_syncs = total_syncs + 1,
                    total_files = total_files + ?,
                    total_bytes = total_bytes + ?,
                    error_count = error_count + ?,
                    last_error = COALESCE(?, last_error)
                WHERE watch_id = ?
                """,
                (
                    timestamp if timestamp is not None else time.time(),
                    files,
                    bytes_transferred,
                    1 if error else 0,
                    error,
                    watch_id,
                ),
            )

    def record_error(self, watch_id: str, error: str) -> None:
        """Count a fatal failure."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE watch_stats SET error_count = error_count + 1, last_error = ?
                WHERE watch_id = ?
                """,
                (error, watch_id),
            )

    def set_pending(self, watch_id: str, paths: list[str]) -> None:
        """Replace the persisted set of dirty paths."""
        with self._lock:
            self._conn.execute(
                "UPDATE watch_stats SET pending_paths = ? WHERE watch_id = ?",
                (json.dumps(sorted(paths)), watch_id),
            )
