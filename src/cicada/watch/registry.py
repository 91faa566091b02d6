"""Registry of configured watches and their coordinators.

This module provides:
- WatchRegistry: add/remove/enable/disable/restart/list over all watches
- WatchStatus: Snapshot of one watch's configuration, state and counters
- check_overlap: Validation of source/destination mappings

The registry is the only writer to the WatchStore. Coordinators report
through callbacks and never touch the store themselves. All coordinators
share one WorkerPool, which caps the number of parallel transfers across
every watch.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cicada.core.config import DEFAULT_CONCURRENCY, S3Settings, SyncOptions, WatchConfig
from cicada.core.errors import ConfigError
from cicada.core.types import WatchPhase
from cicada.sync.backend import LocalBackend, create_backend, parse_s3_uri
from cicada.sync.engine import SyncEngine, SyncReport
from cicada.sync.pool import WorkerPool
from cicada.sync.types import split_path
from cicada.watch.coordinator import WatchCoordinator

if TYPE_CHECKING:
    from collections.abc import Callable

    from cicada.watch.store import WatchStore

logger = logging.getLogger(__name__)


@dataclass
class WatchStatus:
    """Point-in-time view of one watch."""

    config: WatchConfig
    phase: WatchPhase
    started_at: float | None = None
    last_sync_time: float | None = None
    total_syncs: int = 0
    total_files: int = 0
    total_bytes: int = 0
    error_count: int = 0
    last_error: str | None = None
    pending_paths: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.config.id


def _location_key(location: str) -> tuple[str, tuple[str, ...]]:
    """Normalize a location into (namespace, segments) for nesting checks."""
    if location.startswith("s3://"):
        bucket, key = parse_s3_uri(location)
        return f"s3://{bucket}", split_path(key)
    if location.startswith("file://"):
        location = location[len("file://"):]
    path = os.path.realpath(os.path.expanduser(location))
    return "file", tuple(part for part in path.split(os.sep) if part)


def _nested(a: str, b: str) -> bool:
    """Whether one location equals or contains the other."""
    ns_a, seg_a = _location_key(a)
    ns_b, seg_b = _location_key(b)
    if ns_a != ns_b:
        return False
    shorter = min(len(seg_a), len(seg_b))
    return seg_a[:shorter] == seg_b[:shorter]


def check_overlap(new: WatchConfig, existing: list[WatchConfig]) -> list[str]:
    """Validate a watch against itself and the already registered ones.

    Returns:
        Warning messages for overlaps that are allowed.

    Raises:
        ConfigError: If the destination lies inside the watch's own source,
            or another watch maps an overlapping source to an overlapping
            destination.
    """
    if _nested(new.source_path, new.destination):
        raise ConfigError(
            f"watch {new.id}: source and destination overlap "
            f"({new.source} / {new.destination})"
        )

    warnings: list[str] = []
    for other in existing:
        if other.id == new.id:
            continue
        if not _nested(new.source_path, other.source_path):
            continue
        if _nested(new.destination, other.destination):
            raise ConfigError(
                f"watch {new.id} overlaps watch {other.id}: "
                f"{new.source} -> {new.destination} vs {other.source} -> {other.destination}"
            )
        warnings.append(
            f"watch {new.id} shares source files with watch {other.id} "
            f"({new.source} / {other.source})"
        )
    return warnings


class WatchRegistry:
    """Owns every watch definition and supervises one coordinator per watch.

    Usage:
        registry = WatchRegistry(WatchStore(db_path), concurrency=4)
        registry.add(WatchConfig(id="raw", source="/data", destination="s3://b/raw"))
        registry.start_all()
        ...
        registry.shutdown(grace_period=30.0)
    """

    def __init__(
        self,
        store: WatchStore,
        pool: WorkerPool | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        s3_settings: S3Settings | None = None,
        checksums: bool = True,
        coordinator_factory: Callable[..., WatchCoordinator] = WatchCoordinator,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Persistent store for configs and counters.
            pool: Worker pool shared by all watches (created if None).
            concurrency: Pool size when the registry creates the pool, and
                the per-pass in-flight limit.
            s3_settings: Settings for S3 destinations.
            checksums: Whether local trees compute MD5 checksums.
            coordinator_factory: Builds coordinators (injectable for tests).
        """
        self._store = store
        self._owns_pool = pool is None
        self._pool = pool or WorkerPool(max_workers=concurrency, name="Transfer")
        self._concurrency = concurrency
        self._s3_settings = s3_settings
        self._checksums = checksums
        self._coordinator_factory = coordinator_factory

        self._lock = threading.RLock()
        self._coordinators: dict[str, WatchCoordinator] = {}
        self._started = False

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def is_started(self) -> bool:
        return self._started

    # === Definitions ===

    def add(self, config: WatchConfig) -> WatchConfig:
        """Register a new watch, starting it if the registry is running.

        Raises:
            ConfigError: On duplicate id or overlapping mapping.
        """
        with self._lock:
            if self._store.get_watch(config.id) is not None:
                raise ConfigError(f"watch already exists: {config.id}")
            for message in check_overlap(config, self._store.list_watches()):
                logger.warning(message)
            self._store.add_watch(config)
            logger.info("Added watch %s: %s -> %s", config.id, config.source, config.destination)
            if self._started and config.enabled:
                self._start_coordinator(config)
        return config

    def remove(self, watch_id: str) -> None:
        """Stop and delete a watch.

        Raises:
            ConfigError: If the watch does not exist.
        """
        with self._lock:
            self._require(watch_id)
            coordinator = self._coordinators.pop(watch_id, None)
        if coordinator is not None:
            coordinator.stop()
        with self._lock:
            self._store.remove_watch(watch_id)
        logger.info("Removed watch %s", watch_id)

    def enable(self, watch_id: str) -> None:
        with self._lock:
            config = self._require(watch_id)
            self._store.set_enabled(watch_id, True)
            config.enabled = True
            if not self._started:
                return
            coordinator = self._coordinators.get(watch_id)
            if coordinator is None:
                self._start_coordinator(config)
            else:
                coordinator.enable()
        logger.info("Enabled watch %s", watch_id)

    def disable(self, watch_id: str) -> None:
        """Disable a watch; an in-flight pass is allowed to finish."""
        with self._lock:
            self._require(watch_id)
            self._store.set_enabled(watch_id, False)
            coordinator = self._coordinators.get(watch_id)
            if coordinator is not None:
                coordinator.disable()
        logger.info("Disabled watch %s", watch_id)

    def restart(self, watch_id: str) -> None:
        """Re-arm a watch (typically an errored one) and run a pass."""
        with self._lock:
            config = self._require(watch_id)
            if not config.enabled:
                raise ConfigError(f"watch {watch_id} is disabled")
            coordinator = self._coordinators.get(watch_id)
            if coordinator is None:
                if self._started:
                    self._start_coordinator(config)
                return
            coordinator.restart()

    def get(self, watch_id: str) -> WatchStatus:
        """Status of one watch.

        Raises:
            ConfigError: If the watch does not exist.
        """
        with self._lock:
            config = self._require(watch_id)
            coordinator = self._coordinators.get(watch_id)
        return self._status(config, coordinator)

    def list(self) -> list[WatchStatus]:
        with self._lock:
            configs = self._store.list_watches()
            coordinators = dict(self._coordinators)
        return [self._status(c, coordinators.get(c.id)) for c in configs]

    def _require(self, watch_id: str) -> WatchConfig:
        config = self._store.get_watch(watch_id)
        if config is None:
            raise ConfigError(f"unknown watch: {watch_id}")
        return config

    def _status(self, config: WatchConfig, coordinator: WatchCoordinator | None) -> WatchStatus:
        stats = self._store.get_stats(config.id)
        status = WatchStatus(config=config, phase=WatchPhase.STOPPED)
        if stats is not None:
            status.last_sync_time = stats.last_sync_time
            status.total_syncs = stats.total_syncs
            status.total_files = stats.total_files
            status.total_bytes = stats.total_bytes
            status.error_count = stats.error_count
            status.last_error = stats.last_error
            status.pending_paths = stats.pending_paths
        if coordinator is not None:
            status.phase = coordinator.phase
            status.started_at = coordinator.started_at
            status.pending_paths = coordinator.pending_paths
        elif not config.enabled:
            status.phase = WatchPhase.DISABLED
        return status

    # === Lifecycle ===

    def start_all(self) -> list[str]:
        """Start the shared pool and a coordinator for every enabled watch.

        Returns:
            Ids of the watches started.
        """
        with self._lock:
            if self._started:
                return sorted(self._coordinators)
            if self._owns_pool:
                self._pool.start()
            self._started = True
            started = []
            for config in self._store.list_watches():
                if config.enabled:
                    self._start_coordinator(config)
                    started.append(config.id)
        logger.info("Started %d watches", len(started))
        return started

    def shutdown(self, grace_period: float = 10.0) -> dict[str, list[str]]:
        """Stop every coordinator and drain the shared pool.

        In-flight transfers get ``grace_period`` seconds; queued ones are
        abandoned and reported as interrupted.

        Returns:
            Interrupted paths per watch id (only watches with any).
        """
        with self._lock:
            coordinators = list(self._coordinators.values())
            self._coordinators.clear()
            self._started = False

        deadline = time.monotonic() + grace_period
        for coordinator in coordinators:
            coordinator.request_stop()
        if self._owns_pool:
            self._pool.shutdown(grace=grace_period)
        for coordinator in coordinators:
            coordinator.join(timeout=max(deadline - time.monotonic(), 0.1))

        interrupted: dict[str, list[str]] = {}
        for coordinator in coordinators:
            report = coordinator.last_report
            if report is not None and report.result is not None and report.result.interrupted:
                interrupted[coordinator.watch_id] = list(report.result.interrupted)
        if interrupted:
            logger.warning(
                "Shutdown interrupted %d transfers",
                sum(len(paths) for paths in interrupted.values()),
            )
        logger.info("All watches stopped")
        return interrupted

    def _start_coordinator(self, config: WatchConfig) -> WatchCoordinator:
        stats = self._store.get_stats(config.id)
        coordinator = self._coordinator_factory(
            config,
            self._make_runner(config),
            pending=stats.pending_paths if stats else (),
            on_sync_complete=self._on_sync_complete,
            on_sync_error=self._on_sync_error,
            on_state_change=self._on_state_change,
        )
        self._coordinators[config.id] = coordinator
        coordinator.start()
        return coordinator

    def _make_runner(self, config: WatchConfig) -> Callable[[], SyncReport]:
        def run() -> SyncReport:
            options = SyncOptions(
                delete=False,
                concurrency=self._concurrency,
                exclude=config.exclude,
                checksums=self._checksums,
                min_age_seconds=config.min_age_seconds,
            )
            source = LocalBackend(config.source_path, checksums=self._checksums, create=False)
            destination = create_backend(
                config.destination, s3_settings=self._s3_settings, checksums=self._checksums,
            )
            with source, destination:
                engine = SyncEngine(
                    source,
                    destination,
                    options,
                    pool=self._pool,
                    delete_source=config.delete_source,
                )
                return engine.run()

        return run

    # === Coordinator callbacks (called on coordinator threads) ===
    # These write through the store's own lock only, so a coordinator
    # holding its lock never waits on the registry lock.

    def _on_sync_complete(self, watch_id: str, report: SyncReport) -> None:
        error = None
        if report.result is not None and report.result.failed:
            first = report.result.failed[0]
            error = f"{len(report.result.failed)} failed, first: {first.path}: {first.reason}"
        self._store.record_sync(
            watch_id,
            files=report.files_transferred,
            bytes_transferred=report.bytes_transferred,
            error=error,
        )

    def _on_sync_error(self, watch_id: str, message: str) -> None:
        self._store.record_error(watch_id, message)

    def _on_state_change(self, watch_id: str, phase: WatchPhase, pending: list[str]) -> None:
        self._store.set_pending(watch_id, pending)
