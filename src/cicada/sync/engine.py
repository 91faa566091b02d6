"""Sync pipeline: scan both sides, plan, then execute.

This module provides:
- SyncEngine: Runs one Scanner -> Planner -> Executor pass
- SyncReport: Plan, execution result and warnings of one pass
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cicada.core.config import SyncOptions
from cicada.sync.executor import TransferExecutor
from cicada.sync.planner import plan as build_plan
from cicada.sync.scanner import PathScanner
from cicada.sync.types import ActionType, ExecutionResult, Manifest, ScanWarning, SyncPlan

if TYPE_CHECKING:
    from collections.abc import Callable

    from cicada.sync.backend import StorageBackend
    from cicada.sync.pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one sync pass.

    Attributes:
        plan: The computed plan (also set for dry runs).
        result: Execution result, None for dry runs.
        warnings: Non-fatal scan warnings from both sides.
        deferred: Source paths held back because they were too young.
        dry_run: Whether execution was skipped.
        duration: Wall-clock seconds spent in the pass.
    """

    plan: SyncPlan
    result: ExecutionResult | None = None
    warnings: list[ScanWarning] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    dry_run: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """True when every executed task completed."""
        return self.result is None or self.result.ok

    @property
    def bytes_transferred(self) -> int:
        return self.result.bytes_transferred if self.result else 0

    @property
    def files_transferred(self) -> int:
        return self.result.files_transferred if self.result else 0

    def summary(self) -> list[str]:
        """Human-readable summary: counts by action and outcome, then failures."""
        counts = self.plan.counts()
        lines = [
            "Plan: " + ", ".join(f"{t.value}={counts[t]}" for t in ActionType),
        ]
        if self.deferred:
            lines.append(f"Deferred (too recent): {len(self.deferred)}")
        if self.warnings:
            lines.append(f"Scan warnings: {len(self.warnings)}")
            lines.extend(f"  {w.path or '.'}: {w.reason}" for w in self.warnings)

        if self.dry_run or self.result is None:
            lines.append("Dry run: no changes made")
            return lines

        result = self.result
        lines.append(
            f"Result: succeeded={result.succeeded}, failed={len(result.failed)}, "
            f"skipped={result.skipped}, interrupted={len(result.interrupted)}, "
            f"bytes={result.bytes_transferred}"
        )
        outcomes = result.outcome_counts()
        if outcomes:
            lines.append("Outcomes: " + ", ".join(f"{o.value}={n}" for o, n in outcomes.items()))
        if result.source_deleted:
            lines.append(f"Source files removed: {len(result.source_deleted)}")
        if result.failed:
            lines.append("Failures:")
            lines.extend(f"  {f.path}: {f.reason}" for f in result.failed)
        if result.interrupted:
            lines.append("Interrupted:")
            lines.extend(f"  {path}" for path in result.interrupted)
        return lines


class SyncEngine:
    """Runs complete sync passes between a source and a destination backend.

    Usage:
        engine = SyncEngine(LocalBackend("data"), create_backend("s3://b/p"), options)
        report = engine.run()
        for line in report.summary():
            print(line)
    """

    def __init__(
        self,
        source: StorageBackend,
        destination: StorageBackend,
        options: SyncOptions | None = None,
        pool: WorkerPool | None = None,
        delete_source: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the engine.

        Args:
            source: Backend to read from.
            destination: Backend to write to.
            options: Pass options (defaults if None).
            pool: Shared worker pool; a private one per pass if None.
            delete_source: Remove source files once confirmed at destination.
            clock: Wall-clock time source used for min-age checks.
            sleep: Sleep function used between retries.
        """
        self._source = source
        self._destination = destination
        self._options = options or SyncOptions()
        self._pool = pool
        self._delete_source = delete_source
        self._clock = clock
        self._sleep = sleep
        self._scanner = PathScanner(self._options.exclude)

    @property
    def options(self) -> SyncOptions:
        return self._options

    @property
    def source(self) -> StorageBackend:
        return self._source

    @property
    def destination(self) -> StorageBackend:
        return self._destination

    def run(self) -> SyncReport:
        """Run one pass.

        Raises:
            ScanError: If either root cannot be enumerated at all.
        """
        started = time.monotonic()
        opts = self._options
        logger.info(
            "Sync %s -> %s (dry_run=%s, delete=%s)",
            self._source.location, self._destination.location, opts.dry_run, opts.delete,
        )

        source_scan = self._scanner.scan(self._source)
        dest_scan = self._scanner.scan(self._destination, missing_ok=True)
        source_manifest = source_scan.manifest
        dest_manifest = dest_scan.manifest

        deferred = self._young_paths(source_manifest)
        if deferred:
            # Hidden from both sides so a young file is neither copied nor deleted
            source_manifest = source_manifest.without(deferred)
            dest_manifest = dest_manifest.without(deferred)
            logger.info("Deferred %d files younger than %.1fs", len(deferred), opts.min_age_seconds)

        sync_plan = build_plan(source_manifest, dest_manifest, delete=opts.delete)
        report = SyncReport(
            plan=sync_plan,
            warnings=source_scan.warnings + dest_scan.warnings,
            deferred=deferred,
            dry_run=opts.dry_run,
        )

        if opts.dry_run:
            logger.info("Dry run: %d actions planned", len(sync_plan))
        elif sync_plan.is_noop and not self._delete_source:
            logger.info("Nothing to do: %d entries already in sync", len(sync_plan))
            report.result = ExecutionResult(skipped=len(sync_plan))
        else:
            executor = TransferExecutor(
                self._source,
                self._destination,
                pool=self._pool,
                concurrency=opts.concurrency,
                retry=opts.retry,
                delete_source=self._delete_source,
                progress=opts.progress,
                sleep=self._sleep,
            )
            report.result = executor.execute(sync_plan)

        report.duration = time.monotonic() - started
        return report

    def _young_paths(self, manifest: Manifest) -> list[str]:
        min_age = self._options.min_age_seconds
        if min_age <= 0:
            return []
        now = self._clock()
        return [
            entry.path for entry in manifest
            if not entry.is_dir and now - entry.mtime < min_age
        ]
