"""Transfer executor running a sync plan on a bounded worker pool.

This module provides:
- TransferExecutor: Executes Upload/Update/Delete/Skip actions

Each action becomes a TransferTask with its own attempt counter and
outcome. Failures are recorded per task and never abort the rest of the
plan. After every Upload/Update the destination is stat'ed and compared
with the source fingerprint; a mismatch earns exactly one more transfer
before the task is marked as an integrity failure.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, wait
from typing import IO, TYPE_CHECKING

from cicada.core.config import DEFAULT_CONCURRENCY, RetryPolicy
from cicada.core.errors import (
    IntegrityError,
    PoolShutdownError,
    TransferError,
)
from cicada.sync.pool import WorkerPool
from cicada.sync.retry import classify_error, retry_with_backoff
from cicada.sync.types import (
    Action,
    ActionType,
    ExecutionResult,
    ManifestEntry,
    ProgressUpdate,
    SyncPlan,
    TaskOutcome,
    TransferFailure,
    TransferTask,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from cicada.sync.backend import StorageBackend

logger = logging.getLogger(__name__)

# Extra transfers granted after a failed post-transfer verification
INTEGRITY_RETRIES = 1

DELETE_SOURCE_REASON = "delete source"


class _CountingReader:
    """File-like wrapper counting bytes read and reporting progress."""

    def __init__(
        self,
        stream: IO[bytes],
        on_read: Callable[[int], None] | None = None,
    ) -> None:
        self._stream = stream
        self._on_read = on_read
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self.bytes_read += len(data)
            if self._on_read:
                self._on_read(self.bytes_read)
        return data

    def readable(self) -> bool:
        return True


def verify_entry(expected: ManifestEntry, actual: ManifestEntry | None) -> str | None:
    """Compare a destination entry with the source entry it was copied from.

    Returns:
        None when the destination matches, otherwise a mismatch description.
    """
    if actual is None:
        return "destination entry missing after transfer"
    if actual.size != expected.size:
        return f"size mismatch (expected {expected.size}, got {actual.size})"
    if expected.checksum and actual.checksum and expected.checksum != actual.checksum:
        return f"checksum mismatch (expected {expected.checksum}, got {actual.checksum})"
    return None


class TransferExecutor:
    """Executes a SyncPlan between two backends.

    Usage:
        executor = TransferExecutor(source, destination, concurrency=4)
        result = executor.execute(plan)
        for failure in result.failed:
            print(failure.path, failure.reason)

    When ``pool`` is given the executor shares it with other executors and
    never stops it; ``concurrency`` then bounds how many of this plan's
    tasks may be queued or running at once. Without a pool, a private one
    of size ``concurrency`` is created for each ``execute`` call.
    """

    def __init__(
        self,
        source: StorageBackend,
        destination: StorageBackend,
        pool: WorkerPool | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry: RetryPolicy | None = None,
        delete_source: bool = False,
        progress: Callable[[ProgressUpdate], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            source: Backend files are read from.
            destination: Backend files are written to and deleted from.
            pool: Shared worker pool (a private one is used if None).
            concurrency: Maximum in-flight tasks for one plan.
            retry: Backoff policy for transient failures.
            delete_source: Remove source files once confirmed at destination.
            progress: Optional callback receiving ProgressUpdate objects.
            sleep: Sleep function used between retries (injectable for tests).
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._source = source
        self._destination = destination
        self._pool = pool
        self._concurrency = concurrency
        self._retry = retry or RetryPolicy()
        self._delete_source = delete_source
        self._progress = progress
        self._sleep = sleep
        self._result_lock = threading.Lock()

    def execute(self, plan: SyncPlan) -> ExecutionResult:
        """Run every action of a plan and collect per-task outcomes."""
        tasks = [TransferTask(action=action) for action in plan]
        result = ExecutionResult(tasks=tasks)

        if self._pool is not None:
            self._run_all(tasks, self._pool, result)
        else:
            pool = WorkerPool(max_workers=self._concurrency, name="Transfer")
            pool.start()
            try:
                self._run_all(tasks, pool, result)
            finally:
                pool.shutdown()

        self._aggregate(tasks, result)
        logger.info(
            "Executed %d actions: %d succeeded, %d failed, %d skipped, %d interrupted",
            len(tasks), result.succeeded, len(result.failed), result.skipped,
            len(result.interrupted),
        )
        return result

    def _run_all(self, tasks: list[TransferTask], pool: WorkerPool, result: ExecutionResult) -> None:
        slots = threading.BoundedSemaphore(self._concurrency)
        submitted: list[tuple[TransferTask, Future[None]]] = []

        for task in tasks:
            if not self._needs_worker(task.action):
                task.outcome = TaskOutcome.SUCCEEDED
                self._notify(task.action.action_type.value, task.path, finished=True)
                continue

            slots.acquire()
            try:
                future = pool.submit(self._run_task, task, result, pool, name=task.path)
            except PoolShutdownError:
                slots.release()
                task.outcome = TaskOutcome.INTERRUPTED
                task.error = "worker pool shut down"
                continue
            future.add_done_callback(lambda _f: slots.release())
            submitted.append((task, future))

        wait([future for _, future in submitted])
        for task, future in submitted:
            error = future.exception()
            if error is None:
                continue
            if isinstance(error, PoolShutdownError):
                task.outcome = TaskOutcome.INTERRUPTED
                task.error = str(error)
            elif task.outcome == TaskOutcome.PENDING:
                task.outcome = TaskOutcome.PERMANENT_FAILURE
                task.error = str(error)

    def _needs_worker(self, action: Action) -> bool:
        if action.action_type != ActionType.SKIP:
            return True
        # Matched pairs still need a destination check before source removal
        return (
            self._delete_source
            and action.source is not None
            and action.destination is not None
            and not action.source.is_dir
        )

    def _run_task(self, task: TransferTask, result: ExecutionResult, pool: WorkerPool) -> None:
        """Execute one task on a worker thread, recording its outcome."""
        action = task.action
        try:
            if action.action_type == ActionType.DELETE:
                self._delete(task, pool)
            elif action.action_type == ActionType.SKIP:
                self._confirm(task)
            else:
                self._transfer(task, pool)
        except TransferError as e:
            self._fail(task, e, pool)
            return

        task.outcome = TaskOutcome.SUCCEEDED
        if self._delete_source and action.source is not None and action.action_type != ActionType.DELETE:
            self._remove_source(task, result)

    def _transfer(self, task: TransferTask, pool: WorkerPool) -> None:
        """Copy the source entry to the destination and verify it."""
        entry = task.action.source
        assert entry is not None
        op = task.action.action_type.value
        self._notify(op, task.path, 0, entry.size)

        def on_attempt(_: int) -> None:
            task.attempts += 1

        def copy_once() -> int:
            with self._source.get(task.path) as stream:
                reader = _CountingReader(
                    stream,
                    lambda done: self._notify(op, task.path, done, entry.size),
                )
                self._destination.put(
                    task.path,
                    reader,  # type: ignore[arg-type]
                    size=entry.size,
                    mtime=entry.mtime,
                    checksum=entry.checksum,
                )
            return reader.bytes_read

        for integrity_attempt in range(INTEGRITY_RETRIES + 1):
            written = retry_with_backoff(
                copy_once,
                self._retry,
                path=task.path,
                sleep=self._sleep,
                on_attempt=on_attempt,
                should_continue=lambda: pool.is_running,
            )
            task.bytes_transferred += written

            mismatch = verify_entry(entry, self._destination.stat(task.path))
            if mismatch is None:
                self._notify(op, task.path, written, entry.size, finished=True)
                logger.debug("%s %s (%d bytes, %d attempts)", op, task.path, written, task.attempts)
                return
            if integrity_attempt < INTEGRITY_RETRIES:
                logger.warning("Verification failed for %s: %s. Transferring again", task.path, mismatch)

        raise IntegrityError(mismatch, path=task.path)

    def _delete(self, task: TransferTask, pool: WorkerPool) -> None:
        def on_attempt(_: int) -> None:
            task.attempts += 1

        entry = task.action.destination
        is_dir = entry is not None and entry.is_dir
        self._notify(ActionType.DELETE.value, task.path)
        retry_with_backoff(
            lambda: self._destination.delete(task.path, is_dir=is_dir),
            self._retry,
            path=task.path,
            sleep=self._sleep,
            on_attempt=on_attempt,
            should_continue=lambda: pool.is_running,
        )
        self._notify(ActionType.DELETE.value, task.path, finished=True)
        logger.debug("Deleted %s from %s", task.path, self._destination.location)

    def _confirm(self, task: TransferTask) -> None:
        """Re-check a skipped pair at the destination before source removal."""
        entry = task.action.source
        assert entry is not None
        task.attempts += 1
        mismatch = verify_entry(entry, self._destination.stat(task.path))
        if mismatch is not None:
            raise IntegrityError(mismatch, path=task.path)
        self._notify(ActionType.SKIP.value, task.path, finished=True)

    def _remove_source(self, task: TransferTask, result: ExecutionResult) -> None:
        """Delete a source file whose destination copy was just confirmed."""
        try:
            self._source.delete(task.path)
        except Exception as e:
            error = classify_error(e, task.path)
            logger.error("Cannot delete source %s: %s", task.path, error)
            with self._result_lock:
                result.failed.append(
                    TransferFailure(task.path, f"{DELETE_SOURCE_REASON}: {error}")
                )
            self._notify("delete-source", task.path, error=str(error), finished=True)
            return
        with self._result_lock:
            result.source_deleted.append(task.path)
        self._notify("delete-source", task.path, finished=True)
        logger.debug("Removed source %s", task.path)

    def _fail(self, task: TransferTask, error: TransferError, pool: WorkerPool) -> None:
        if isinstance(error, IntegrityError):
            task.outcome = TaskOutcome.INTEGRITY_FAILURE
        elif error.retryable and not pool.is_running:
            task.outcome = TaskOutcome.INTERRUPTED
        elif error.retryable:
            task.outcome = TaskOutcome.TRANSIENT_FAILURE
        else:
            task.outcome = TaskOutcome.PERMANENT_FAILURE
        task.error = str(error)
        if task.outcome != TaskOutcome.INTERRUPTED:
            logger.error(
                "%s failed for %s after %d attempts: %s",
                task.action.action_type.value, task.path, task.attempts, error,
            )
        self._notify(task.action.action_type.value, task.path, error=task.error, finished=True)

    def _aggregate(self, tasks: list[TransferTask], result: ExecutionResult) -> None:
        # Source deletion failures were appended while tasks ran
        failures = [
            TransferFailure(task.path, task.error or task.outcome.value)
            for task in tasks if task.failed
        ]
        result.failed[:0] = failures

        for task in tasks:
            if task.outcome == TaskOutcome.INTERRUPTED:
                result.interrupted.append(task.path)
            elif task.outcome == TaskOutcome.SUCCEEDED:
                if task.action.action_type == ActionType.SKIP:
                    result.skipped += 1
                else:
                    result.succeeded += 1
            result.bytes_transferred += task.bytes_transferred

    def _notify(
        self,
        operation: str,
        path: str,
        bytes_done: int = 0,
        bytes_total: int = 0,
        error: str | None = None,
        finished: bool = False,
    ) -> None:
        if self._progress is not None:
            self._progress(
                ProgressUpdate(operation, path, bytes_done, bytes_total, error, finished)
            )
