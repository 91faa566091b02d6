"""Bounded worker pool shared by sync passes.

This module provides:
- PoolState: Lifecycle of the pool
- WorkerPool: Fixed set of worker threads draining a task queue

One pool may serve several concurrent sync passes (for example every
watch of a registry), which bounds the total number of in-flight
transfers across all of them.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from cicada.core.errors import PoolShutdownError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class _WorkItem:
    func: Callable[..., Any]
    args: tuple[Any, ...]
    future: Future[Any]
    name: str


class WorkerPool:
    """Pool of worker threads for concurrent transfer operations.

    Usage:
        pool = WorkerPool(max_workers=4)
        pool.start()

        future = pool.submit(copy_one, "a/b.txt", name="a/b.txt")
        future.result()

        pool.shutdown(grace=10.0)
    """

    def __init__(self, max_workers: int = 4, name: str = "WorkerPool") -> None:
        """Initialize the worker pool.

        Args:
            max_workers: Number of worker threads (>= 1).
            name: Prefix for worker thread names.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._max_workers = max_workers
        self._name = name

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._task_queue: queue.Queue[_WorkItem | None] = queue.Queue()
        self._workers: list[threading.Thread] = []

        self._active_count = 0
        self._completed_count = 0
        self._error_count = 0

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown()

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def is_running(self) -> bool:
        return self._pool_state == PoolState.RUNNING

    @property
    def active_count(self) -> int:
        """Get number of tasks currently executing."""
        with self._lock:
            return self._active_count

    @property
    def queue_size(self) -> int:
        """Get number of queued tasks."""
        return self._task_queue.qsize()

    @property
    def completed_count(self) -> int:
        return self._completed_count

    @property
    def error_count(self) -> int:
        return self._error_count

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool already running")
                return

            self._pool_state = PoolState.RUNNING
            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"{self._name}-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.info("Worker pool started with %d workers", self._max_workers)

    def submit(self, func: Callable[..., Any], *args: Any, name: str = "") -> Future[Any]:
        """Queue a callable for execution.

        Args:
            func: Callable to run on a worker thread.
            *args: Positional arguments for func.
            name: Label used in log messages.

        Returns:
            Future resolved with the callable's result or exception.

        Raises:
            PoolShutdownError: If the pool is not running.
        """
        with self._lock:
            if self._pool_state != PoolState.RUNNING:
                raise PoolShutdownError(f"Cannot submit {name or func!r}: pool not running")
            future: Future[Any] = Future()
            self._task_queue.put(_WorkItem(func, args, future, name))
        logger.debug("Task submitted: %s", name or func)
        return future

    def shutdown(self, grace: float = 10.0) -> None:
        """Stop the pool.

        Queued tasks that have not started fail with PoolShutdownError.
        Running tasks get up to ``grace`` seconds to finish.

        Args:
            grace: Maximum time to wait for running tasks.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            logger.info("Worker pool stopping...")

        abandoned = self._drain_queue()
        if abandoned:
            logger.info("Abandoned %d queued tasks", abandoned)

        # Poison pills to stop workers
        for _ in self._workers:
            self._task_queue.put(None)

        deadline = time.monotonic() + grace
        for worker in self._workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0.0))
            if worker.is_alive():
                logger.warning("Worker %s still running after %.1fs grace", worker.name, grace)

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
        logger.info("Worker pool stopped")

    def _drain_queue(self) -> int:
        count = 0
        while True:
            try:
                item = self._task_queue.get_nowait()
            except queue.Empty:
                return count
            if item is None:
                continue
            if item.future.set_running_or_notify_cancel():
                item.future.set_exception(
                    PoolShutdownError(f"Pool shut down before {item.name or 'task'} started")
                )
            count += 1

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            item = self._task_queue.get()
            if item is None:
                # Poison pill - stop worker
                break
            if self._pool_state != PoolState.RUNNING:
                if item.future.set_running_or_notify_cancel():
                    item.future.set_exception(
                        PoolShutdownError(f"Pool shut down before {item.name or 'task'} started")
                    )
                continue
            self._process(item)

    def _process(self, item: _WorkItem) -> None:
        if not item.future.set_running_or_notify_cancel():
            return

        with self._lock:
            self._active_count += 1
        try:
            result = item.func(*item.args)
        except BaseException as e:
            self._error_count += 1
            logger.debug("Task %s raised %s", item.name or item.func, e)
            item.future.set_exception(e)
        else:
            self._completed_count += 1
            item.future.set_result(result)
        finally:
            with self._lock:
                self._active_count -= 1
