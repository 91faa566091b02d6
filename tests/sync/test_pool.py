"""Tests for the worker pool."""

import threading

import pytest

from cicada.core.errors import PoolShutdownError
from cicada.sync.pool import PoolState, WorkerPool


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_initial_state(self) -> None:
        """A new pool should be stopped and empty."""
        pool = WorkerPool(max_workers=2)
        assert pool.state == PoolState.STOPPED
        assert not pool.is_running
        assert pool.max_workers == 2
        assert pool.active_count == 0
        assert pool.queue_size == 0

    def test_rejects_zero_workers(self) -> None:
        """max_workers must be at least one."""
        with pytest.raises(ValueError):
            WorkerPool(max_workers=0)

    def test_submit_returns_result(self) -> None:
        """Submitted callables should resolve their future."""
        with WorkerPool(max_workers=2) as pool:
            future = pool.submit(lambda a, b: a + b, 2, 3, name="add")
            assert future.result(timeout=5) == 5
        assert pool.state == PoolState.STOPPED
        assert pool.completed_count == 1

    def test_exception_set_on_future(self) -> None:
        """Exceptions raised by a task should land on its future."""
        def boom() -> None:
            raise RuntimeError("boom")

        with WorkerPool(max_workers=1) as pool:
            future = pool.submit(boom)
            with pytest.raises(RuntimeError, match="boom"):
                future.result(timeout=5)
        assert pool.error_count == 1

    def test_submit_when_stopped_raises(self) -> None:
        """Submitting to a pool that is not running should fail."""
        pool = WorkerPool(max_workers=1)
        with pytest.raises(PoolShutdownError):
            pool.submit(lambda: None)

    def test_tasks_bounded_by_workers(self) -> None:
        """No more than max_workers tasks should run at once."""
        lock = threading.Lock()
        running = 0
        peak = 0
        release = threading.Event()

        def task() -> None:
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            release.wait(timeout=5)
            with lock:
                running -= 1

        with WorkerPool(max_workers=2) as pool:
            futures = [pool.submit(task) for _ in range(6)]
            threading.Timer(0.2, release.set).start()
            for future in futures:
                future.result(timeout=5)

        assert peak == 2

    def test_shutdown_abandons_queued_tasks(self) -> None:
        """Queued tasks should fail with PoolShutdownError on shutdown."""
        started = threading.Event()
        release = threading.Event()

        def blocker() -> str:
            started.set()
            release.wait(timeout=5)
            return "done"

        pool = WorkerPool(max_workers=1)
        pool.start()
        running = pool.submit(blocker)
        queued = pool.submit(lambda: "never")
        assert started.wait(timeout=5)

        threading.Timer(0.1, release.set).start()
        pool.shutdown(grace=5.0)

        assert running.result(timeout=1) == "done"
        with pytest.raises(PoolShutdownError):
            queued.result(timeout=1)
        assert pool.state == PoolState.STOPPED

    def test_shutdown_is_idempotent(self) -> None:
        """Shutting down a stopped pool should be a no-op."""
        pool = WorkerPool(max_workers=1)
        pool.shutdown()
        pool.start()
        pool.shutdown()
        pool.shutdown()
        assert pool.state == PoolState.STOPPED
