"""Tests for the transfer executor."""

import threading
import time
from pathlib import Path

import pytest

from cicada.core.config import RetryPolicy
from cicada.core.errors import PermanentTransferError, TransientTransferError
from cicada.sync.backend import LocalBackend
from cicada.sync.executor import TransferExecutor, verify_entry
from cicada.sync.planner import plan
from cicada.sync.pool import WorkerPool
from cicada.sync.scanner import PathScanner
from cicada.sync.types import ActionType, ManifestEntry, ProgressUpdate, TaskOutcome


class FlakyBackend(LocalBackend):
    """LocalBackend whose reads fail for the first N calls per path."""

    def __init__(self, root: Path, failures: dict[str, Exception | int]) -> None:
        super().__init__(root)
        self.failures = dict(failures)
        self.reads: dict[str, int] = {}

    def get(self, path: str):
        self.reads[path] = self.reads.get(path, 0) + 1
        failure = self.failures.get(path)
        if isinstance(failure, Exception):
            raise failure
        if isinstance(failure, int) and self.reads[path] <= failure:
            raise TransientTransferError("503 Slow Down", path=path)
        return super().get(path)


class ShrinkingBackend(LocalBackend):
    """LocalBackend that always reports a wrong size for one path."""

    def __init__(self, root: Path, bad_path: str) -> None:
        super().__init__(root)
        self.bad_path = bad_path

    def stat(self, path: str) -> ManifestEntry | None:
        entry = super().stat(path)
        if entry is not None and path == self.bad_path:
            return ManifestEntry.create(path, entry.size + 1, entry.mtime, entry.checksum)
        return entry


def no_sleep(_: float) -> None:
    pass


def build_plan(source: LocalBackend, destination: LocalBackend, delete: bool = False):
    scanner = PathScanner()
    return plan(
        scanner.scan(source).manifest,
        scanner.scan(destination, missing_ok=True).manifest,
        delete=delete,
    )


class TestVerifyEntry:
    """Tests for verify_entry()."""

    def test_match(self) -> None:
        """Equal size and checksum should verify."""
        entry = ManifestEntry.create("a", 3, 1.0, "abc")
        assert verify_entry(entry, ManifestEntry.create("a", 3, 99.0, "abc")) is None

    def test_missing_destination(self) -> None:
        """A missing destination entry should be a mismatch."""
        assert "missing" in verify_entry(ManifestEntry.create("a", 3, 1.0), None)

    def test_size_mismatch(self) -> None:
        """Different sizes should be reported."""
        result = verify_entry(ManifestEntry.create("a", 3, 1.0), ManifestEntry.create("a", 4, 1.0))
        assert result is not None and "size mismatch" in result

    def test_checksum_only_when_both_known(self) -> None:
        """Checksums should only be compared when both sides have one."""
        source = ManifestEntry.create("a", 3, 1.0, "abc")
        assert verify_entry(source, ManifestEntry.create("a", 3, 1.0, None)) is None
        assert "checksum" in verify_entry(source, ManifestEntry.create("a", 3, 1.0, "def"))


class TestTransferExecutor:
    """Tests for TransferExecutor."""

    def test_uploads_new_files(self, tmp_path: Path, write_tree) -> None:
        """New files should be copied with their contents and mtimes."""
        write_tree(tmp_path / "src", {"a.txt": "alpha", "d/b.txt": "beta"}, mtime=1_600_000_000)
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")

        result = TransferExecutor(source, destination, concurrency=2).execute(
            build_plan(source, destination)
        )

        assert result.ok
        assert result.succeeded == 2
        assert result.bytes_transferred == 9
        assert result.files_transferred == 2
        assert (tmp_path / "dst" / "d" / "b.txt").read_text() == "beta"
        assert (tmp_path / "dst" / "a.txt").stat().st_mtime == pytest.approx(1_600_000_000)

    def test_transient_failures_retried(self, tmp_path: Path, write_tree) -> None:
        """A file failing twice with a transient error should succeed on the third attempt."""
        write_tree(tmp_path / "src", {"big.bin": b"x" * 1024})
        source = FlakyBackend(tmp_path / "src", {"big.bin": 2})
        destination = LocalBackend(tmp_path / "dst")

        executor = TransferExecutor(
            source, destination, retry=RetryPolicy(max_attempts=3), sleep=no_sleep,
        )
        result = executor.execute(build_plan(source, destination))

        task = result.task_for("big.bin")
        assert task is not None
        assert task.outcome == TaskOutcome.SUCCEEDED
        assert task.attempts == 3
        assert result.ok
        assert (tmp_path / "dst" / "big.bin").stat().st_size == 1024

    def test_retries_exhausted(self, tmp_path: Path, write_tree) -> None:
        """A file failing on every attempt should be a transient failure."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        source = FlakyBackend(tmp_path / "src", {"a.txt": 99})
        destination = LocalBackend(tmp_path / "dst")

        executor = TransferExecutor(
            source, destination, retry=RetryPolicy(max_attempts=2), sleep=no_sleep,
        )
        result = executor.execute(build_plan(source, destination))

        task = result.task_for("a.txt")
        assert task.outcome == TaskOutcome.TRANSIENT_FAILURE
        assert task.attempts == 2
        assert [f.path for f in result.failed] == ["a.txt"]

    def test_permanent_failure_not_retried(self, tmp_path: Path, write_tree) -> None:
        """A permanent error should fail once and leave other files unaffected."""
        write_tree(tmp_path / "src", {"denied.txt": "d", "ok.txt": "o"})
        source = FlakyBackend(
            tmp_path / "src", {"denied.txt": PermanentTransferError("AccessDenied", path="denied.txt")},
        )
        destination = LocalBackend(tmp_path / "dst")

        result = TransferExecutor(source, destination, sleep=no_sleep).execute(
            build_plan(source, destination)
        )

        assert not result.ok
        assert result.task_for("denied.txt").outcome == TaskOutcome.PERMANENT_FAILURE
        assert result.task_for("denied.txt").attempts == 1
        assert result.task_for("ok.txt").outcome == TaskOutcome.SUCCEEDED
        assert result.failed[0].path == "denied.txt"
        assert "AccessDenied" in result.failed[0].reason
        assert source.reads["denied.txt"] == 1

    def test_integrity_failure_after_one_extra_transfer(self, tmp_path: Path, write_tree) -> None:
        """A persistent verification mismatch should earn exactly one more transfer."""
        write_tree(tmp_path / "src", {"a.txt": "abc"})
        source = FlakyBackend(tmp_path / "src", {})
        destination = ShrinkingBackend(tmp_path / "dst", "a.txt")

        result = TransferExecutor(source, destination, sleep=no_sleep).execute(
            build_plan(source, destination)
        )

        task = result.task_for("a.txt")
        assert task.outcome == TaskOutcome.INTEGRITY_FAILURE
        assert task.attempts == 2
        assert source.reads["a.txt"] == 2
        assert "size mismatch" in result.failed[0].reason

    def test_delete_action(self, tmp_path: Path, write_tree) -> None:
        """Delete actions should remove destination-only files."""
        write_tree(tmp_path / "src", {"keep.txt": "k"})
        write_tree(tmp_path / "dst", {"keep.txt": "k", "old/stale.txt": "s"})
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")

        result = TransferExecutor(source, destination).execute(
            build_plan(source, destination, delete=True)
        )

        assert result.ok
        assert result.succeeded == 1
        assert result.skipped == 1
        assert not (tmp_path / "dst" / "old").exists()

    def test_delete_source_after_transfer(self, tmp_path: Path, write_tree) -> None:
        """delete_source should remove source files once confirmed at the destination."""
        write_tree(tmp_path / "src", {"new.txt": "n", "same.txt": "s"})
        write_tree(tmp_path / "dst", {"same.txt": "s"})
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")

        result = TransferExecutor(source, destination, delete_source=True).execute(
            build_plan(source, destination)
        )

        assert result.ok
        assert sorted(result.source_deleted) == ["new.txt", "same.txt"]
        assert not (tmp_path / "src" / "new.txt").exists()
        assert not (tmp_path / "src" / "same.txt").exists()
        assert (tmp_path / "dst" / "new.txt").read_text() == "n"

    def test_delete_source_keeps_failed_files(self, tmp_path: Path, write_tree) -> None:
        """A failed transfer should never remove the source file."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        source = FlakyBackend(tmp_path / "src", {"a.txt": PermanentTransferError("denied")})
        destination = LocalBackend(tmp_path / "dst")

        result = TransferExecutor(source, destination, delete_source=True).execute(
            build_plan(source, destination)
        )

        assert result.source_deleted == []
        assert (tmp_path / "src" / "a.txt").exists()

    def test_stopped_pool_interrupts_tasks(self, tmp_path: Path, write_tree) -> None:
        """Tasks that cannot be submitted should be reported as interrupted."""
        write_tree(tmp_path / "src", {"a.txt": "a", "b.txt": "b"})
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")
        pool = WorkerPool(max_workers=1)

        result = TransferExecutor(source, destination, pool=pool).execute(
            build_plan(source, destination)
        )

        assert not result.ok
        assert result.interrupted == ["a.txt", "b.txt"]
        assert result.failed == []
        assert not (tmp_path / "dst" / "a.txt").exists()

    def test_pool_shutdown_mid_pass_interrupts_remaining(self, tmp_path: Path, write_tree) -> None:
        """Stopping a shared pool during a pass should finish in-flight work and interrupt the rest."""
        write_tree(tmp_path / "src", {"a.txt": "a", "b.txt": "b", "c.txt": "c"})
        pool = WorkerPool(max_workers=1)
        stopper: list[threading.Thread] = []

        class StoppingBackend(LocalBackend):
            def get(self, path: str):
                if not stopper:
                    stopper.append(threading.Thread(target=pool.shutdown))
                    stopper[0].start()
                    while pool.is_running:
                        time.sleep(0.01)
                return super().get(path)

        source = StoppingBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")
        pool.start()
        try:
            result = TransferExecutor(source, destination, pool=pool, concurrency=1).execute(
                build_plan(source, destination)
            )
        finally:
            stopper[0].join(timeout=5)

        assert result.succeeded == 1
        assert result.interrupted == ["b.txt", "c.txt"]
        assert result.failed == []
        assert (tmp_path / "dst" / "a.txt").read_text() == "a"

    def test_shared_pool_left_running(self, tmp_path: Path, write_tree) -> None:
        """An executor should never stop a pool it was given."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")

        with WorkerPool(max_workers=2) as pool:
            result = TransferExecutor(source, destination, pool=pool, concurrency=1).execute(
                build_plan(source, destination)
            )
            assert pool.is_running

        assert result.ok

    def test_progress_updates(self, tmp_path: Path, write_tree) -> None:
        """Each action should end with exactly one finished update."""
        write_tree(tmp_path / "src", {"a.txt": "abc", "same.txt": "s"})
        write_tree(tmp_path / "dst", {"same.txt": "s"})
        source = LocalBackend(tmp_path / "src")
        destination = LocalBackend(tmp_path / "dst")
        updates: list[ProgressUpdate] = []

        TransferExecutor(source, destination, progress=updates.append).execute(
            build_plan(source, destination)
        )

        finished = sorted((u.operation, u.path) for u in updates if u.finished)
        assert finished == [
            (ActionType.SKIP.value, "same.txt"),
            (ActionType.UPLOAD.value, "a.txt"),
        ]
        upload = [u for u in updates if u.path == "a.txt" and u.finished][0]
        assert upload.bytes_done == 3
        assert upload.bytes_total == 3

    def test_invalid_concurrency(self, tmp_path: Path) -> None:
        """concurrency must be at least one."""
        backend = LocalBackend(tmp_path)
        with pytest.raises(ValueError):
            TransferExecutor(backend, backend, concurrency=0)
