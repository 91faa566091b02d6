"""Tests for the sync engine."""

import time
from pathlib import Path

import pytest

from cicada.core.config import SyncOptions
from cicada.core.errors import ScanError
from cicada.sync.backend import LocalBackend, S3Backend
from cicada.sync.engine import SyncEngine
from cicada.sync.types import ActionType


def local_pair(tmp_path: Path) -> tuple[LocalBackend, LocalBackend]:
    return (
        LocalBackend(tmp_path / "src", create=False),
        LocalBackend(tmp_path / "dst", create=False),
    )


class TestSyncEngine:
    """Tests for SyncEngine.run()."""

    def test_copies_tree_then_noop(self, tmp_path: Path, write_tree) -> None:
        """A second pass over an unchanged tree should do nothing."""
        write_tree(tmp_path / "src", {"a.txt": "a", "d/b.txt": "bb"})
        source, destination = local_pair(tmp_path)

        first = SyncEngine(source, destination).run()
        second = SyncEngine(source, destination).run()

        assert first.ok
        assert first.files_transferred == 2
        assert first.bytes_transferred == 3
        assert second.plan.is_noop
        assert second.result is not None
        assert second.result.skipped == 2
        assert second.files_transferred == 0

    def test_additive_by_default(self, tmp_path: Path, write_tree) -> None:
        """Destination-only files should survive without delete."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        write_tree(tmp_path / "dst", {"extra.txt": "e"})
        source, destination = local_pair(tmp_path)

        report = SyncEngine(source, destination).run()

        assert report.ok
        assert (tmp_path / "dst" / "extra.txt").exists()

    def test_mirror_deletes_extra_files(self, tmp_path: Path, write_tree) -> None:
        """With delete the destination should end up identical to the source."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        write_tree(tmp_path / "dst", {"a.txt": "old", "extra.txt": "e"})
        source, destination = local_pair(tmp_path)

        report = SyncEngine(source, destination, SyncOptions(delete=True)).run()

        assert report.ok
        assert sorted(p.name for p in (tmp_path / "dst").iterdir()) == ["a.txt"]
        assert (tmp_path / "dst" / "a.txt").read_text() == "a"

    def test_dry_run_changes_nothing(self, tmp_path: Path, write_tree) -> None:
        """A dry run should plan without touching either side."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        source, destination = local_pair(tmp_path)

        report = SyncEngine(source, destination, SyncOptions(dry_run=True)).run()

        assert report.dry_run
        assert report.result is None
        assert report.plan.counts()[ActionType.UPLOAD] == 1
        assert not (tmp_path / "dst").exists()
        assert "Dry run: no changes made" in report.summary()

    def test_excludes_applied(self, tmp_path: Path, write_tree) -> None:
        """Excluded files should be neither copied nor deleted."""
        write_tree(tmp_path / "src", {"a.txt": "a", "b.tmp": "b", ".git/config": "c"})
        write_tree(tmp_path / "dst", {"keep.tmp": "k"})
        source, destination = local_pair(tmp_path)

        options = SyncOptions(delete=True, exclude=["*.tmp", ".git/**"])
        report = SyncEngine(source, destination, options).run()

        assert report.plan.paths() == ["a.txt"]
        assert (tmp_path / "dst" / "keep.tmp").exists()
        assert not (tmp_path / "dst" / ".git").exists()

    def test_min_age_defers_young_files(self, tmp_path: Path, write_tree) -> None:
        """Files younger than min_age should be deferred and not deleted."""
        now = 1_700_000_000.0
        write_tree(tmp_path / "src", {"old.txt": "o"}, mtime=now - 60)
        write_tree(tmp_path / "src", {"young.txt": "y"}, mtime=now - 2)
        write_tree(tmp_path / "dst", {"young.txt": "previous"}, mtime=now - 3600)
        source, destination = local_pair(tmp_path)

        options = SyncOptions(delete=True, min_age_seconds=10)
        report = SyncEngine(source, destination, options, clock=lambda: now).run()

        assert report.deferred == ["young.txt"]
        assert report.plan.paths() == ["old.txt"]
        assert (tmp_path / "dst" / "young.txt").read_text() == "previous"
        assert "Deferred (too recent): 1" in report.summary()

    def test_delete_source(self, tmp_path: Path, write_tree) -> None:
        """delete_source should empty the source after a successful pass."""
        write_tree(tmp_path / "src", {"a.txt": "a", "d/b.txt": "b"})
        source, destination = local_pair(tmp_path)

        report = SyncEngine(source, destination, delete_source=True).run()

        assert report.ok
        assert sorted(report.result.source_deleted) == ["a.txt", "d/b.txt"]
        assert list((tmp_path / "src").iterdir()) == []
        assert (tmp_path / "dst" / "d" / "b.txt").read_text() == "b"

    def test_missing_source_raises(self, tmp_path: Path) -> None:
        """An unreachable source root should abort the pass."""
        source, destination = local_pair(tmp_path)
        with pytest.raises(ScanError):
            SyncEngine(source, destination).run()

    def test_summary_lists_failures(self, tmp_path: Path, write_tree) -> None:
        """The summary should itemize failed paths."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        # A directory in the way of the file
        write_tree(tmp_path / "dst", {"a.txt/inner": "i"})
        source, destination = local_pair(tmp_path)

        report = SyncEngine(source, destination).run()

        assert not report.ok
        summary = report.summary()
        assert "Failures:" in summary
        assert any(line.startswith("  a.txt:") for line in summary)

    def test_local_to_s3_round_trip(self, tmp_path: Path, write_tree, s3_client) -> None:
        """Syncing to S3 twice should transfer once and then plan only skips."""
        write_tree(tmp_path / "src", {"a.txt": "alpha", "d/b.txt": "beta"})
        source = LocalBackend(tmp_path / "src", create=False)
        destination = S3Backend("test-bucket", "mirror", client=s3_client)

        first = SyncEngine(source, destination).run()
        second = SyncEngine(source, destination).run()

        assert first.ok
        assert first.files_transferred == 2
        assert second.plan.is_noop
        body = s3_client.get_object(Bucket="test-bucket", Key="mirror/d/b.txt")["Body"].read()
        assert body == b"beta"

    def test_summary_counts_outcomes(self, tmp_path: Path, write_tree) -> None:
        """The summary should include per-outcome task counts."""
        write_tree(tmp_path / "src", {"a.txt": "a", "b.txt": "b"})
        source, destination = local_pair(tmp_path)

        summary = SyncEngine(source, destination).run().summary()

        assert "Outcomes: succeeded=2" in summary

    def test_mirror_removes_stale_directory_marker(self, tmp_path: Path, write_tree, s3_client) -> None:
        """A mirror pass to S3 should delete marker keys with no source counterpart."""
        write_tree(tmp_path / "src", {"a.txt": "alpha"})
        s3_client.put_object(Bucket="test-bucket", Key="mirror/old/", Body=b"")
        source = LocalBackend(tmp_path / "src", create=False)
        destination = S3Backend("test-bucket", "mirror", client=s3_client)

        report = SyncEngine(source, destination, SyncOptions(delete=True)).run()

        assert report.ok
        keys = [obj["Key"] for obj in s3_client.list_objects_v2(Bucket="test-bucket")["Contents"]]
        assert keys == ["mirror/a.txt"]

    def test_no_checksum_round_trip_to_s3(self, tmp_path: Path, write_tree, s3_client) -> None:
        """Without checksums a second pass to S3 should compare stored mtimes and skip."""
        write_tree(tmp_path / "src", {"a.txt": "alpha", "d/b.txt": "beta"})
        options = SyncOptions(checksums=False)
        source = LocalBackend(tmp_path / "src", checksums=False, create=False)
        destination = S3Backend("test-bucket", "mirror", client=s3_client, checksums=False)

        first = SyncEngine(source, destination, options).run()
        second = SyncEngine(source, destination, options).run()

        assert first.files_transferred == 2
        assert second.plan.is_noop

    def test_duration_recorded(self, tmp_path: Path, write_tree) -> None:
        """Every report should carry a non-negative duration."""
        write_tree(tmp_path / "src", {"a.txt": "a"})
        source, destination = local_pair(tmp_path)

        started = time.monotonic()
        report = SyncEngine(source, destination).run()

        assert 0 <= report.duration <= time.monotonic() - started
