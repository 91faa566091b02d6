"""Tests for the source watcher and its event handler."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from cicada.core.errors import WatchRuntimeError
from cicada.sync.exclude import ExcludeMatcher
from cicada.watch.watcher import ChangeEvent, ChangeEventHandler, ChangeType, SourceWatcher


@pytest.fixture
def base(tmp_path: Path) -> Path:
    root = tmp_path / "watched"
    root.mkdir()
    return root.resolve()


class TestChangeEventHandler:
    """Tests for translating watchdog events."""

    @pytest.fixture
    def events(self) -> list[ChangeEvent]:
        return []

    @pytest.fixture
    def handler(self, base: Path, events: list[ChangeEvent]) -> ChangeEventHandler:
        return ChangeEventHandler(base, events.append, ExcludeMatcher(["*.tmp", ".git/**"]))

    def test_created_and_modified(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """File events should become relative ChangeEvents."""
        handler.on_any_event(FileCreatedEvent(str(base / "a.txt")))
        handler.on_any_event(FileModifiedEvent(str(base / "d" / "b.txt")))

        assert [(e.path, e.change_type) for e in events] == [
            ("a.txt", ChangeType.CREATED),
            ("d/b.txt", ChangeType.MODIFIED),
        ]

    def test_deleted(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """Deletions should be forwarded."""
        handler.on_any_event(FileDeletedEvent(str(base / "a.txt")))
        assert events[0].change_type == ChangeType.DELETED

    def test_directory_modified_ignored(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """Directory mtime changes should not produce events."""
        handler.on_any_event(DirModifiedEvent(str(base / "d")))
        assert events == []

    def test_directory_created(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """Directory creations should be flagged as directories."""
        handler.on_any_event(DirCreatedEvent(str(base / "newdir")))
        assert events[0].is_directory

    def test_move_reports_both_ends(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """A move should report the old path and the new one."""
        handler.on_any_event(FileMovedEvent(str(base / "old.txt"), str(base / "new.txt")))

        assert [(e.path, e.change_type) for e in events] == [
            ("old.txt", ChangeType.MOVED),
            ("new.txt", ChangeType.CREATED),
        ]

    def test_rename_from_excluded_name(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """Saving through a temp file should surface only the final name."""
        handler.on_any_event(FileCreatedEvent(str(base / "doc.tmp")))
        handler.on_any_event(FileMovedEvent(str(base / "doc.tmp"), str(base / "doc.txt")))

        assert [e.path for e in events] == ["doc.txt"]

    def test_excluded_paths_filtered(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """Paths matching excludes, or inside excluded directories, should be dropped."""
        handler.on_any_event(FileModifiedEvent(str(base / "x.tmp")))
        handler.on_any_event(FileModifiedEvent(str(base / ".git" / "objects" / "ab")))
        assert events == []

    def test_partial_files_filtered(self, base: Path, handler: ChangeEventHandler, events) -> None:
        """In-flight temp files written by a local put should be dropped."""
        handler.on_any_event(FileCreatedEvent(str(base / ".cicada-abc.part")))
        assert events == []

    def test_outside_base_ignored(self, tmp_path: Path, handler: ChangeEventHandler, events) -> None:
        """Paths outside the watched root should be ignored."""
        handler.on_any_event(FileCreatedEvent(str(tmp_path / "elsewhere.txt")))
        assert events == []


class TestSourceWatcher:
    """Tests for SourceWatcher."""

    def test_requires_directory(self, tmp_path: Path) -> None:
        """Starting on a missing directory should raise WatchRuntimeError."""
        watcher = SourceWatcher(tmp_path / "missing", lambda e: None)
        with pytest.raises(WatchRuntimeError):
            watcher.start()
        assert not watcher.is_running

    def test_start_stop_with_fake_observer(self, base: Path) -> None:
        """start() should schedule recursively and stop() should stop the observer."""
        observer = MagicMock()
        observer.is_alive.return_value = True
        watcher = SourceWatcher(base, lambda e: None, observer_factory=lambda: observer)

        watcher.start()

        observer.schedule.assert_called_once()
        assert observer.schedule.call_args.kwargs["recursive"] is True
        assert watcher.is_running
        assert watcher.is_alive

        observer.is_alive.return_value = False
        assert not watcher.is_alive

        watcher.stop()
        observer.stop.assert_called_once()
        assert not watcher.is_running

    def test_schedule_failure(self, base: Path) -> None:
        """OS errors from the observer should become WatchRuntimeError."""
        observer = MagicMock()
        observer.schedule.side_effect = OSError("inotify watch limit reached")
        watcher = SourceWatcher(base, lambda e: None, observer_factory=lambda: observer)

        with pytest.raises(WatchRuntimeError, match="inotify"):
            watcher.start()

    def test_detects_file_creation(self, base: Path) -> None:
        """A real observer should report a newly written file."""
        received: list[ChangeEvent] = []
        seen = threading.Event()

        def sink(event: ChangeEvent) -> None:
            received.append(event)
            if event.path == "new.txt":
                seen.set()

        with SourceWatcher(base, sink):
            time.sleep(0.1)  # Wait for watcher to initialize
            (base / "new.txt").write_text("hello")
            assert seen.wait(timeout=5)

        assert any(e.path == "new.txt" for e in received)
