"""File system watcher feeding change events to a watch coordinator.

This module provides:
- ChangeType / ChangeEvent: One raw filesystem change, relative to the source
- ChangeEventHandler: watchdog handler translating and filtering events
- SourceWatcher: Owns the watchdog observer for one source directory

No debouncing happens here; every event is forwarded and the coordinator
coalesces them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from cicada.core.errors import WatchRuntimeError
from cicada.sync.backend import is_partial_name
from cicada.sync.exclude import ExcludeMatcher

if TYPE_CHECKING:
    from collections.abc import Callable

    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class ChangeType(Enum):
    """Type of file system change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass(frozen=True)
class ChangeEvent:
    """A change below a watched source.

    Attributes:
        path: Forward-slash path relative to the source root.
        change_type: Kind of change.
        is_directory: Whether the path is a directory.
        timestamp: Wall-clock time the event was observed.
    """

    path: str
    change_type: ChangeType
    is_directory: bool = False
    timestamp: float = field(default_factory=time.time)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class ChangeEventHandler(FileSystemEventHandler):
    """Translates watchdog events into ChangeEvents for one source root."""

    def __init__(
        self,
        base_path: Path,
        sink: Callable[[ChangeEvent], None],
        exclude: ExcludeMatcher | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            base_path: Watched source directory (resolved).
            sink: Receives every accepted ChangeEvent.
            exclude: Matcher for paths that must not trigger a sync.
        """
        super().__init__()
        self._base_path = base_path
        self._sink = sink
        self._exclude = exclude or ExcludeMatcher()

    def _relative(self, path: str | bytes) -> str | None:
        try:
            rel = Path(_decode(path)).relative_to(self._base_path)
        except ValueError:
            logger.warning("Path %s is not relative to %s", _decode(path), self._base_path)
            return None
        return "/".join(rel.parts)

    def _emit(self, path: str | bytes, change_type: ChangeType, is_directory: bool) -> None:
        rel = self._relative(path)
        if not rel:
            return
        if is_partial_name(rel.rsplit("/", 1)[-1]):
            return
        if self._exclude.is_excluded(rel, is_dir=is_directory):
            logger.debug("Ignoring excluded change: %s", rel)
            return
        self._sink(ChangeEvent(path=rel, change_type=change_type, is_directory=is_directory))

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Dispatch created/modified/deleted/moved events."""
        if isinstance(event, FileCreatedEvent | DirCreatedEvent):
            change_type = ChangeType.CREATED
        elif isinstance(event, FileModifiedEvent | DirModifiedEvent):
            # Directory mtime changes carry no information of their own
            if event.is_directory:
                return
            change_type = ChangeType.MODIFIED
        elif isinstance(event, FileDeletedEvent | DirDeletedEvent):
            change_type = ChangeType.DELETED
        elif isinstance(event, FileMovedEvent | DirMovedEvent):
            change_type = ChangeType.MOVED
        else:
            return

        self._emit(event.src_path, change_type, event.is_directory)
        if change_type == ChangeType.MOVED and event.dest_path:
            self._emit(event.dest_path, ChangeType.CREATED, event.is_directory)


class SourceWatcher:
    """Watches one source directory recursively.

    Usage:
        watcher = SourceWatcher(Path("/data"), coordinator.notify, exclude)
        watcher.start()
        ...
        if not watcher.is_alive:
            ...  # event source lost
        watcher.stop()
    """

    def __init__(
        self,
        watch_path: Path | str,
        sink: Callable[[ChangeEvent], None],
        exclude: ExcludeMatcher | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Initialize the watcher.

        Args:
            watch_path: Directory to watch.
            sink: Receives ChangeEvents (called on the observer thread).
            exclude: Matcher for ignored paths.
            observer_factory: Builds the watchdog observer (injectable for tests).
        """
        self._watch_path = Path(watch_path).resolve()
        self._handler = ChangeEventHandler(self._watch_path, sink, exclude)
        self._observer_factory = observer_factory
        self._observer: BaseObserver | None = None

    @property
    def watch_path(self) -> Path:
        return self._watch_path

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def is_alive(self) -> bool:
        """False once a started observer thread has died."""
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start watching.

        Raises:
            WatchRuntimeError: If the directory is missing or cannot be watched.
        """
        if self._observer is not None:
            return
        if not self._watch_path.is_dir():
            raise WatchRuntimeError(f"Watch path is not a directory: {self._watch_path}")

        observer = self._observer_factory()
        try:
            observer.schedule(self._handler, str(self._watch_path), recursive=True)
            observer.start()
        except OSError as e:
            raise WatchRuntimeError(f"Cannot watch {self._watch_path}: {e}") from e
        self._observer = observer
        logger.debug("Watching %s", self._watch_path)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching."""
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=timeout)

    def __enter__(self) -> SourceWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
