"""Shared types and dataclasses for sync operations.

This module provides:
- Fingerprint, EntryKind, ManifestEntry, Manifest: Scanner output
- ScanWarning: Non-fatal problems met during a scan
- ActionType, Action, SyncPlan: Planner output
- TaskOutcome, TransferTask, TransferFailure, ExecutionResult: Executor output
- ProgressUpdate: Progress callback payload
- split_path / join_path: Relative path helpers
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# Modification times closer than this are considered equal. Filesystems and
# object stores round timestamps differently.
MTIME_TOLERANCE = 1.0


def split_path(path: str) -> tuple[str, ...]:
    """Split a relative path into normalized segments.

    Backslashes are treated as separators, empty and "." segments are
    dropped.

    Raises:
        ValueError: If the path escapes its root with "..".
    """
    segments = tuple(
        part for part in path.replace("\\", "/").split("/") if part and part != "."
    )
    if ".." in segments:
        raise ValueError(f"Relative path must not contain '..': {path}")
    return segments


def join_path(segments: Iterable[str]) -> str:
    """Join segments back into a forward-slash relative path."""
    return "/".join(segments)


@dataclass(frozen=True)
class Fingerprint:
    """Comparable content signature of an entry.

    When both sides carry a checksum the checksums decide. Otherwise the
    size and modification time pair is compared.
    """

    size: int
    mtime: float
    checksum: str | None = None

    def matches(self, other: Fingerprint) -> bool:
        """Check whether two fingerprints describe the same content."""
        if self.size != other.size:
            return False
        if self.checksum and other.checksum:
            return self.checksum == other.checksum
        return abs(self.mtime - other.mtime) < MTIME_TOLERANCE


class EntryKind(str, Enum):
    """Kind of manifest entry."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class ManifestEntry:
    """One path in a manifest.

    Attributes:
        segments: Relative path as ordered segments (the sort key).
        size: Size in bytes.
        mtime: Last-modified timestamp (seconds since epoch).
        checksum: Content checksum (hex MD5) if known.
        kind: File or directory.
    """

    segments: tuple[str, ...]
    size: int
    mtime: float
    checksum: str | None = None
    kind: EntryKind = EntryKind.FILE

    @classmethod
    def create(
        cls,
        path: str,
        size: int,
        mtime: float,
        checksum: str | None = None,
        kind: EntryKind = EntryKind.FILE,
    ) -> ManifestEntry:
        """Build an entry from a slash-separated relative path."""
        segments = split_path(path)
        if not segments:
            raise ValueError("Manifest entries need a non-empty path")
        return cls(segments=segments, size=size, mtime=mtime, checksum=checksum, kind=kind)

    @property
    def path(self) -> str:
        """Forward-slash relative path."""
        return join_path(self.segments)

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(size=self.size, mtime=self.mtime, checksum=self.checksum)


class Manifest:
    """Sorted, duplicate-free collection of manifest entries.

    Entries are ordered by their path segments, which is the order the
    planner relies on for its merge-join.
    """

    def __init__(self, entries: Iterable[ManifestEntry] = ()) -> None:
        by_path: dict[tuple[str, ...], ManifestEntry] = {}
        for entry in entries:
            if entry.segments in by_path:
                logger.warning("Duplicate manifest entry ignored: %s", entry.path)
                continue
            by_path[entry.segments] = entry
        self._entries: tuple[ManifestEntry, ...] = tuple(
            by_path[key] for key in sorted(by_path)
        )
        self._index = by_path

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        return split_path(path) in self._index

    def __repr__(self) -> str:
        return f"Manifest({len(self._entries)} entries)"

    @property
    def entries(self) -> tuple[ManifestEntry, ...]:
        return self._entries

    def get(self, path: str) -> ManifestEntry | None:
        """Look up an entry by relative path."""
        return self._index.get(split_path(path))

    def paths(self) -> list[str]:
        """Relative paths in manifest order."""
        return [entry.path for entry in self._entries]

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self._entries if not entry.is_dir)

    def without(self, paths: Iterable[str]) -> Manifest:
        """Return a copy of this manifest with the given paths removed."""
        drop = {split_path(p) for p in paths}
        return Manifest(e for e in self._entries if e.segments not in drop)


@dataclass(frozen=True)
class ScanWarning:
    """Non-fatal problem met while scanning (permission denied, symlink)."""

    path: str
    reason: str


class ActionType(str, Enum):
    """What the executor does with one path."""

    UPLOAD = "upload"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class Action:
    """One planned operation.

    Attributes:
        action_type: Upload, Update, Delete or Skip.
        source: Contributing source entry (absent for destination-only paths).
        destination: Contributing destination entry (absent for new paths).
    """

    action_type: ActionType
    source: ManifestEntry | None = None
    destination: ManifestEntry | None = None

    def __post_init__(self) -> None:
        if self.source is None and self.destination is None:
            raise ValueError("Action needs at least one contributing entry")

    @property
    def entry(self) -> ManifestEntry:
        """The entry that names this action's path."""
        return self.source if self.source is not None else self.destination  # type: ignore[return-value]

    @property
    def path(self) -> str:
        return self.entry.path

    @property
    def size(self) -> int:
        return self.source.size if self.source is not None else 0


@dataclass(frozen=True)
class SyncPlan:
    """Ordered sequence of actions covering every path exactly once."""

    actions: tuple[Action, ...] = ()

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def paths(self) -> list[str]:
        return [action.path for action in self.actions]

    def of_type(self, action_type: ActionType) -> list[Action]:
        return [a for a in self.actions if a.action_type == action_type]

    def counts(self) -> dict[ActionType, int]:
        """Number of actions per type (every type present, possibly zero)."""
        counter = Counter(a.action_type for a in self.actions)
        return {t: counter.get(t, 0) for t in ActionType}

    @property
    def is_noop(self) -> bool:
        """True when the plan only contains Skip actions."""
        return all(a.action_type == ActionType.SKIP for a in self.actions)

    @property
    def transfer_bytes(self) -> int:
        return sum(
            a.size for a in self.actions
            if a.action_type in (ActionType.UPLOAD, ActionType.UPDATE)
        )


class TaskOutcome(str, Enum):
    """Terminal (or pending) result of a transfer task."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient-failure"
    PERMANENT_FAILURE = "permanent-failure"
    INTEGRITY_FAILURE = "integrity-failure"
    INTERRUPTED = "interrupted"


@dataclass
class TransferTask:
    """One action being executed, with its attempt counter and result."""

    action: Action
    attempts: int = 0
    outcome: TaskOutcome = TaskOutcome.PENDING
    error: str | None = None
    bytes_transferred: int = 0

    @property
    def path(self) -> str:
        return self.action.path

    @property
    def failed(self) -> bool:
        return self.outcome in (
            TaskOutcome.TRANSIENT_FAILURE,
            TaskOutcome.PERMANENT_FAILURE,
            TaskOutcome.INTEGRITY_FAILURE,
        )


@dataclass(frozen=True)
class TransferFailure:
    """Itemized failure entry reported to the user."""

    path: str
    reason: str


@dataclass
class ExecutionResult:
    """Aggregate outcome of executing a plan.

    Attributes:
        succeeded: Number of Upload/Update/Delete actions that completed.
        failed: Itemized failures ({path, reason}).
        skipped: Number of Skip actions.
        interrupted: Paths abandoned because of shutdown.
        bytes_transferred: Bytes written to the destination.
        source_deleted: Source paths removed after confirmed transfer.
        tasks: Per-action task records in plan order.
    """

    succeeded: int = 0
    failed: list[TransferFailure] = field(default_factory=list)
    skipped: int = 0
    interrupted: list[str] = field(default_factory=list)
    bytes_transferred: int = 0
    source_deleted: list[str] = field(default_factory=list)
    tasks: list[TransferTask] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when nothing failed and nothing was interrupted."""
        return not self.failed and not self.interrupted

    @property
    def files_transferred(self) -> int:
        return sum(
            1 for t in self.tasks
            if t.outcome == TaskOutcome.SUCCEEDED
            and t.action.action_type in (ActionType.UPLOAD, ActionType.UPDATE)
        )

    def task_for(self, path: str) -> TransferTask | None:
        for task in self.tasks:
            if task.path == path:
                return task
        return None

    def outcome_counts(self) -> dict[TaskOutcome, int]:
        """Number of tasks per outcome, omitting outcomes that did not occur."""
        counter = Counter(t.outcome for t in self.tasks)
        return {o: counter.get(o, 0) for o in TaskOutcome if counter.get(o)}


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress report for one action.

    Attributes:
        operation: Action type value ("upload", "update", "delete", "skip")
            or "delete-source".
        path: Relative path.
        bytes_done: Bytes transferred so far.
        bytes_total: Expected total bytes.
        error: Error message if the operation failed.
        finished: True for the last update of an action.
    """

    operation: str
    path: str
    bytes_done: int = 0
    bytes_total: int = 0
    error: str | None = None
    finished: bool = False
