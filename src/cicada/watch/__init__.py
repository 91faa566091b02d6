"""Watch subsystem: continuous sync driven by filesystem events.

Architecture:
    SourceWatcher → WatchCoordinator (debounce / min-age) → SyncEngine
    WatchRegistry supervises coordinators and persists state in WatchStore
"""

from cicada.watch.coordinator import WatchCoordinator
from cicada.watch.registry import WatchRegistry, WatchStatus, check_overlap
from cicada.watch.store import WatchStats, WatchStore
from cicada.watch.watcher import ChangeEvent, ChangeEventHandler, ChangeType, SourceWatcher

__all__ = [
    "ChangeEvent",
    "ChangeEventHandler",
    "ChangeType",
    "SourceWatcher",
    "WatchCoordinator",
    "WatchRegistry",
    "WatchStats",
    "WatchStatus",
    "WatchStore",
    "check_overlap",
]
