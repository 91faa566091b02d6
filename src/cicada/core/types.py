"""Shared types for cicada.

This module defines enums used by both the watch coordinator and the registry.
"""

from __future__ import annotations

from enum import Enum


class WatchPhase(str, Enum):
    """Lifecycle state of a single watch.

    Used by the coordinator (which drives transitions) and by the
    registry (which reports them).
    """

    IDLE = "idle"
    DEBOUNCING = "debouncing"
    WAITING_MIN_AGE = "waiting_min_age"
    SYNCING = "syncing"
    DISABLED = "disabled"
    ERRORED = "errored"
    STOPPED = "stopped"
