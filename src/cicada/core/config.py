"""Resolved configuration values consumed by the sync engine and watches.

These are constructed once (by the CLI or by a caller embedding cicada)
and passed to each component at construction time. Nothing in the core
reads configuration files or environment variables.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cicada.core.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Callable

    from cicada.sync.types import ProgressUpdate

DEFAULT_CONCURRENCY = 4
DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_MIN_AGE_SECONDS = 10.0

# Applied by the CLI when the user gives no --exclude of their own
DEFAULT_EXCLUDE_PATTERNS = [".git/**", ".DS_Store", "*.tmp", "*.swp"]


def validate_exclude_patterns(patterns: list[str], owner: str = "sync") -> None:
    """Compile every exclude pattern once.

    Raises:
        ConfigError: If a pattern is empty or not a string.
    """
    if not patterns:
        return
    from cicada.sync.exclude import ExcludePattern

    for pattern in patterns:
        try:
            ExcludePattern(pattern)
        except (TypeError, ValueError, re.error) as e:
            raise ConfigError(f"{owner}: invalid exclude pattern {pattern!r}: {e}") from e


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy for transient transfer failures.

    Attributes:
        max_attempts: Total attempts per task, including the first one.
        base_delay: Delay in seconds before the second attempt.
        multiplier: Factor applied to the delay after every failed attempt.
        max_delay: Upper bound for a single delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.multiplier < 1:
            raise ConfigError(f"multiplier must be >= 1, got {self.multiplier}")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class S3Settings:
    """Connection settings for S3-compatible object storage.

    Attributes:
        region: AWS region (None lets boto3 resolve it).
        endpoint_url: Custom endpoint (MinIO, OVH, ...).
        profile: Named profile from the shared credentials file.
        list_workers: Parallel listing batches per scan.
        multipart_threshold: Bodies above this size use multipart uploads.
    """

    region: str | None = None
    endpoint_url: str | None = None
    profile: str | None = None
    list_workers: int = 4
    multipart_threshold: int = 64 * 1024 * 1024


@dataclass
class SyncOptions:
    """Options for a single sync pass.

    Attributes:
        dry_run: Compute and report the plan without executing it.
        delete: Mirror mode; delete destination-only entries.
        concurrency: Size of the worker pool (>= 1).
        exclude: Glob-style exclude patterns.
        checksums: Compute content checksums for local trees.
        min_age_seconds: Defer source files modified more recently than this.
        retry: Retry policy for transient failures.
        progress: Optional callback receiving ProgressUpdate objects.
    """

    dry_run: bool = False
    delete: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    exclude: list[str] = field(default_factory=list)
    checksums: bool = True
    min_age_seconds: float = 0.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    progress: Callable[[ProgressUpdate], None] | None = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.min_age_seconds < 0:
            raise ConfigError("min_age_seconds must be >= 0")
        self.exclude = list(self.exclude)
        validate_exclude_patterns(self.exclude)


@dataclass
class WatchConfig:
    """Persistent definition of one watch.

    Attributes:
        id: Unique identifier.
        source: Local directory to watch.
        destination: Destination location (local path or s3:// URI).
        debounce_seconds: Quiet period after the last event before syncing.
        min_age_seconds: Minimum file age before a file may be transferred.
        delete_source: Remove source files once confirmed at destination.
        sync_on_start: Run a pass immediately when the watch starts.
        exclude: Per-watch exclude patterns.
        enabled: Whether the watch should be running.
    """

    id: str
    source: str
    destination: str
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    min_age_seconds: float = DEFAULT_MIN_AGE_SECONDS
    delete_source: bool = False
    sync_on_start: bool = True
    exclude: list[str] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ConfigError("watch id must not be empty")
        if not self.source:
            raise ConfigError(f"watch {self.id}: source must not be empty")
        if not self.destination:
            raise ConfigError(f"watch {self.id}: destination must not be empty")
        if "://" in self.source:
            raise ConfigError(f"watch {self.id}: source must be a local directory")
        if self.debounce_seconds < 0:
            raise ConfigError(f"watch {self.id}: debounce_seconds must be >= 0")
        if self.min_age_seconds < 0:
            raise ConfigError(f"watch {self.id}: min_age_seconds must be >= 0")
        self.exclude = list(self.exclude)
        validate_exclude_patterns(self.exclude, owner=f"watch {self.id}")

    @property
    def source_path(self) -> str:
        """Absolute, normalized source directory."""
        return os.path.abspath(os.path.expanduser(self.source))
