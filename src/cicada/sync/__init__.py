"""Sync engine for one-shot and watch-triggered passes.

Architecture:
    PathScanner(source) + PathScanner(destination) → plan() → TransferExecutor

Components:
- **ExcludeMatcher**: Glob-style exclude patterns with ``**`` and anchoring
- **StorageBackend**: List/Stat/Get/Put/Delete over a local tree or S3 prefix
- **PathScanner**: Enumerates a root into a sorted, exclude-pruned Manifest
- **plan**: Merge-joins two manifests into a SyncPlan
- **TransferExecutor**: Runs a plan on a WorkerPool with retry and verification
- **SyncEngine**: Ties the above into one pass and returns a SyncReport
"""

from cicada.core.errors import (
    IntegrityError,
    PermanentTransferError,
    ScanError,
    TransferError,
    TransientTransferError,
)
from cicada.sync.backend import (
    LocalBackend,
    S3Backend,
    StorageBackend,
    create_backend,
    parse_s3_uri,
)
from cicada.sync.engine import SyncEngine, SyncReport
from cicada.sync.exclude import ExcludeMatcher, ExcludePattern
from cicada.sync.executor import TransferExecutor
from cicada.sync.planner import plan
from cicada.sync.pool import PoolState, WorkerPool
from cicada.sync.retry import classify_error, retry_with_backoff
from cicada.sync.scanner import PathScanner, ScanResult
from cicada.sync.types import (
    Action,
    ActionType,
    EntryKind,
    ExecutionResult,
    Fingerprint,
    Manifest,
    ManifestEntry,
    ProgressUpdate,
    ScanWarning,
    SyncPlan,
    TaskOutcome,
    TransferFailure,
    TransferTask,
)

__all__ = [
    # Backends
    "LocalBackend",
    "S3Backend",
    "StorageBackend",
    "create_backend",
    "parse_s3_uri",
    # Pipeline
    "ExcludeMatcher",
    "ExcludePattern",
    "PathScanner",
    "ScanResult",
    "SyncEngine",
    "SyncReport",
    "TransferExecutor",
    "plan",
    # Workers and retry
    "PoolState",
    "WorkerPool",
    "classify_error",
    "retry_with_backoff",
    # Errors
    "IntegrityError",
    "PermanentTransferError",
    "ScanError",
    "TransferError",
    "TransientTransferError",
    # Types
    "Action",
    "ActionType",
    "EntryKind",
    "ExecutionResult",
    "Fingerprint",
    "Manifest",
    "ManifestEntry",
    "ProgressUpdate",
    "ScanWarning",
    "SyncPlan",
    "TaskOutcome",
    "TransferFailure",
    "TransferTask",
]
