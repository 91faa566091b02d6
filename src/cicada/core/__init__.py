"""Core module - Shared configuration values, errors and enums."""

from cicada.core.config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_MIN_AGE_SECONDS,
    RetryPolicy,
    S3Settings,
    SyncOptions,
    WatchConfig,
)
from cicada.core.errors import (
    CicadaError,
    ConfigError,
    IntegrityError,
    PermanentTransferError,
    PoolShutdownError,
    ScanError,
    TransferError,
    TransientTransferError,
    WatchRuntimeError,
)
from cicada.core.types import WatchPhase

__all__ = [
    # Config
    "DEFAULT_CONCURRENCY",
    "DEFAULT_DEBOUNCE_SECONDS",
    "DEFAULT_EXCLUDE_PATTERNS",
    "DEFAULT_MIN_AGE_SECONDS",
    "RetryPolicy",
    "S3Settings",
    "SyncOptions",
    "WatchConfig",
    # Errors
    "CicadaError",
    "ConfigError",
    "IntegrityError",
    "PermanentTransferError",
    "PoolShutdownError",
    "ScanError",
    "TransferError",
    "TransientTransferError",
    "WatchRuntimeError",
    # Types
    "WatchPhase",
]
