"""Exception hierarchy shared by the sync engine and the watch subsystem.

This module provides:
- CicadaError: Base class for every error raised by cicada
- ConfigError: Invalid options, duplicate watch ids, overlapping watches
- ScanError: Enumeration failures (fatal for unreachable roots)
- TransferError and its Transient/Permanent/Integrity variants
- WatchRuntimeError: Failures fatal to a single watch
- PoolShutdownError: Work submitted to a stopping worker pool
"""

from __future__ import annotations


class CicadaError(Exception):
    """Base exception for cicada errors."""


class ConfigError(CicadaError):
    """Invalid configuration value or conflicting watch definitions."""


class ScanError(CicadaError):
    """Failed to enumerate a tree.

    Attributes:
        path: Relative path (or location) that failed.
        fatal: True when nothing could be listed at all (e.g. root unreachable).
    """

    def __init__(self, message: str, path: str = "", fatal: bool = False) -> None:
        self.path = path
        self.fatal = fatal
        super().__init__(message)


class TransferError(CicadaError):
    """Base class for failures while moving a single entry."""

    #: Whether the executor may retry the operation.
    retryable = False

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class TransientTransferError(TransferError):
    """Timeouts, 5xx responses, throttling. Retried with backoff."""

    retryable = True


class PermanentTransferError(TransferError):
    """Access denied, invalid path, missing bucket. Never retried."""


class IntegrityError(TransferError):
    """Destination size/checksum does not match the source after a transfer."""


class WatchRuntimeError(CicadaError):
    """Event source lost or destination unreachable; fatal to one watch only."""


class PoolShutdownError(CicadaError):
    """Raised when work is submitted to, or abandoned by, a stopping pool."""
