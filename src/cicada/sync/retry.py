"""Retry logic with exponential backoff.

This module provides:
- classify_error: Map any exception onto the transfer error taxonomy
- translate_os_error: Map OSError subclasses onto the taxonomy
- retry_with_backoff: Run a callable under a RetryPolicy
"""

from __future__ import annotations

import errno
import logging
import time
from collections.abc import Callable
from typing import TypeVar

from cicada.core.config import RetryPolicy
from cicada.core.errors import (
    PermanentTransferError,
    TransferError,
    TransientTransferError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)

# errno values worth retrying on local and network filesystems
TRANSIENT_ERRNOS = frozenset({
    errno.EAGAIN,
    errno.EBUSY,
    errno.EINTR,
    errno.EIO,
    errno.ETIMEDOUT,
    errno.ESTALE,
    errno.ENETDOWN,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
})


def translate_os_error(exc: OSError, path: str = "") -> TransferError:
    """Translate an OSError into a transient or permanent transfer error.

    Args:
        exc: The original error.
        path: Relative path the operation was working on.

    Returns:
        TransientTransferError for timeouts and retryable errno values,
        PermanentTransferError otherwise.
    """
    message = exc.strerror or str(exc)
    if isinstance(exc, NETWORK_EXCEPTIONS) or exc.errno in TRANSIENT_ERRNOS:
        return TransientTransferError(message, path=path)
    return PermanentTransferError(message, path=path)


def classify_error(exc: BaseException, path: str = "") -> TransferError:
    """Map any exception onto the transfer error taxonomy.

    Errors already in the taxonomy are returned unchanged. Unknown
    exceptions are treated as permanent so they are never retried blindly.
    """
    if isinstance(exc, TransferError):
        if not exc.path:
            exc.path = path
        return exc
    if isinstance(exc, OSError):
        return translate_os_error(exc, path)
    return PermanentTransferError(f"{type(exc).__name__}: {exc}", path=path)


def retry_with_backoff(
    func: Callable[[], T],
    policy: RetryPolicy,
    path: str = "",
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int], None] | None = None,
    should_continue: Callable[[], bool] | None = None,
) -> T:
    """Execute a function with exponential backoff retry.

    Only transient errors are retried. Permanent errors propagate on the
    first occurrence.

    Args:
        func: Function to execute.
        policy: Attempt budget and delays.
        path: Path used in log messages and attached to errors.
        sleep: Sleep function (injectable for tests).
        on_attempt: Called with the 1-based attempt number before each try.
        should_continue: Checked before each retry; returning False stops
            retrying and re-raises the last error.

    Returns:
        Result of the function.

    Raises:
        TransferError: The last classified error if all attempts fail.
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt:
            on_attempt(attempt)
        try:
            return func()
        except Exception as e:
            error = classify_error(e, path)
            if not error.retryable or attempt >= policy.max_attempts:
                if error.retryable:
                    logger.error(
                        "All %d attempts failed for %s: %s",
                        policy.max_attempts, path, error,
                    )
                raise error from (None if error is e else e)

            if should_continue is not None and not should_continue():
                raise error from (None if error is e else e)

            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt %d/%d failed for %s: %s. Retrying in %.1fs...",
                attempt, policy.max_attempts, path, error, delay,
            )
            sleep(delay)
