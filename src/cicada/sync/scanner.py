"""Path scanner producing sorted, exclude-pruned manifests.

This module provides:
- PathScanner: Enumerates a backend root into a Manifest
- ScanResult: Manifest plus non-fatal scan warnings

Local trees are walked directly so excluded directories are pruned before
descent. Object-store prefixes are listed through the backend (possibly in
parallel batches), filtered, then re-sorted into canonical order.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from cicada.core.errors import ScanError, TransferError
from cicada.sync.backend import is_partial_name
from cicada.sync.exclude import ExcludeMatcher
from cicada.sync.types import Manifest, ManifestEntry, ScanWarning

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cicada.sync.backend import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Result of scanning one root."""

    manifest: Manifest
    warnings: list[ScanWarning] = field(default_factory=list)


class PathScanner:
    """Enumerates a backend root into a deterministic manifest.

    Usage:
        scanner = PathScanner(["*.tmp", ".git/**"])
        result = scanner.scan(backend)
        for entry in result.manifest:
            ...
    """

    def __init__(self, exclude: ExcludeMatcher | Iterable[str] | None = None) -> None:
        """Initialize the scanner.

        Args:
            exclude: Matcher or pattern strings applied to every scan.
        """
        if isinstance(exclude, ExcludeMatcher):
            self._exclude = exclude
        else:
            self._exclude = ExcludeMatcher(exclude)

    @property
    def exclude(self) -> ExcludeMatcher:
        return self._exclude

    def scan(self, backend: StorageBackend, missing_ok: bool = False) -> ScanResult:
        """Scan a backend root.

        Args:
            backend: Backend to enumerate.
            missing_ok: Treat a missing local root as an empty tree
                (destinations are created on first write).

        Raises:
            ScanError: With fatal=True if the root cannot be enumerated at all.
        """
        root = backend.walk_root
        if root is not None and missing_ok and not root.exists():
            logger.debug("Root %s does not exist yet", root)
            result = ScanResult(manifest=Manifest())
        elif root is not None:
            result = self._scan_directory(backend, root)
        else:
            result = self._scan_listing(backend)
        logger.debug(
            "Scanned %s: %d entries, %d warnings",
            backend.location, len(result.manifest), len(result.warnings),
        )
        return result

    def _scan_directory(self, backend: StorageBackend, root: Path) -> ScanResult:
        """Walk a local tree, pruning excluded subtrees before descent."""
        if not root.is_dir():
            raise ScanError(f"Not a directory: {root}", path=str(root), fatal=True)
        if not os.access(root, os.R_OK | os.X_OK):
            raise ScanError(f"Permission denied: {root}", path=str(root), fatal=True)

        entries: list[ManifestEntry] = []
        warnings: list[ScanWarning] = []

        def on_error(error: OSError) -> None:
            rel = _relative(root, error.filename) if error.filename else ""
            logger.warning("Cannot scan %s: %s", rel or root, error.strerror or error)
            warnings.append(ScanWarning(path=rel, reason=error.strerror or str(error)))

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            current = Path(dirpath)
            rel_dir = current.relative_to(root).parts

            kept: list[str] = []
            for name in sorted(dirnames):
                segments = (*rel_dir, name)
                if (current / name).is_symlink():
                    self._warn_symlink(warnings, segments)
                    continue
                if self._exclude.matches(segments, is_dir=True):
                    logger.debug("Pruned excluded directory: %s", "/".join(segments))
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in filenames:
                segments = (*rel_dir, name)
                file_path = current / name
                if file_path.is_symlink():
                    self._warn_symlink(warnings, segments)
                    continue
                if self._exclude.matches(segments, is_dir=False):
                    continue
                if is_partial_name(name):
                    continue

                rel = "/".join(segments)
                try:
                    st = file_path.stat()
                    if not _is_regular(st):
                        continue
                    entries.append(backend.describe(rel, st))
                except FileNotFoundError:
                    # Deleted between listing and stat
                    continue
                except OSError as e:
                    logger.warning("Cannot read %s: %s", rel, e.strerror or e)
                    warnings.append(ScanWarning(path=rel, reason=e.strerror or str(e)))

        return ScanResult(manifest=Manifest(entries), warnings=warnings)

    def _scan_listing(self, backend: StorageBackend) -> ScanResult:
        """List an object-store prefix, then filter and re-sort."""
        warnings: list[ScanWarning] = []
        try:
            listed = backend.list(warnings=warnings)
        except TransferError as e:
            raise ScanError(
                f"Cannot list {backend.location}: {e}", path=backend.location, fatal=True,
            ) from e

        entries = [
            entry for entry in listed
            if not self._exclude.is_excluded(entry.segments, is_dir=entry.is_dir)
        ]
        # Batches arrive in completion order; Manifest re-sorts them
        return ScanResult(manifest=Manifest(entries), warnings=warnings)

    @staticmethod
    def _warn_symlink(warnings: list[ScanWarning], segments: tuple[str, ...]) -> None:
        rel = "/".join(segments)
        logger.warning("Skipping symbolic link: %s", rel)
        warnings.append(ScanWarning(path=rel, reason="symbolic link not followed"))


def _relative(root: Path, filename: str) -> str:
    try:
        return "/".join(Path(filename).relative_to(root).parts)
    except ValueError:
        return filename


def _is_regular(st: os.stat_result) -> bool:
    return stat.S_ISREG(st.st_mode)
