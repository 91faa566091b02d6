"""Exclude patterns for file synchronization.

This module provides:
- ExcludePattern: One compiled glob-style pattern
- ExcludeMatcher: Tests relative paths against a list of patterns

Pattern grammar:
- Literal segments, ``*`` (any run inside one segment), ``?`` and ``[...]``
  classes as in shell globs, ``**`` (zero or more whole segments).
- Patterns match at any depth unless they start with ``/``; ``*.tmp``
  matches ``a/b/c.tmp`` and ``.git/**`` matches everything under any
  ``.git`` directory.
- A trailing ``/`` restricts the pattern to directories.
- Any single match excludes. There is no negation.
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable, Sequence
from functools import lru_cache
from pathlib import Path

from cicada.sync.types import split_path

_DOUBLE_STAR = "**"


class ExcludePattern:
    """A compiled glob-style exclude pattern."""

    def __init__(self, pattern: str) -> None:
        """Compile a pattern.

        Args:
            pattern: Glob-style pattern string.

        Raises:
            TypeError: If the pattern is not a string.
            ValueError: If the pattern is empty.
        """
        if not isinstance(pattern, str):
            raise TypeError(f"Exclude pattern must be a string, got {type(pattern).__name__}")
        raw = pattern.strip().replace("\\", "/")
        parts = [p for p in raw.strip("/").split("/") if p]
        if not parts:
            raise ValueError("Exclude pattern must not be empty")

        self.pattern = pattern
        self.dir_only = raw.endswith("/")
        self.anchored = raw.startswith("/")

        if not self.anchored and parts[0] != _DOUBLE_STAR:
            parts.insert(0, _DOUBLE_STAR)

        # Collapse runs of ** which are equivalent to a single one
        collapsed: list[str] = []
        for part in parts:
            if part == _DOUBLE_STAR and collapsed and collapsed[-1] == _DOUBLE_STAR:
                continue
            collapsed.append(part)

        self._segments: tuple[re.Pattern[str] | None, ...] = tuple(
            None if part == _DOUBLE_STAR else re.compile(fnmatch.translate(part))
            for part in collapsed
        )

    def __repr__(self) -> str:
        return f"ExcludePattern({self.pattern!r})"

    def matches(self, segments: Sequence[str], is_dir: bool) -> bool:
        """Check a path (given as segments) against this pattern."""
        if self.dir_only and not is_dir:
            return False
        return _match_segments(self._segments, tuple(segments))


def _match_segments(
    pattern: tuple[re.Pattern[str] | None, ...],
    path: tuple[str, ...],
) -> bool:
    """Match path segments against compiled pattern segments."""

    @lru_cache(maxsize=None)
    def match(i: int, j: int) -> bool:
        if i == len(pattern):
            return j == len(path)
        segment = pattern[i]
        if segment is None:
            # ** consumes zero or more whole segments
            return any(match(i + 1, k) for k in range(j, len(path) + 1))
        if j == len(path):
            return False
        return segment.match(path[j]) is not None and match(i + 1, j + 1)

    return match(0, 0)


class ExcludeMatcher:
    """Handles exclude pattern matching for relative paths."""

    def __init__(self, patterns: Iterable[str] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: Glob-style pattern strings.
        """
        self._patterns: list[ExcludePattern] = []
        for pattern in patterns or ():
            self.add_pattern(pattern)

    def __bool__(self) -> bool:
        return bool(self._patterns)

    @property
    def patterns(self) -> list[str]:
        """Pattern strings in the order they were added."""
        return [p.pattern for p in self._patterns]

    def add_pattern(self, pattern: str) -> None:
        """Add an exclude pattern."""
        self._patterns.append(ExcludePattern(pattern))

    def load_from_file(self, path: Path) -> None:
        """Load patterns from a file, one per line."""
        if path.exists():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    # Skip comments and empty lines
                    if line and not line.startswith("#"):
                        self.add_pattern(line)

    def matches(self, relative_path: str | Sequence[str], is_dir: bool = False) -> bool:
        """Check whether a relative path itself matches any pattern.

        Args:
            relative_path: Slash-separated path or path segments.
            is_dir: Whether the path names a directory.

        Returns:
            True if the path should be excluded.
        """
        segments = (
            split_path(relative_path) if isinstance(relative_path, str)
            else tuple(relative_path)
        )
        if not segments:
            return False
        return any(p.matches(segments, is_dir) for p in self._patterns)

    def is_excluded(self, relative_path: str | Sequence[str], is_dir: bool = False) -> bool:
        """Check a path and every ancestor directory.

        Used where pruning during descent is not possible (object-store
        listings, filesystem events): a path is excluded when it matches or
        when any of its parent directories would have been pruned.
        """
        segments = (
            split_path(relative_path) if isinstance(relative_path, str)
            else tuple(relative_path)
        )
        if not self._patterns or not segments:
            return False
        for depth in range(1, len(segments)):
            if self.matches(segments[:depth], is_dir=True):
                return True
        return self.matches(segments, is_dir=is_dir)
