"""Tests for exclude pattern matching."""

from pathlib import Path

import pytest

from cicada.sync.exclude import ExcludeMatcher, ExcludePattern


class TestExcludePattern:
    """Tests for a single compiled pattern."""

    def test_empty_pattern_rejected(self) -> None:
        """Empty and slash-only patterns should raise ValueError."""
        with pytest.raises(ValueError):
            ExcludePattern("")
        with pytest.raises(ValueError):
            ExcludePattern("/")

    def test_star_stays_inside_segment(self) -> None:
        """* should not cross a path separator."""
        pattern = ExcludePattern("docs/*.md")
        assert pattern.matches(("docs", "a.md"), is_dir=False)
        assert not pattern.matches(("docs", "sub", "a.md"), is_dir=False)

    def test_question_mark_and_class(self) -> None:
        """? and [...] should behave as in shell globs."""
        pattern = ExcludePattern("log[0-9].?")
        assert pattern.matches(("log1.a",), is_dir=False)
        assert not pattern.matches(("logx.a",), is_dir=False)
        assert not pattern.matches(("log1.ab",), is_dir=False)

    def test_dir_only_pattern(self) -> None:
        """A trailing slash should restrict the pattern to directories."""
        pattern = ExcludePattern("build/")
        assert pattern.dir_only
        assert pattern.matches(("build",), is_dir=True)
        assert not pattern.matches(("build",), is_dir=False)

    def test_double_star_in_middle(self) -> None:
        """** between segments should match zero or more segments."""
        pattern = ExcludePattern("/src/**/cache")
        assert pattern.matches(("src", "cache"), is_dir=True)
        assert pattern.matches(("src", "a", "b", "cache"), is_dir=True)
        assert not pattern.matches(("lib", "cache"), is_dir=True)


class TestExcludeMatcher:
    """Tests for ExcludeMatcher."""

    def test_no_patterns_excludes_nothing(self) -> None:
        """An empty matcher should never exclude."""
        matcher = ExcludeMatcher()
        assert not matcher
        assert not matcher.matches("anything.tmp")
        assert not matcher.is_excluded("a/b/c")

    def test_extension_matches_at_any_depth(self) -> None:
        """*.tmp should match at the root and in subdirectories."""
        matcher = ExcludeMatcher(["*.tmp"])
        assert matcher.matches("a.tmp")
        assert matcher.matches("a/b/c.tmp")

    def test_extension_does_not_match_longer_suffix(self) -> None:
        """*.tmp should not match a.tmpx."""
        matcher = ExcludeMatcher(["*.tmp"])
        assert not matcher.matches("a.tmpx")
        assert not matcher.matches("dir/a.tmpx")

    def test_git_directory_excluded_everywhere(self) -> None:
        """.git/** should match everything under any .git directory."""
        matcher = ExcludeMatcher([".git/**"])
        assert matcher.matches(".git/config")
        assert matcher.matches("vendor/lib/.git/objects/ab/cdef")
        assert not matcher.matches("src/main.py")

    def test_git_directory_itself_is_pruned(self) -> None:
        """.git/** should match the .git directory so it is pruned before descent."""
        matcher = ExcludeMatcher([".git/**"])
        assert matcher.matches(".git", is_dir=True)
        assert matcher.matches("sub/.git", is_dir=True)

    def test_anchored_pattern_matches_root_only(self) -> None:
        """A leading slash should anchor the pattern at the tree root."""
        matcher = ExcludeMatcher(["/build"])
        assert matcher.matches("build", is_dir=True)
        assert not matcher.matches("src/build", is_dir=True)

    def test_unanchored_pattern_matches_any_depth(self) -> None:
        """Without a leading slash a multi-segment pattern floats."""
        matcher = ExcludeMatcher(["cache/data"])
        assert matcher.matches("cache/data")
        assert matcher.matches("a/cache/data")

    def test_accepts_segments(self) -> None:
        """matches() should accept a tuple of segments as well as a string."""
        matcher = ExcludeMatcher(["*.log"])
        assert matcher.matches(("var", "app.log"))

    def test_backslashes_treated_as_separators(self) -> None:
        """Windows-style separators should be normalized."""
        matcher = ExcludeMatcher(["*.tmp"])
        assert matcher.matches("a\\b\\c.tmp")

    def test_is_excluded_checks_ancestors(self) -> None:
        """is_excluded() should exclude files below an excluded directory."""
        matcher = ExcludeMatcher(["node_modules/"])
        assert not matcher.matches("node_modules/pkg/index.js")
        assert matcher.is_excluded("node_modules/pkg/index.js")
        assert not matcher.is_excluded("src/index.js")

    def test_patterns_preserved_in_order(self) -> None:
        """patterns should list the original strings in insertion order."""
        matcher = ExcludeMatcher(["*.tmp"])
        matcher.add_pattern(".git/**")
        assert matcher.patterns == ["*.tmp", ".git/**"]

    def test_load_from_file(self, tmp_path: Path) -> None:
        """load_from_file() should skip comments and blank lines."""
        exclude_file = tmp_path / "excludes"
        exclude_file.write_text("# editor files\n*.swp\n\n  .DS_Store  \n")

        matcher = ExcludeMatcher()
        matcher.load_from_file(exclude_file)

        assert matcher.patterns == ["*.swp", ".DS_Store"]
        assert matcher.matches("a/.notes.swp")

    def test_load_from_missing_file(self, tmp_path: Path) -> None:
        """A missing exclude file should be ignored."""
        matcher = ExcludeMatcher()
        matcher.load_from_file(tmp_path / "missing")
        assert matcher.patterns == []
