"""
Exclude pattern matching.

Patterns are matched against slash separated paths relative to the source
root:

    "dir/"     the directory itself and everything below it
    "*.log"    ``*`` matches any characters except "/", ``**`` matches anything
    "a/b.txt"  exact literal path
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Callable, Iterable

ExcludeMatcher = Callable[[str], bool]


def normalize_pattern(value: object) -> str | None:
    """Clean up one pattern. Returns None for empty or non-string values."""
    if not isinstance(value, str):
        return None
    pattern = value.strip().replace("\\", "/")
    if pattern.startswith("./"):
        pattern = pattern[2:]
    return pattern or None


def normalize_excludes(excludes: Iterable[object] | None) -> list[str]:
    """Normalize a list of patterns, dropping empty entries."""
    if not excludes:
        return []
    return [p for p in (normalize_pattern(value) for value in excludes) if p]


def normalize_rel_path(value: str) -> str:
    """Normalize a relative path for matching: forward slashes, no "./"."""
    path = posixpath.normpath(value.replace("\\", "/"))
    if path == ".":
        return ""
    if path.startswith("./"):
        path = path[2:]
    return path


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a glob pattern into an anchored regular expression."""
    parts = []
    for index, chunk in enumerate(pattern.split("**")):
        if index:
            parts.append(".*")
        parts.append("[^/]*".join(re.escape(piece) for piece in chunk.split("*")))
    return re.compile("^" + "".join(parts) + "$")


def _build_rule(pattern: str) -> ExcludeMatcher:
    if pattern.endswith("/"):
        prefix = pattern.rstrip("/")
        return lambda path: path == prefix or path.startswith(prefix + "/")
    if "*" in pattern:
        regex = glob_to_regex(pattern)
        return lambda path: regex.match(path) is not None
    return lambda path: path == pattern


def build_exclude_matcher(excludes: Iterable[object] | None) -> ExcludeMatcher | None:
    """
    Build a predicate telling whether a relative path is excluded.

    Returns None when there are no usable patterns, so callers can skip the
    check entirely.
    """
    patterns = normalize_excludes(excludes)
    if not patterns:
        return None
    rules = [_build_rule(pattern) for pattern in patterns]

    def is_excluded(rel_path: str) -> bool:
        path = normalize_rel_path(rel_path)
        return any(rule(path) for rule in rules)

    return is_excluded
