"""
Path Pattern Resolution
=======================

Turns the newline-separated ``path`` input into concrete absolute paths.

Patterns support ``**`` recursive globs, ``~`` expansion and ``!pattern``
exclusions. Paths are returned de-duplicated in first-seen order.
"""

import glob
import logging
import os
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


def parse_multiline(value: Optional[str]) -> List[str]:
    """Split a multi-line action input into non-empty, stripped lines."""
    if not value:
        return []
    return [line.strip() for line in value.splitlines() if line.strip()]


def _expand(pattern: str, cwd: str) -> List[str]:
    expanded = os.path.expanduser(pattern)
    if not os.path.isabs(expanded):
        expanded = os.path.join(cwd, expanded)
    if glob.has_magic(expanded):
        matches = sorted(glob.glob(expanded, recursive=True))
    else:
        matches = [expanded] if os.path.lexists(expanded) else []
    return [os.path.normpath(match) for match in matches]


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve_path_patterns(patterns: Iterable[str], cwd: Optional[str] = None) -> List[str]:
    """
    Resolve include and ``!`` exclude patterns to absolute paths.

    Args:
        patterns: Glob patterns, one per entry
        cwd: Directory relative patterns are resolved against (default: os.getcwd())

    Returns:
        Matching absolute paths, excluded paths and anything beneath them removed
    """
    cwd = os.path.abspath(cwd or os.getcwd())
    included: List[str] = []
    excluded: List[str] = []

    for raw in patterns:
        pattern = raw.strip()
        if not pattern or pattern.startswith("#"):
            continue
        negate = pattern.startswith("!")
        if negate:
            pattern = pattern[1:].strip()
        try:
            matches = _expand(pattern, cwd)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to resolve path pattern '{raw}': {e}")
            continue

        logger.debug(f"Pattern '{raw}' matched {len(matches)} paths")
        (excluded if negate else included).extend(matches)

    seen = set()
    resolved = []
    for path in included:
        if path in seen or any(_is_within(path, root) for root in excluded):
            continue
        seen.add(path)
        resolved.append(path)
    return resolved


def validate_paths(paths: Iterable[str]) -> List[str]:
    """Keep only paths that exist; dangling symlinks are dropped."""
    valid = []
    for path in paths:
        if os.path.exists(path):
            valid.append(path)
        elif os.path.islink(path):
            logger.debug(f"Dropping dangling symlink: {path}")
        else:
            logger.debug(f"Dropping missing path: {path}")
    return valid
