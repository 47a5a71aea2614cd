"""
Cache key scoping.

Every key written to the store is prefixed with the repository so one store
can serve many repositories without collisions.
"""

import os
from typing import Optional

SCOPE_SEPARATOR = ":"
_MATCH_SPECIAL = "\\*?[]"


def default_repository() -> str:
    return os.environ.get("GITHUB_REPOSITORY") or "unknown"


def scope_key(key: str, repository: Optional[str] = None) -> str:
    """Prefix key with its repository scope: "owner/repo:key"."""
    return f"{repository or default_repository()}{SCOPE_SEPARATOR}{key}"


def unscope_key(scoped: str) -> str:
    """Strip the repository scope (everything up to the first ':')."""
    _, separator, key = scoped.partition(SCOPE_SEPARATOR)
    return key if separator else scoped


def escape_match(value: str) -> str:
    """Escape Redis MATCH glob metacharacters."""
    return "".join(f"\\{char}" if char in _MATCH_SPECIAL else char for char in value)


def restore_pattern(restore_key: str, repository: Optional[str] = None) -> str:
    """
    Build the SCAN MATCH pattern for a restore-key prefix.

    The scoped key is matched literally and a trailing "*" is appended; a
    restore key that already ends in "*" keeps it as its only wildcard.
    """
    prefix = restore_key[:-1] if restore_key.endswith("*") else restore_key
    return escape_match(scope_key(prefix, repository)) + "*"
