"""
In-memory store backend for tests and local dry runs.
"""

import logging
import re
import time
from typing import Dict, List, Optional, Pattern, Tuple

from ..error_handling import CacheStoreError
from .base import StoreBackend

logger = logging.getLogger(__name__)


def compile_match_pattern(pattern: str) -> Pattern:
    """Compile a Redis MATCH glob (``*``, ``?``, ``[...]``, backslash escapes) to a regex."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[":
            end = pattern.find("]", i + 2)
            if end != -1:
                body = pattern[i + 1:end].replace("\\", "\\\\")
                parts.append(f"[{body}]")
                i = end + 1
                continue
            parts.append(re.escape(char))
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


class InMemoryStore(StoreBackend):
    """
    Dict-backed store with TTL expiry.

    MATCH patterns follow the Redis glob rules. Data survives close(); it is
    lost with the object.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[bytes, float]] = {}
        logger.debug("InMemoryStore initialized")

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (_, expires) in self._data.items() if expires <= now]:
            del self._data[key]

    def get(self, key: str) -> Optional[bytes]:
        self._purge_expired()
        entry = self._data.get(key)
        return entry[0] if entry else None

    def set_with_expiry(self, key: str, data: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise CacheStoreError(f"TTL must be positive, got {ttl_seconds}", {"key": key})
        self._data[key] = (bytes(data), time.monotonic() + ttl_seconds)
        logger.debug(f"Stored {key} ({len(data)} bytes, ttl={ttl_seconds}s)")

    def exists(self, key: str) -> bool:
        self._purge_expired()
        return key in self._data

    def scan_by_prefix(self, pattern: str) -> List[str]:
        self._purge_expired()
        regex = compile_match_pattern(pattern)
        return [key for key in self._data if regex.match(key)]

    def clear(self) -> int:
        """Remove every key. Returns count of keys cleared."""
        count = len(self._data)
        self._data.clear()
        return count
