"""
Store Backend Interface
=======================

Abstract base class for the key-value stores that hold cache archives.
"""

from abc import ABC, abstractmethod
from typing import List, Optional


class StoreBackend(ABC):
    """
    Abstract base class for key-value store backends.

    Keys are repository-scoped strings, values are raw archive bytes. A store
    is opened once per phase and closed when the phase ends; use it as a
    context manager to guarantee the close.
    """

    @classmethod
    def connect(cls, config) -> "StoreBackend":
        """
        Open a store from a StoreConfig.

        Default implementation ignores the configuration. Override in
        backends that connect to a server.
        """
        return cls()

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """
        Read the value stored under key.

        Returns:
            Raw bytes, or None if the key does not exist
        """
        pass

    @abstractmethod
    def set_with_expiry(self, key: str, data: bytes, ttl_seconds: int) -> None:
        """
        Atomically write data under key with a time-to-live.

        Raises:
            ResourceExhaustedError: If the store is out of memory
            CacheStoreError: If the write fails for any other reason
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if key currently exists."""
        pass

    @abstractmethod
    def scan_by_prefix(self, pattern: str) -> List[str]:
        """
        Enumerate every key matching a glob-style pattern.

        Args:
            pattern: MATCH pattern, e.g. "owner/repo:linux-*"

        Returns:
            Matching keys in store order (not sorted)
        """
        pass

    def close(self) -> None:
        """
        Release the connection.

        Default implementation does nothing. Override in backends that
        hold connections or other resources.
        """
        pass

    def __enter__(self):
        """Support context manager protocol."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure the connection is released."""
        self.close()
        return False
