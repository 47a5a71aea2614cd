"""
Configuration Management for cachepack
======================================

Configuration is split into focused sub-configurations (store connection and
archive settings) combined by the immutable CacheConfig.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .compression.types import BackendPreference
from .error_handling import CacheConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
# Redis/Valkey reject bulk values above proto-max-bulk-len (512MB by default)
DEFAULT_MAX_CACHE_SIZE_BYTES = 512 * 1024 * 1024


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the key-value store connection."""

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    backend: str = "redis"
    socket_timeout: float = 10.0
    connect_attempts: int = 3

    def __post_init__(self):
        """Validate store configuration."""
        if not self.host:
            raise CacheConfigurationError("store host must not be empty")

        if not (0 < self.port < 65536):
            raise CacheConfigurationError(
                f"store port must be between 1 and 65535, got {self.port}"
            )

        if self.socket_timeout <= 0:
            raise CacheConfigurationError("socket_timeout must be positive")

        if self.connect_attempts < 1:
            raise CacheConfigurationError("connect_attempts must be at least 1")

        logger.debug(
            f"Store configured: {self.backend}://{self.host}:{self.port} "
            f"(auth={'enabled' if self.password else 'disabled'})"
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Configuration for archive compression."""

    compression_level: int = 6
    compression_backend: str = "auto"  # "auto", "native", "shell"

    def __post_init__(self):
        """Validate archive configuration."""
        if not (0 <= self.compression_level <= 9):
            raise CacheConfigurationError(
                f"compression_level must be between 0 and 9, got {self.compression_level}"
            )

        # Normalizes and rejects unknown values
        object.__setattr__(
            self,
            "compression_backend",
            BackendPreference.parse(self.compression_backend).value,
        )

        logger.debug(
            f"Archive configured: level={self.compression_level}, "
            f"backend={self.compression_backend}"
        )

    @property
    def preference(self) -> BackendPreference:
        return BackendPreference(self.compression_backend)


@dataclass(frozen=True)
class CacheConfig:
    """Main configuration combining store and archive settings."""

    store: StoreConfig = field(default_factory=StoreConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    max_cache_size_bytes: int = DEFAULT_MAX_CACHE_SIZE_BYTES

    def __post_init__(self):
        """Validate overall configuration consistency."""
        if self.ttl_seconds <= 0:
            raise CacheConfigurationError("ttl_seconds must be positive")

        if self.max_cache_size_bytes <= 0:
            raise CacheConfigurationError("max_cache_size_bytes must be positive")

        logger.debug(
            f"Cache configured: ttl={self.ttl_seconds}s, "
            f"max_size={self.max_cache_size_bytes} bytes"
        )

    # Flat accessors matching the action input names
    @property
    def store_host(self) -> str:
        return self.store.host

    @property
    def store_port(self) -> int:
        return self.store.port

    @property
    def store_password(self) -> Optional[str]:
        return self.store.password

    @property
    def compression_level(self) -> int:
        return self.archive.compression_level

    @property
    def compression_backend(self) -> BackendPreference:
        return self.archive.preference


_STORE_FIELDS = {"host", "port", "password", "backend", "socket_timeout", "connect_attempts"}
_STORE_ALIASES = {
    "store_host": "host",
    "store_port": "port",
    "store_password": "password",
    "redis_host": "host",
    "redis_port": "port",
    "redis_password": "password",
}
_ARCHIVE_FIELDS = {"compression_level", "compression_backend"}
_TOP_LEVEL_FIELDS = {"ttl_seconds", "max_cache_size_bytes"}


def create_cache_config(base: Optional[CacheConfig] = None, **overrides: Any) -> CacheConfig:
    """
    Factory function routing flat overrides to the right sub-configuration.

    Args:
        base: Configuration to start from (defaults to CacheConfig())
        **overrides: Flat parameters, e.g. redis_host="cache", compression_level=9

    Returns:
        Configured CacheConfig instance

    Raises:
        CacheConfigurationError: If an override is unknown or invalid
    """
    config = base or CacheConfig()
    store_changes = {}
    archive_changes = {}
    top_changes = {}

    for key, value in overrides.items():
        name = _STORE_ALIASES.get(key, key)
        if name in _STORE_FIELDS:
            store_changes[name] = value
        elif name in _ARCHIVE_FIELDS:
            archive_changes[name] = value
        elif name in _TOP_LEVEL_FIELDS:
            top_changes[name] = value
        else:
            raise CacheConfigurationError(
                f"Unknown configuration parameter: {key}", {"value": value}
            )

    return replace(
        config,
        store=replace(config.store, **store_changes) if store_changes else config.store,
        archive=(
            replace(config.archive, **archive_changes) if archive_changes else config.archive
        ),
        **top_changes,
    )
