"""
State handed from the restore phase to the save phase.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import orjson

from .config import (
    DEFAULT_MAX_CACHE_SIZE_BYTES,
    DEFAULT_TTL_SECONDS,
    ArchiveConfig,
    CacheConfig,
    StoreConfig,
)
from .error_handling import CacheConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class PhaseState:
    """Everything the save phase needs, recorded by a restore-phase MISS."""

    key: str
    path_patterns: List[str] = field(default_factory=list)
    store_host: str = "localhost"
    store_port: int = 6379
    store_password: Optional[str] = None
    store_backend: str = "redis"
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    compression_level: int = 6
    compression_backend: str = "auto"
    max_cache_size_bytes: int = DEFAULT_MAX_CACHE_SIZE_BYTES
    detection: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        key: str,
        path_patterns: List[str],
        config: CacheConfig,
        detection: Optional[str] = None,
    ) -> "PhaseState":
        return cls(
            key=key,
            path_patterns=list(path_patterns),
            store_host=config.store.host,
            store_port=config.store.port,
            store_password=config.store.password,
            store_backend=config.store.backend,
            ttl_seconds=config.ttl_seconds,
            compression_level=config.archive.compression_level,
            compression_backend=config.archive.compression_backend,
            max_cache_size_bytes=config.max_cache_size_bytes,
            detection=detection,
        )

    def to_config(self) -> CacheConfig:
        return CacheConfig(
            store=StoreConfig(
                host=self.store_host,
                port=self.store_port,
                password=self.store_password or None,
                backend=self.store_backend,
            ),
            archive=ArchiveConfig(
                compression_level=self.compression_level,
                compression_backend=self.compression_backend,
            ),
            ttl_seconds=self.ttl_seconds,
            max_cache_size_bytes=self.max_cache_size_bytes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict()).decode("utf-8")

    @classmethod
    def from_json(cls, text: str) -> "PhaseState":
        """
        Parse state written by ``to_json()``.

        Raises:
            CacheConfigurationError: If the text is not valid state JSON
        """
        try:
            data = orjson.loads(text)
            return cls(**data)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise CacheConfigurationError(f"Invalid saved phase state: {e}") from e
