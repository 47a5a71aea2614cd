"""
cachepack - CI cache restore/save backed by a Redis or Valkey store.

The restore phase looks up a repository-scoped key (then restore-key prefixes),
downloads the archive and extracts it. On a miss, the save phase archives the
configured paths with the best available compression handler, uploads them
with a TTL and verifies the write.

Key Features:
- tar+gzip, zip, gzip and lz4 archives, in-process or via shell tools
- Priority-based handler selection with "auto", "native" or "shell" backends
- Restore-key prefix fallback using SCAN
- Save failures never fail the job; every error comes with troubleshooting hints

Quick Start:
    >>> from cachepack import CacheOrchestrator, create_cache_config
    >>>
    >>> config = create_cache_config(redis_host="cache.internal", compression_level=6)
    >>> orchestrator = CacheOrchestrator(config, repository="acme/widgets")
    >>>
    >>> result = orchestrator.restore("linux-deps-abc123", ["node_modules"], ["linux-deps-"])
    >>> if result.phase_state is not None:
    ...     orchestrator.save("linux-deps-abc123", ["node_modules"])
"""

from .compression import (
    BackendPreference,
    CompressionFormat,
    DetectionContext,
    HandlerRegistry,
)
from .config import ArchiveConfig, CacheConfig, StoreConfig, create_cache_config
from .error_handling import CacheError
from .keys import restore_pattern, scope_key, unscope_key
from .orchestrator import (
    CacheOrchestrator,
    RestoreOutcome,
    RestoreResult,
    SaveOutcome,
    SaveResult,
)
from .state import PhaseState
from .store import InMemoryStore, RedisStore, StoreBackend, connect_store

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "CacheOrchestrator",
    "RestoreOutcome",
    "RestoreResult",
    "SaveOutcome",
    "SaveResult",
    "PhaseState",
    # Configuration
    "CacheConfig",
    "StoreConfig",
    "ArchiveConfig",
    "create_cache_config",
    # Compression
    "BackendPreference",
    "CompressionFormat",
    "DetectionContext",
    "HandlerRegistry",
    # Stores
    "StoreBackend",
    "RedisStore",
    "InMemoryStore",
    "connect_store",
    # Keys
    "scope_key",
    "unscope_key",
    "restore_pattern",
    # Errors
    "CacheError",
    # Version info
    "__version__",
]
