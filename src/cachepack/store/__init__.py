"""
Store Backends
==============

Key-value stores holding cache archives.

- RedisStore: Redis/Valkey server via redis-py (default)
- InMemoryStore: dict-backed store for tests and dry runs

Registry API:
- register_store_backend(), unregister_store_backend(), get_store_backend(),
  list_store_backends(), connect_store()

Usage:
    from cachepack.store import connect_store

    with connect_store(config) as store:
        data = store.get("owner/repo:linux-deps-abc123")
"""

import logging
from typing import Any, Dict, List, Type, Union

from ..config import CacheConfig, StoreConfig
from ..error_handling import CacheConfigurationError
from .base import StoreBackend
from .memory import InMemoryStore
from .redis_store import RedisStore, classify_connection_error, retry_delay

logger = logging.getLogger(__name__)


# =============================================================================
# Store Backend Registry
# =============================================================================

_store_backend_registry: Dict[str, Type[StoreBackend]] = {}
_builtin_store_backends = {"redis", "valkey", "memory"}


def _initialize_builtin_store_backends():
    """Initialize registry with built-in backends."""
    _store_backend_registry["redis"] = RedisStore
    # Valkey speaks the same protocol
    _store_backend_registry["valkey"] = RedisStore
    _store_backend_registry["memory"] = InMemoryStore


_initialize_builtin_store_backends()


def register_store_backend(
    name: str, backend_class: Type[StoreBackend], force: bool = False
) -> None:
    """
    Register a custom store backend.

    Args:
        name: Unique name for the backend (e.g., "keydb")
        backend_class: Class that implements StoreBackend interface
        force: If True, overwrite existing registration

    Raises:
        ValueError: If name already registered and force=False
        ValueError: If backend_class doesn't inherit from StoreBackend
    """
    if not isinstance(backend_class, type):
        raise ValueError(f"backend_class must be a class, got {type(backend_class)}")

    if not issubclass(backend_class, StoreBackend):
        raise ValueError(
            f"Backend class {backend_class.__name__} must inherit from StoreBackend"
        )

    if name in _store_backend_registry and not force:
        raise ValueError(
            f"Store backend '{name}' already registered. "
            f"Use force=True to overwrite or unregister_store_backend() first."
        )

    _store_backend_registry[name] = backend_class
    logger.info(f"Registered store backend '{name}' ({backend_class.__name__})")


def unregister_store_backend(name: str) -> bool:
    """
    Unregister a store backend.

    Returns:
        True if backend was unregistered, False if not found
    """
    if name in _store_backend_registry:
        del _store_backend_registry[name]
        logger.info(f"Unregistered store backend '{name}'")
        return True

    logger.warning(f"Store backend '{name}' not found for unregistration")
    return False


def get_store_backend(name: str, **options) -> StoreBackend:
    """
    Get a store backend instance by name.

    Args:
        name: Name of the registered backend
        **options: Constructor arguments for the backend

    Raises:
        ValueError: If backend name not registered or options are invalid
    """
    if name not in _store_backend_registry:
        available = list(_store_backend_registry.keys())
        raise ValueError(f"Unknown store backend: '{name}'. Available backends: {available}")

    backend_class = _store_backend_registry[name]

    try:
        return backend_class(**options)
    except TypeError as e:
        raise ValueError(
            f"Failed to create store backend '{name}' with options {options}: {e}"
        )


def list_store_backends() -> List[Dict[str, Any]]:
    """
    List all registered store backends.

    Returns:
        List of dictionaries with name, class and is_builtin, builtins first
    """
    result = []
    for name in sorted(_builtin_store_backends):
        if name in _store_backend_registry:
            result.append(
                {
                    "name": name,
                    "class": _store_backend_registry[name].__name__,
                    "is_builtin": True,
                }
            )
    for name in sorted(_store_backend_registry):
        if name not in _builtin_store_backends:
            result.append(
                {
                    "name": name,
                    "class": _store_backend_registry[name].__name__,
                    "is_builtin": False,
                }
            )
    return result


def connect_store(config: Union[CacheConfig, StoreConfig]) -> StoreBackend:
    """
    Open the store named by ``config.store.backend``.

    Raises:
        CacheConfigurationError: If the backend is not registered
        StoreConnectionError: If the store cannot be reached
    """
    store_config = config.store if isinstance(config, CacheConfig) else config
    backend_class = _store_backend_registry.get(store_config.backend)
    if backend_class is None:
        raise CacheConfigurationError(
            f"Unknown store backend: '{store_config.backend}'",
            {"available": sorted(_store_backend_registry)},
        )
    return backend_class.connect(store_config)


__all__ = [
    "StoreBackend",
    "RedisStore",
    "InMemoryStore",
    "classify_connection_error",
    "retry_delay",
    "register_store_backend",
    "unregister_store_backend",
    "get_store_backend",
    "list_store_backends",
    "connect_store",
]
