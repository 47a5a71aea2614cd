"""
Standardized Error Handling for cachepack
=========================================

This module provides the error taxonomy shared by the compression handlers,
the store client and the cache orchestrator, plus helpers that turn low-level
failures into typed errors and user-facing troubleshooting guidance.
"""

import errno
import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConnectionFailure(str, Enum):
    """Root cause of a failed store connection."""

    REFUSED = "refused"
    DNS = "dns"
    AUTH = "auth"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ResourceKind(str, Enum):
    """Which resource ran out."""

    DISK_FULL = "disk_full"
    ARCHIVE_TOO_LARGE = "archive_too_large"
    STORE_OOM = "store_oom"


class CacheError(Exception):
    """Base exception for all cache-related errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)

        # Log error with context for debugging
        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        logger.debug(
            f"Cache error: {message}" + (f" ({context_str})" if context_str else "")
        )


class CacheConfigurationError(CacheError):
    """Raised when cache configuration is invalid."""

    pass


class CacheStoreError(CacheError):
    """Raised when a key-value store operation fails."""

    pass


class StoreConnectionError(CacheStoreError):
    """Raised when the store cannot be reached after all connection attempts."""

    def __init__(
        self,
        message: str,
        reason: ConnectionFailure = ConnectionFailure.UNKNOWN,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        super().__init__(message, {**(context or {}), "reason": reason.value})


class ToolUnavailableError(CacheError):
    """Raised when a shell-exec handler's command is not installed."""

    def __init__(
        self, command: str, message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.command = command
        super().__init__(
            message
            or f"{command} command not found - please install {command} "
            f"or use a different compression format",
            {**(context or {}), "command": command},
        )


class NoHandlerAvailableError(ToolUnavailableError):
    """Raised when no handler matching the backend preference is available."""

    def __init__(self, commands: List[str], preference: str):
        self.commands = list(commands)
        super().__init__(
            ", ".join(commands),
            f"No compression tools available for backend '{preference}'. "
            f"Please install one of: {', '.join(commands)}",
            {"preference": preference},
        )


class ArchiveError(CacheError):
    """Base class for archive creation and extraction failures."""

    pass


class CompressionError(ArchiveError):
    """Raised when an archive cannot be created."""

    pass


class ExtractionError(ArchiveError):
    """Raised when an archive cannot be extracted."""

    pass


class ArchiveCorruptError(ExtractionError):
    """Raised when an archive is truncated or not in the expected format."""

    pass


class ArchiveNotFoundError(ArchiveError):
    """Raised when the archive to extract does not exist."""

    pass


class ArchivePermissionError(ArchiveError):
    """Raised when a destination path is not writable."""

    pass


class ResourceExhaustedError(CacheError):
    """Raised when disk, archive size or store memory limits are hit."""

    def __init__(
        self, message: str, kind: ResourceKind,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        super().__init__(message, {**(context or {}), "kind": kind.value})


class VerificationError(CacheStoreError):
    """Raised when a write reported success but the key does not exist."""

    pass


def classify_os_error(
    exc: OSError, operation: str, path: Any = None, default: type = ArchiveError
) -> CacheError:
    """
    Convert an OSError raised during archive I/O into a typed cache error.

    Args:
        exc: The original OS error
        operation: Description of the operation (e.g. "compress")
        path: Path being operated on, if known
        default: Error class used when the errno is not specifically handled

    Returns:
        A CacheError subclass instance (not raised)
    """
    context = {"operation": operation, "path": str(path) if path else None}
    if exc.errno == errno.ENOSPC:
        return ResourceExhaustedError(
            f"No space left on device during {operation}: {path}",
            ResourceKind.DISK_FULL,
            context,
        )
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ArchivePermissionError(
            f"Permission denied for {operation}: {path}", context
        )
    return default(f"File system error during {operation}: {exc}", context)


def troubleshooting_hints(exc: BaseException) -> List[str]:
    """
    Return a short categorized remediation list for an error.

    Args:
        exc: Any exception raised by a cache operation

    Returns:
        List of human-readable suggestions (may be empty)
    """
    if isinstance(exc, StoreConnectionError):
        return {
            ConnectionFailure.REFUSED: [
                "Connection refused - the store is not reachable",
                "Verify redis-host and redis-port are correct",
                "Check that the Redis/Valkey server is running",
                "Check firewall rules if using a remote store",
            ],
            ConnectionFailure.DNS: [
                "DNS resolution failed - cannot find the store host",
                "Verify redis-host is correct",
                "Try using an IP address instead of a hostname",
            ],
            ConnectionFailure.AUTH: [
                "Authentication failed",
                "Verify redis-password is correct",
                "Verify the password is set in repository secrets",
            ],
            ConnectionFailure.TIMEOUT: [
                "Connection timeout",
                "The store may be overloaded or network latency too high",
                "Check the store's health",
            ],
        }.get(exc.reason, ["Check store connectivity and configuration"])
    if isinstance(exc, NoHandlerAvailableError):
        return [f"Install one of: {', '.join(exc.commands)}",
                "Or set compression-backend to 'auto' or 'native'"]
    if isinstance(exc, ToolUnavailableError):
        return [
            f"{exc.command} is not available on this system",
            f"Install it: apt-get install {exc.command} (Ubuntu) "
            f"or yum install {exc.command} (RHEL)",
            f"Verify it is in PATH: which {exc.command}",
        ]
    if isinstance(exc, ResourceExhaustedError):
        if exc.kind is ResourceKind.STORE_OOM:
            return [
                "Store out of memory - maxmemory limit reached",
                "Consider increasing maxmemory",
                "Check the eviction policy (allkeys-lru is recommended)",
            ]
        if exc.kind is ResourceKind.ARCHIVE_TOO_LARGE:
            return ["Reduce the cached paths or raise max-cache-size"]
        return [
            "Disk space exhausted",
            "Check available disk space: df -h",
            "Consider reducing cache size or cleaning the temp directory",
        ]
    if isinstance(exc, VerificationError):
        return [
            "Data was uploaded but the key does not exist",
            "The store may have evicted the key immediately",
            "Check memory pressure, eviction policy and TTL settings",
        ]
    if isinstance(exc, ArchivePermissionError):
        return [
            "Check write permissions for the target or temp directory",
            "Verify the runner has appropriate permissions",
        ]
    if isinstance(exc, ArchiveCorruptError):
        return [
            "The cached archive is corrupt or was written by a different format",
            "Use the same compression-backend for restore and save",
        ]
    if isinstance(exc, ArchiveNotFoundError):
        return ["The temporary archive disappeared before extraction"]
    return []


def log_troubleshooting(exc: BaseException, level: int = logging.ERROR) -> None:
    """Log the raw error followed by its troubleshooting hints."""
    hints = troubleshooting_hints(exc)
    if not hints:
        return
    logger.log(level, "Troubleshooting:")
    for hint in hints:
        logger.log(level, f"  - {hint}")


@contextmanager
def cache_operation_context(operation: str, **context):
    """
    Context manager for cache operations with standardized logging.

    Args:
        operation: Description of the operation
        **context: Additional context for logging
    """
    logger.debug(f"Starting cache operation: {operation}", extra=context)
    start_time = time.time()

    try:
        yield
        duration = time.time() - start_time
        logger.debug(
            f"Cache operation completed: {operation} ({duration:.3f}s)",
            extra=context,
        )
    except CacheError:
        logger.debug(f"Cache operation failed: {operation}", extra=context)
        raise
    except Exception as e:
        logger.error(
            f"Unexpected error in cache operation: {operation} - {e}", extra=context
        )
        raise
