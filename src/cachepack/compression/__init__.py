"""
Archive Compression
===================

Format handlers (tar+gzip, zip, gzip, lz4) in native and shell-exec variants,
tool detection, and the HandlerRegistry that selects between them.

Usage:
    from cachepack.compression import DetectionContext, HandlerRegistry

    registry = HandlerRegistry(DetectionContext.detect())
    handler = registry.select_best("auto")
    handler.compress(["node_modules"], "/tmp/cache.tar.gz", level=6)
"""

from .detector import (
    SHELL_TOOLS,
    DetectionContext,
    detect_all_tools,
    detect_format,
    detect_tool,
    get_tool_version,
)
from .factory import HANDLER_CLASSES, HandlerRegistry
from .native import (
    GzipNativeHandler,
    Lz4NativeHandler,
    TarGzipNativeHandler,
    ZipNativeHandler,
)
from .shell import GzipShellHandler, TarGzipShellHandler, ZipShellHandler
from .types import (
    ArchiveStats,
    BackendPreference,
    CompressionBackend,
    CompressionFormat,
    CompressionHandler,
    DetectionResult,
)

__all__ = [
    # Types
    "ArchiveStats",
    "BackendPreference",
    "CompressionBackend",
    "CompressionFormat",
    "CompressionHandler",
    "DetectionResult",
    # Detection
    "SHELL_TOOLS",
    "DetectionContext",
    "detect_all_tools",
    "detect_format",
    "detect_tool",
    "get_tool_version",
    # Handlers
    "GzipNativeHandler",
    "GzipShellHandler",
    "Lz4NativeHandler",
    "TarGzipNativeHandler",
    "TarGzipShellHandler",
    "ZipNativeHandler",
    "ZipShellHandler",
    # Selection
    "HANDLER_CLASSES",
    "HandlerRegistry",
]
