"""
Handler Selection
=================

The HandlerRegistry owns one instance of every archive handler and picks the
best available one for a backend preference. The set of handlers is closed;
order in HANDLER_CLASSES breaks priority ties (natives first).
"""

import logging
from typing import Any, Dict, List, Optional, Type, Union

from ..error_handling import NoHandlerAvailableError, ToolUnavailableError
from .detector import DetectionContext
from .native import (
    GzipNativeHandler,
    Lz4NativeHandler,
    TarGzipNativeHandler,
    ZipNativeHandler,
)
from .shell import GzipShellHandler, TarGzipShellHandler, ZipShellHandler
from .types import (
    BackendPreference,
    CompressionBackend,
    CompressionFormat,
    CompressionHandler,
)

logger = logging.getLogger(__name__)

HANDLER_CLASSES: List[Type[CompressionHandler]] = [
    TarGzipNativeHandler,
    ZipNativeHandler,
    GzipNativeHandler,
    Lz4NativeHandler,
    TarGzipShellHandler,
    ZipShellHandler,
    GzipShellHandler,
]

DEFAULT_FORMAT = CompressionFormat.TAR_GZIP


class HandlerRegistry:
    """Registry for archive handlers with priority-based selection."""

    def __init__(self, detection: Optional[DetectionContext] = None):
        self.detection = detection
        self.handlers: List[CompressionHandler] = []
        for handler_class in HANDLER_CLASSES:
            if handler_class.backend is CompressionBackend.SHELL:
                self.handlers.append(handler_class(detection))
            else:
                self.handlers.append(handler_class())

    def select_best(
        self, preference: Union[str, BackendPreference] = BackendPreference.AUTO
    ) -> CompressionHandler:
        """
        Pick the highest-priority handler allowed by the preference.

        Args:
            preference: "auto", "native" or "shell"

        Returns:
            The selected handler

        Raises:
            NoHandlerAvailableError: If preference is "shell" and no tool was found
        """
        preference = BackendPreference.parse(preference)
        candidates = [h for h in self.handlers if preference.allows(h.backend)]

        best: Optional[CompressionHandler] = None
        for handler in candidates:
            if not handler.detect():
                logger.debug(f"Handler {handler.name} not available")
                continue
            # Strict comparison keeps the earliest handler on ties
            if best is None or handler.priority > best.priority:
                best = handler

        if best is None:
            commands = sorted({c for h in candidates for c in getattr(h, "commands", ())})
            raise NoHandlerAvailableError(commands, preference.value)

        logger.info(f"📦 Using compression format: {best.name} (priority {best.priority})")
        if best.format is not DEFAULT_FORMAT:
            logger.warning(
                f"Selected {best.format.value} instead of {DEFAULT_FORMAT.value}; "
                f"archives are only readable by the same format"
            )
        return best

    def get_handler(
        self,
        format: Union[str, CompressionFormat],
        backend: Union[str, CompressionBackend] = CompressionBackend.NATIVE,
    ) -> CompressionHandler:
        """
        Get a specific handler variant.

        Raises:
            ValueError: If the format/backend combination does not exist
            ToolUnavailableError: If the handler's tools are not installed
        """
        format = CompressionFormat(format)
        backend = CompressionBackend(backend)
        for handler in self.handlers:
            if handler.format is format and handler.backend is backend:
                if not handler.detect():
                    raise ToolUnavailableError(
                        ", ".join(getattr(handler, "commands", ())) or handler.name
                    )
                return handler
        raise ValueError(f"No {backend.value} handler for format: {format.value}")

    def list_handlers(self) -> List[Dict[str, Any]]:
        """Describe every handler in selection order."""
        return [
            {
                "format": handler.format.value,
                "backend": handler.backend.value,
                "priority": handler.priority,
                "class": type(handler).__name__,
                "name": handler.name,
            }
            for handler in self.handlers
        ]
