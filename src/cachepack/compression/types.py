"""
Compression Handler Interfaces
==============================

Types shared by every archive format handler. Each handler implements the same
detect/compress/extract contract so the HandlerRegistry can treat them
interchangeably.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..error_handling import (
    ArchiveNotFoundError,
    CacheConfigurationError,
    CompressionError,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class CompressionFormat(str, Enum):
    """Archive format produced by a handler."""

    TAR_GZIP = "tar+gzip"
    ZIP = "zip"
    GZIP = "gzip"
    LZ4 = "lz4"


class CompressionBackend(str, Enum):
    """How a handler is implemented."""

    NATIVE = "native"
    SHELL = "shell"


class BackendPreference(str, Enum):
    """Which handler backends may be selected."""

    AUTO = "auto"
    NATIVE = "native"
    SHELL = "shell"

    @classmethod
    def parse(cls, value: Union[str, "BackendPreference"]) -> "BackendPreference":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [p.value for p in cls]
            raise CacheConfigurationError(
                f"Invalid compression backend: '{value}'. Expected one of {valid}"
            ) from None

    def allows(self, backend: CompressionBackend) -> bool:
        return self is BackendPreference.AUTO or self.value == backend.value


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of probing the host for a shell compression tool."""

    format: CompressionFormat
    available: bool
    command: str
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["format"] = self.format.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionResult":
        return cls(
            format=CompressionFormat(data["format"]),
            available=bool(data["available"]),
            command=str(data["command"]),
            version=data.get("version"),
        )


@dataclass
class ArchiveStats:
    """Summary of a compress() call."""

    entries: int = 0
    skipped: List[str] = field(default_factory=list)
    size_bytes: int = 0


class CompressionHandler(ABC):
    """
    Abstract base class for archive format handlers.

    Subclasses declare their format, backend, static priority and the file
    extension of the archives they produce.
    """

    format: CompressionFormat
    backend: CompressionBackend
    priority: int
    extension: str

    @abstractmethod
    def detect(self) -> bool:
        """Check if this handler can run on the current host."""
        pass

    @abstractmethod
    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        """
        Archive and compress the given paths into a single file.

        Args:
            paths: Files and directories to archive (stored under their base names)
            output_file: Archive file to create
            level: Compression level, 0 (fastest) to 9 (smallest)

        Returns:
            ArchiveStats describing the written archive

        Raises:
            ToolUnavailableError: If the backing tool is not installed
            CompressionError: If the archive cannot be created
        """
        pass

    @abstractmethod
    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        """
        Extract an archive into target_dir.

        Args:
            archive_path: Archive produced by the same handler family
            target_dir: Directory to extract into (created if missing)

        Returns:
            Number of entries written

        Raises:
            ArchiveNotFoundError: If archive_path does not exist
            ExtractionError: If the archive cannot be extracted
        """
        pass

    @property
    def name(self) -> str:
        suffix = "-native" if self.backend is CompressionBackend.NATIVE else ""
        return f"{self.format.value}{suffix}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} priority={self.priority}>"

    # Shared helpers

    def _check_level(self, level: int) -> int:
        if not isinstance(level, int) or not (0 <= level <= 9):
            raise CacheConfigurationError(
                f"Compression level must be between 0 and 9, got {level!r}"
            )
        return level

    def _check_archive(self, archive_path: PathLike) -> Path:
        path = Path(archive_path)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise ArchiveNotFoundError(
                f"Archive file not found: {archive_path}",
                {"handler": self.name},
            ) from None
        logger.debug(f"[{self.name}] Archive size: {size} bytes")
        return path

    def _finish_archive(self, output: Path, stats: ArchiveStats) -> ArchiveStats:
        """Enforce the non-empty output postcondition and fill in the size."""
        try:
            stats.size_bytes = output.stat().st_size
        except FileNotFoundError:
            stats.size_bytes = 0
        if stats.size_bytes == 0:
            _remove_quietly(output)
            raise CompressionError(
                f"[{self.name}] Archive was not created or is empty: {output}",
                {"entries": stats.entries, "skipped": len(stats.skipped)},
            )
        logger.debug(
            f"[{self.name}] Archive created: {stats.size_bytes} bytes "
            f"({stats.entries} entries)"
        )
        return stats


def _remove_quietly(path: PathLike) -> None:
    """Delete a file if it exists."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
