"""
Utility functions for cachepack
===============================

Helpers for archive checksums and human-readable sizes in log output.
"""

import logging
from pathlib import Path
from typing import Union

import xxhash

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def hash_bytes(data: bytes) -> str:
    """Hex xxh3_64 digest of an in-memory buffer."""
    return xxhash.xxh3_64(data).hexdigest()


def hash_file_content(file_path: Union[str, Path]) -> str:
    """
    Hash a single file's content.

    Args:
        file_path: Path to the file to hash

    Returns:
        Hex string xxh3_64 hash of the file content, or a "missing_file:" /
        "error_reading:" marker when the file cannot be read
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        return f"missing_file:{file_path}"

    try:
        hasher = xxhash.xxh3_64()
        with open(file_path, "rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
        return hasher.hexdigest()
    except OSError as e:
        logger.warning(f"Could not hash file content for {file_path}: {e}")
        return f"error_reading:{file_path}:{e}"


def format_bytes(size: int) -> str:
    """
    Format a byte count for humans, e.g. 1536 -> "1.5 KB".

    Uses binary multiples with two decimals, trailing zeros dropped.
    """
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[index]}"
