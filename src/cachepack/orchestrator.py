"""
Cache Orchestrator
==================

Drives the two phases of a CI cache:

- restore(): exact key lookup, then restore-key prefix fallback, then extract
- save(): resolve paths, archive, size guard, upload with TTL, verify

Restore errors propagate to the caller, which fails the job. Save never
raises; every failure is logged with troubleshooting hints and reported as
SaveOutcome.FAILED so the job continues.
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .compression import BackendPreference, DetectionContext, HandlerRegistry
from .compression.types import CompressionHandler, _remove_quietly
from .config import CacheConfig
from .error_handling import (
    VerificationError,
    cache_operation_context,
    classify_os_error,
    log_troubleshooting,
)
from .keys import restore_pattern, scope_key, unscope_key
from .paths import resolve_path_patterns, validate_paths
from .state import PhaseState
from .store import StoreBackend, connect_store
from .utils import format_bytes, hash_bytes, hash_file_content

logger = logging.getLogger(__name__)

SIZE_WARNING_RATIO = 0.8


class RestoreOutcome(str, Enum):
    HIT_EXACT = "hit_exact"
    HIT_FALLBACK = "hit_fallback"
    MISS = "miss"


class SaveOutcome(str, Enum):
    SAVED = "saved"
    SKIPPED_NO_PATHS = "skipped_no_paths"
    SKIPPED_TOO_LARGE = "skipped_too_large"
    FAILED = "failed"


@dataclass
class RestoreResult:
    """Outcome of the restore phase."""

    outcome: RestoreOutcome
    matched_key: str = ""
    size_bytes: int = 0
    entries: int = 0
    checksum: Optional[str] = None
    phase_state: Optional[PhaseState] = None

    @property
    def cache_hit(self) -> bool:
        """True only for an exact key match."""
        return self.outcome is RestoreOutcome.HIT_EXACT


@dataclass
class SaveResult:
    """Outcome of the save phase."""

    outcome: SaveOutcome
    key: str = ""
    size_bytes: int = 0
    files: List[str] = field(default_factory=list)
    checksum: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def saved(self) -> bool:
        return self.outcome is SaveOutcome.SAVED


class CacheOrchestrator:
    """
    Restore and save a cache through a store and an archive handler.

    Args:
        config: Cache configuration
        repository: Key scope (default: $GITHUB_REPOSITORY or "unknown")
        store_factory: Opens a store for the config; the orchestrator closes it
        registry: Handler registry (default: built on first use from a fresh
            DetectionContext)
        path_resolver: Expands path patterns to absolute paths
        temp_dir: Where temporary archives are written (default: $RUNNER_TEMP
            or the system temp dir)
    """

    def __init__(
        self,
        config: CacheConfig,
        repository: Optional[str] = None,
        store_factory: Callable[[CacheConfig], StoreBackend] = connect_store,
        registry: Optional[HandlerRegistry] = None,
        path_resolver: Callable[[Sequence[str]], List[str]] = resolve_path_patterns,
        temp_dir: Optional[str] = None,
    ):
        self.config = config
        self.repository = repository
        self.store_factory = store_factory
        self._registry = registry
        self.path_resolver = path_resolver
        self.temp_dir = temp_dir or os.environ.get("RUNNER_TEMP") or tempfile.gettempdir()

    @property
    def registry(self) -> HandlerRegistry:
        if self._registry is None:
            if self.config.compression_backend is BackendPreference.NATIVE:
                self._registry = HandlerRegistry()
            else:
                self._registry = HandlerRegistry(DetectionContext.detect())
        return self._registry

    def _select_handler(self) -> CompressionHandler:
        return self.registry.select_best(self.config.compression_backend)

    def _temp_archive(self, handler: CompressionHandler) -> Path:
        fd, path = tempfile.mkstemp(prefix="cache-", suffix=handler.extension, dir=self.temp_dir)
        os.close(fd)
        logger.debug(f"  Temp file: {path}")
        return Path(path)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(
        self,
        key: str,
        path_patterns: Sequence[str] = (),
        restore_keys: Sequence[str] = (),
        target_dir: Optional[str] = None,
    ) -> RestoreResult:
        """
        Restore the cache for key, falling back to restore-key prefixes.

        Args:
            key: Primary cache key (unscoped)
            path_patterns: Patterns recorded for the save phase on a miss
            restore_keys: Fallback prefixes, tried in order
            target_dir: Extraction directory (default: current directory)

        Returns:
            RestoreResult; on MISS it carries the PhaseState for the save phase

        Raises:
            StoreConnectionError: If the store cannot be reached
            ArchiveError: If the archive cannot be extracted
        """
        with cache_operation_context("restore", key=key):
            with self.store_factory(self.config) as store:
                data, matched_key, outcome = self._lookup(store, key, restore_keys)

            if data is None:
                logger.info("❌ Cache miss - no cache found for key or restore keys")
                logger.info("📝 Cache will be saved after job completes")
                return RestoreResult(
                    outcome=RestoreOutcome.MISS,
                    phase_state=PhaseState.from_config(
                        key, list(path_patterns), self.config, self._detection_state()
                    ),
                )

            target = target_dir or os.getcwd()
            entries, checksum = self._extract(data, target)

            logger.info("✅ Cache restored successfully!")
            logger.info(f"   Matched key: {matched_key}")
            logger.info(f"   Cache size: {format_bytes(len(data))}")
            return RestoreResult(
                outcome=outcome,
                matched_key=matched_key,
                size_bytes=len(data),
                entries=entries,
                checksum=checksum,
            )

    def _lookup(self, store: StoreBackend, key: str, restore_keys: Sequence[str]):
        scoped = scope_key(key, self.repository)
        logger.info(f"🔍 Looking for cache with key: {key}")
        logger.debug(f"Full store key: {scoped}")

        logger.info("   Trying exact key match...")
        data = store.get(scoped)
        if data is not None:
            logger.info("   ✅ Exact cache hit!")
            return data, key, RestoreOutcome.HIT_EXACT
        logger.info("   ❌ No exact match found")

        if restore_keys:
            logger.info("   Trying restore keys...")
        for restore_key in restore_keys:
            pattern = restore_pattern(restore_key, self.repository)
            logger.info(f"   Scanning for pattern: {restore_key}")
            matches = store.scan_by_prefix(pattern)
            if not matches:
                continue

            # Keys embed hashes or timestamps; the greatest sorts as most recent
            latest = sorted(matches, reverse=True)[0]
            logger.info(f"   Found {len(matches)} matching key(s)")
            logger.debug(f"   Using latest: {latest}")

            data = store.get(latest)
            if data is not None:
                matched_key = unscope_key(latest)
                logger.info(f"   ✅ Cache restored from: {matched_key}")
                return data, matched_key, RestoreOutcome.HIT_FALLBACK
            # Expired between SCAN and GET
            logger.debug(f"   Key vanished before read: {latest}")

        if restore_keys:
            logger.info("   ❌ No matching restore keys found")
        return None, "", RestoreOutcome.MISS

    def _extract(self, data: bytes, target: str):
        handler = self._select_handler()
        temp_file = self._temp_archive(handler)
        logger.info(f"💾 Extracting cache ({format_bytes(len(data))})...")
        try:
            try:
                temp_file.write_bytes(data)
            except OSError as e:
                raise classify_os_error(e, "write temp archive", temp_file) from e
            checksum = hash_file_content(temp_file)
            logger.debug(f"  Archive checksum (xxh3_64): {checksum}")
            entries = handler.extract(temp_file, target)
        finally:
            _remove_quietly(temp_file)
            logger.debug(f"Cleaned up temp file: {temp_file}")
        return entries, checksum

    def _detection_state(self) -> Optional[str]:
        if self.config.compression_backend is BackendPreference.NATIVE:
            return None
        detection = self.registry.detection
        return detection.to_state() if detection is not None else None

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    def save(self, key: str, path_patterns: Sequence[str]) -> SaveResult:
        """
        Archive the resolved paths and upload them under key.

        Never raises: failures are logged with troubleshooting hints and
        returned as SaveOutcome.FAILED.
        """
        try:
            with cache_operation_context("save", key=key):
                return self._save(key, list(path_patterns))
        except Exception as e:
            logger.warning(f"⚠️  Failed to save cache: {e}")
            logger.debug("Stack trace:", exc_info=True)
            log_troubleshooting(e)
            logger.warning("Job will continue (cache save failures are non-fatal)")
            return SaveResult(outcome=SaveOutcome.FAILED, key=key, error=e)

    def _save(self, key: str, path_patterns: List[str]) -> SaveResult:
        logger.info(f"🔑 Saving cache with key: {key}")
        logger.info(f"📂 Resolving cache paths ({len(path_patterns)} patterns)...")

        resolved = self.path_resolver(path_patterns)
        paths = validate_paths(resolved)
        if not paths:
            logger.warning("⚠️  No files found matching cache patterns - skipping cache save")
            for pattern in path_patterns:
                logger.info(f"   - {pattern}")
            return SaveResult(outcome=SaveOutcome.SKIPPED_NO_PATHS, key=key)

        logger.info(f"   Found {len(paths)} files/directories to cache")
        for path in paths[:10]:
            logger.debug(f"   - {path}")
        if len(paths) > 10:
            logger.debug(f"   ... and {len(paths) - 10} more")

        with self.store_factory(self.config) as store:
            handler = self._select_handler()
            temp_file = self._temp_archive(handler)
            try:
                return self._archive_and_upload(store, handler, key, paths, temp_file)
            finally:
                _remove_quietly(temp_file)
                logger.debug(f"Cleaned up temp file: {temp_file}")

    def _archive_and_upload(
        self,
        store: StoreBackend,
        handler: CompressionHandler,
        key: str,
        paths: List[str],
        temp_file: Path,
    ) -> SaveResult:
        level = self.config.compression_level
        max_size = self.config.max_cache_size_bytes

        logger.info(f"🗜️  Creating compressed archive ({handler.name}, level {level})...")
        start = time.time()
        handler.compress(paths, temp_file, level)
        logger.debug(f"  Archive creation time: {time.time() - start:.3f}s")

        # Size is checked before the archive is read into memory
        size = temp_file.stat().st_size
        logger.info(f"   Archive size: {format_bytes(size)}")
        if size > max_size:
            logger.warning(
                f"⚠️  Cache size {format_bytes(size)} exceeds the maximum of "
                f"{format_bytes(max_size)} - skipping cache save"
            )
            return SaveResult(
                outcome=SaveOutcome.SKIPPED_TOO_LARGE, key=key, size_bytes=size, files=paths
            )
        if size > max_size * SIZE_WARNING_RATIO:
            logger.warning(
                f"⚠️  Cache size is large ({format_bytes(size)}, limit "
                f"{format_bytes(max_size)}). Consider reducing cached paths."
            )

        data = temp_file.read_bytes()
        checksum = hash_bytes(data)
        logger.debug(f"  Archive checksum (xxh3_64): {checksum}")

        scoped = scope_key(key, self.repository)
        ttl = self.config.ttl_seconds
        logger.info("💾 Uploading to store...")
        logger.debug(f"  Full store key: {scoped}")
        start = time.time()
        store.set_with_expiry(scoped, data, ttl)
        upload_time = max(time.time() - start, 1e-6)

        logger.info("🔍 Verifying cache upload...")
        if not store.exists(scoped):
            raise VerificationError(
                "Cache verification failed - key does not exist after save",
                {"key": scoped},
            )

        logger.info("✅ Cache saved successfully!")
        logger.info("📊 Cache Statistics:")
        logger.info(f"   Key: {key}")
        logger.info(f"   Size: {format_bytes(size)}")
        logger.info(f"   Files: {len(paths)}")
        logger.info(f"   Compression: {handler.name}, level {level}")
        logger.info(f"   TTL: {ttl} seconds ({round(ttl / 86400)} days)")
        logger.info(f"   Upload speed: {format_bytes(int(size / upload_time))}/s")
        return SaveResult(
            outcome=SaveOutcome.SAVED, key=key, size_bytes=size, files=paths, checksum=checksum
        )
