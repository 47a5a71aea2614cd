"""
Native Archive Handlers
=======================

In-process handlers built on the standard archive modules and the lz4 binding.
They need no external tools, so ``detect()`` is always True.

Available handlers:
- TarGzipNativeHandler: tar stream compressed by tarfile's gzip support
- ZipNativeHandler: ZIP archive via zipfile (symlinks stored as their target's content)
- GzipNativeHandler: tar stream wrapped in a gzip.GzipFile
- Lz4NativeHandler: tar stream wrapped in an LZ4 frame

Tar-based handlers share one walker and one extraction loop and differ only in
the stream they wrap around the tar data. Writing through a tarfile opened on a
compressor stream is a pull-free pipeline: every entry is compressed and
written to disk before the walker moves on, so memory use stays bounded by the
copy buffer.
"""

import gzip
import logging
import os
import shutil
import stat
import tarfile
import time
import zipfile
import zlib
from abc import abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Set, Tuple

import lz4.frame

from ..error_handling import (
    ArchiveCorruptError,
    CacheError,
    CompressionError,
    ExtractionError,
    classify_os_error,
)
from .types import (
    ArchiveStats,
    CompressionBackend,
    CompressionFormat,
    CompressionHandler,
    PathLike,
    _remove_quietly,
)

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024

# Errors every tar-based reader may raise on corrupt or truncated input
_TAR_CORRUPT_ERRORS: Tuple[type, ...] = (
    tarfile.TarError,
    EOFError,
    zlib.error,
    gzip.BadGzipFile,
)


# =============================================================================
# Shared filesystem helpers
# =============================================================================


def _source_entries(paths: Sequence[PathLike]) -> Iterator[Tuple[str, str]]:
    """Yield (absolute_path, archive_name) pairs, archiving each input by base name."""
    for source in paths:
        absolute = os.path.abspath(os.fspath(source))
        name = os.path.basename(absolute)
        if not name:
            logger.warning(f"Cannot archive filesystem root, skipping: {absolute}")
            continue
        yield absolute, name


def _safe_destination(target: Path, name: str) -> Optional[Path]:
    """
    Map an archive entry name to a path inside target.

    Returns None for absolute names, names escaping target through '..', and
    names whose parent directory resolves outside target through a symlink.
    """
    normalized = name.replace("\\", "/").rstrip("/")
    if not normalized or normalized.startswith("/") or os.path.isabs(normalized):
        return None
    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if not parts or ".." in parts:
        return None

    destination = target.joinpath(*parts)
    parent = os.path.realpath(destination.parent)
    root = os.path.realpath(target)
    if parent != root and not parent.startswith(root + os.sep):
        return None
    return destination


def _make_directory(destination: Path) -> None:
    if destination.is_symlink():
        destination.unlink()
    destination.mkdir(parents=True, exist_ok=True)


def _write_file(
    destination: Path,
    source,
    mode: Optional[int] = None,
    mtime: Optional[float] = None,
) -> None:
    """Stream an entry to disk, then re-apply its permission bits and mtime."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.is_symlink() or (destination.is_file() and destination.stat().st_nlink > 1):
        # Never write through a link left by a previous entry
        destination.unlink()

    with open(destination, "wb") as output:
        shutil.copyfileobj(source, output, COPY_BUFFER_SIZE)

    if mode:
        os.chmod(destination, mode & 0o7777)
    if mtime is not None:
        os.utime(destination, (mtime, mtime))


def _make_symlink(destination: Path, link_target: str) -> bool:
    """Recreate a symlink, replacing any file already at that path."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if os.path.lexists(destination):
        if destination.is_dir() and not destination.is_symlink():
            logger.warning(f"Directory exists where symlink expected, skipping: {destination}")
            return False
        destination.unlink()
    os.symlink(link_target, destination)
    return True


def _make_hardlink(target: Path, destination: Path, link_name: str) -> bool:
    """
    Recreate a hardlink to an entry extracted earlier, copying when the
    filesystem refuses links.
    """
    source = _safe_destination(target, link_name)
    if source is None or source.is_symlink() or not source.is_file():
        logger.warning(f"Hardlink target missing or unsafe, skipping: {destination} -> {link_name}")
        return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    if os.path.lexists(destination):
        if destination.is_dir() and not destination.is_symlink():
            logger.warning(f"Directory exists where hardlink expected, skipping: {destination}")
            return False
        if os.path.samefile(source, destination):
            return True
        destination.unlink()
    try:
        os.link(source, destination)
    except OSError as e:
        logger.debug(f"Hardlink failed ({e}), copying instead: {destination}")
        shutil.copy2(source, destination)
    return True


def _apply_directory_modes(directories: List[Tuple[Path, int, Optional[float]]]) -> None:
    """Apply stored directory modes deepest first, after their contents exist."""
    for directory, mode, mtime in sorted(directories, key=lambda d: len(d[0].parts), reverse=True):
        if mode:
            os.chmod(directory, mode & 0o7777)
        if mtime is not None:
            os.utime(directory, (mtime, mtime))


# =============================================================================
# Tar-based handlers
# =============================================================================


class _TarStreamHandler(CompressionHandler):
    """Base for native handlers whose payload is a tar stream."""

    backend = CompressionBackend.NATIVE
    corrupt_errors: Tuple[type, ...] = _TAR_CORRUPT_ERRORS

    def detect(self) -> bool:
        # No external dependency
        return True

    @abstractmethod
    def _tar_writer(self, output: Path, level: int):
        """Context manager yielding a TarFile that writes the compressed archive."""
        pass

    @abstractmethod
    def _tar_reader(self, archive: Path):
        """Context manager yielding a TarFile reading the compressed archive."""
        pass

    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        level = self._check_level(level)
        output = Path(output_file)
        logger.debug(
            f"[{self.name}] Creating archive with {len(paths)} paths at level {level}"
        )
        logger.debug(f"[{self.name}] Output: {output}")

        stats = ArchiveStats()
        try:
            with self._tar_writer(output, level) as tar:
                for absolute, name in _source_entries(paths):
                    self._add_to_tar(tar, absolute, name, stats)
        except CacheError:
            _remove_quietly(output)
            raise
        except OSError as e:
            _remove_quietly(output)
            raise classify_os_error(e, "compress", output, CompressionError) from e
        except BaseException:
            _remove_quietly(output)
            raise

        return self._finish_archive(output, stats)

    def _add_to_tar(
        self, tar: tarfile.TarFile, absolute: str, name: str, stats: ArchiveStats
    ) -> None:
        try:
            st = os.lstat(absolute)
        except FileNotFoundError:
            logger.warning(f"[{self.name}] Path not found, skipping: {absolute}")
            stats.skipped.append(absolute)
            return
        except PermissionError as e:
            logger.warning(f"[{self.name}] Failed to add {name}: {e}")
            stats.skipped.append(absolute)
            return

        if stat.S_ISLNK(st.st_mode) or stat.S_ISDIR(st.st_mode):
            tar.addfile(tar.gettarinfo(absolute, arcname=name))
            stats.entries += 1
            if stat.S_ISDIR(st.st_mode):
                try:
                    children = sorted(os.listdir(absolute))
                except PermissionError as e:
                    logger.warning(f"[{self.name}] Cannot read directory {name}: {e}")
                    stats.skipped.append(absolute)
                    return
                for child in children:
                    self._add_to_tar(tar, os.path.join(absolute, child), f"{name}/{child}", stats)
        elif stat.S_ISREG(st.st_mode):
            try:
                source = open(absolute, "rb")
            except PermissionError as e:
                logger.warning(f"[{self.name}] Failed to add {name}: {e}")
                stats.skipped.append(absolute)
                return
            with source:
                info = tar.gettarinfo(arcname=name, fileobj=source)
                if info.islnk():
                    # Each name of a hardlinked file carries its own data
                    info.type = tarfile.REGTYPE
                    info.linkname = ""
                    info.size = os.fstat(source.fileno()).st_size
                tar.addfile(info, source)
            stats.entries += 1
        else:
            logger.debug(f"[{self.name}] Skipping special file: {absolute}")

    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        archive = self._check_archive(archive_path)
        target = Path(os.path.abspath(target_dir))
        logger.debug(f"[{self.name}] Extracting archive: {archive}")
        logger.debug(f"[{self.name}] Target directory: {target}")

        extracted = 0
        directories: List[Tuple[Path, int, Optional[float]]] = []
        try:
            target.mkdir(parents=True, exist_ok=True)
            with self._tar_reader(archive) as tar:
                for member in tar:
                    destination = _safe_destination(target, member.name)
                    if destination is None:
                        logger.warning(f"[{self.name}] Skipping unsafe entry: {member.name}")
                        continue

                    logger.debug(f"[{self.name}] Extracting: {member.name}")
                    if member.isdir():
                        _make_directory(destination)
                        directories.append((destination, member.mode, member.mtime))
                    elif member.isreg():
                        _write_file(destination, tar.extractfile(member), member.mode, member.mtime)
                    elif member.issym():
                        if not _make_symlink(destination, member.linkname):
                            continue
                    elif member.islnk():
                        if not _make_hardlink(target, destination, member.linkname):
                            continue
                    else:
                        logger.debug(
                            f"[{self.name}] Skipping unsupported entry type "
                            f"{member.type!r}: {member.name}"
                        )
                        continue
                    extracted += 1
            _apply_directory_modes(directories)
        except CacheError:
            raise
        except self.corrupt_errors as e:
            raise ArchiveCorruptError(
                f"[{self.name}] Archive is corrupt or truncated: {e}",
                {"archive": str(archive)},
            ) from e
        except OSError as e:
            raise classify_os_error(e, "extract", target, ExtractionError) from e

        logger.debug(f"[{self.name}] Extraction completed: {extracted} entries")
        return extracted


class TarGzipNativeHandler(_TarStreamHandler):
    """Handler for gzip-compressed tar archives using tarfile."""

    format = CompressionFormat.TAR_GZIP
    priority = 200
    extension = ".tar.gz"

    @contextmanager
    def _tar_writer(self, output: Path, level: int):
        with tarfile.open(
            output, mode="w:gz", compresslevel=level, format=tarfile.PAX_FORMAT
        ) as tar:
            yield tar

    @contextmanager
    def _tar_reader(self, archive: Path):
        with tarfile.open(archive, mode="r|gz") as tar:
            yield tar


class GzipNativeHandler(_TarStreamHandler):
    """
    Handler for a raw gzip stream wrapping a tar stream.

    Gzip has no notion of directories, so the payload is always a tar stream.
    The output is readable by ``tar -xzf`` just like the tar+gzip format; the
    gzip header carries no name or timestamp.
    """

    format = CompressionFormat.GZIP
    priority = 100
    extension = ".tar.gz"

    @contextmanager
    def _tar_writer(self, output: Path, level: int):
        with open(output, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", compresslevel=level, fileobj=raw, mtime=0) as stream:
                with tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                    yield tar

    @contextmanager
    def _tar_reader(self, archive: Path):
        with gzip.open(archive, "rb") as stream:
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                yield tar


class Lz4NativeHandler(_TarStreamHandler):
    """Handler for LZ4-framed tar archives using the lz4 binding."""

    format = CompressionFormat.LZ4
    priority = 50
    extension = ".tar.lz4"
    corrupt_errors = _TAR_CORRUPT_ERRORS + (RuntimeError,)

    @staticmethod
    def frame_level(level: int) -> int:
        """Map 0-9 onto lz4: fast mode below 3, high-compression levels above."""
        return 0 if level < 3 else level + 3

    @contextmanager
    def _tar_writer(self, output: Path, level: int):
        with lz4.frame.open(
            output,
            mode="wb",
            compression_level=self.frame_level(level),
            content_checksum=True,
        ) as stream:
            with tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                yield tar

    @contextmanager
    def _tar_reader(self, archive: Path):
        with lz4.frame.open(archive, mode="rb") as stream:
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                yield tar


# =============================================================================
# ZIP handler
# =============================================================================


class ZipNativeHandler(CompressionHandler):
    """
    Handler for ZIP archives using zipfile.

    ZIP cannot represent symlinks portably, so a symlink is stored as a regular
    file (or directory tree) holding its target's content.
    """

    format = CompressionFormat.ZIP
    backend = CompressionBackend.NATIVE
    priority = 150
    extension = ".zip"

    def detect(self) -> bool:
        return True

    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        level = self._check_level(level)
        output = Path(output_file)
        logger.debug(f"[{self.name}] Creating archive with {len(paths)} paths at level {level}")
        logger.debug(f"[{self.name}] Output: {output}")

        stats = ArchiveStats()
        try:
            with zipfile.ZipFile(
                output,
                mode="w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=level,
                strict_timestamps=False,
            ) as archive:
                for absolute, name in _source_entries(paths):
                    self._add_to_zip(archive, absolute, name, stats, set())
        except CacheError:
            _remove_quietly(output)
            raise
        except OSError as e:
            _remove_quietly(output)
            raise classify_os_error(e, "compress", output, CompressionError) from e
        except BaseException:
            _remove_quietly(output)
            raise

        return self._finish_archive(output, stats)

    def _add_to_zip(
        self,
        archive: zipfile.ZipFile,
        absolute: str,
        name: str,
        stats: ArchiveStats,
        ancestors: Set[Tuple[int, int]],
    ) -> None:
        try:
            st = os.lstat(absolute)
            if stat.S_ISLNK(st.st_mode):
                link_target = os.readlink(absolute)
                try:
                    st = os.stat(absolute)
                except FileNotFoundError:
                    logger.warning(
                        f"[{self.name}] Skipping dangling symlink: {name} -> {link_target}"
                    )
                    stats.skipped.append(absolute)
                    return
                logger.warning(
                    f"[{self.name}] Storing symlink as regular content: {name} -> {link_target}"
                )
        except FileNotFoundError:
            logger.warning(f"[{self.name}] Path not found, skipping: {absolute}")
            stats.skipped.append(absolute)
            return
        except PermissionError as e:
            logger.warning(f"[{self.name}] Failed to add {name}: {e}")
            stats.skipped.append(absolute)
            return

        if stat.S_ISDIR(st.st_mode):
            identity = (st.st_dev, st.st_ino)
            if identity in ancestors:
                logger.warning(f"[{self.name}] Skipping symlink loop: {name}")
                stats.skipped.append(absolute)
                return
            archive.write(absolute, arcname=f"{name}/")
            stats.entries += 1
            try:
                children = sorted(os.listdir(absolute))
            except PermissionError as e:
                logger.warning(f"[{self.name}] Cannot read directory {name}: {e}")
                stats.skipped.append(absolute)
                return
            for child in children:
                self._add_to_zip(
                    archive, os.path.join(absolute, child), f"{name}/{child}",
                    stats, ancestors | {identity},
                )
        elif stat.S_ISREG(st.st_mode):
            try:
                archive.write(absolute, arcname=name)
            except PermissionError as e:
                logger.warning(f"[{self.name}] Failed to add {name}: {e}")
                stats.skipped.append(absolute)
                return
            stats.entries += 1
        else:
            logger.debug(f"[{self.name}] Skipping special file: {absolute}")

    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        archive_file = self._check_archive(archive_path)
        target = Path(os.path.abspath(target_dir))
        logger.debug(f"[{self.name}] Extracting archive: {archive_file}")
        logger.debug(f"[{self.name}] Target directory: {target}")

        extracted = 0
        directories: List[Tuple[Path, int, Optional[float]]] = []
        try:
            target.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(archive_file) as archive:
                for info in archive.infolist():
                    destination = _safe_destination(target, info.filename)
                    if destination is None:
                        logger.warning(f"[{self.name}] Skipping unsafe entry: {info.filename}")
                        continue

                    logger.debug(f"[{self.name}] Extracting: {info.filename}")
                    mode = (info.external_attr >> 16) & 0xFFFF
                    mtime = time.mktime(info.date_time + (0, 0, -1))
                    if info.is_dir():
                        _make_directory(destination)
                        directories.append((destination, mode & 0o7777, mtime))
                    elif stat.S_ISLNK(mode):
                        # Written by external zip tools with --symlinks
                        link_target = archive.read(info).decode("utf-8")
                        if not _make_symlink(destination, link_target):
                            continue
                    else:
                        with archive.open(info) as source:
                            _write_file(destination, source, mode & 0o7777, mtime)
                    extracted += 1
            _apply_directory_modes(directories)
        except CacheError:
            raise
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise ArchiveCorruptError(
                f"[{self.name}] Failed to extract ZIP archive: {e}",
                {"archive": str(archive_file)},
            ) from e
        except OSError as e:
            raise classify_os_error(e, "extract", target, ExtractionError) from e

        logger.debug(f"[{self.name}] Extraction completed: {extracted} entries")
        return extracted
