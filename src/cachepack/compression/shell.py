"""
Shell-Exec Archive Handlers
===========================

Handlers that drive the host's tar, gzip and zip/unzip commands through
subprocess. They are only selected when their tools were detected.

Two-process pipelines (``tar -cf - | gzip``) are joined by an OS pipe, so the
producer blocks whenever the consumer falls behind. Each top-level input is
passed relative to its parent directory so archives hold base names.
"""

import logging
import os
import subprocess
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..error_handling import (
    ArchiveCorruptError,
    ArchivePermissionError,
    CacheError,
    CompressionError,
    ExtractionError,
    ResourceExhaustedError,
    ResourceKind,
    ToolUnavailableError,
)
from .detector import DetectionContext, detect_tool
from .types import (
    ArchiveStats,
    CompressionBackend,
    CompressionFormat,
    CompressionHandler,
    PathLike,
    _remove_quietly,
)

logger = logging.getLogger(__name__)

# stderr fragments emitted by gzip, tar and unzip for unreadable input
_CORRUPT_MARKERS = (
    "not in gzip format",
    "unexpected end of file",
    "invalid compressed data",
    "does not look like a tar archive",
    "end-of-central-directory",
    "cannot find zipfile directory",
    "crc error",
)

# tar stderr lines for inputs it skipped while still writing the archive
_TAR_SKIPPED_MARKERS = (
    "cannot open: permission denied",
    "cannot opendir: permission denied",
    "cannot stat: permission denied",
    "exiting with failure status due to previous errors",
)

ExitCheck = Callable[[int, bytes], bool]


class _ShellHandler(CompressionHandler):
    """Base for handlers that run external commands."""

    backend = CompressionBackend.SHELL
    commands: Tuple[str, ...] = ()

    def __init__(self, detection: Optional[DetectionContext] = None):
        self._detection = detection
        self._available: Optional[bool] = None

    def detect(self) -> bool:
        if self._available is None:
            self._available = all(self._command_available(c) for c in self.commands)
        return self._available

    def _command_available(self, command: str) -> bool:
        if self._detection is not None:
            probed = self._detection.command_available(command)
            if probed is not None:
                return probed
        return detect_tool(command)

    # Process helpers

    def _spawn(self, args: List[str], **kwargs) -> subprocess.Popen:
        logger.debug(f"[{self.name}] Running: {' '.join(args)}")
        try:
            return subprocess.Popen(args, **kwargs)
        except FileNotFoundError:
            raise ToolUnavailableError(args[0], context={"handler": self.name}) from None

    def _run(
        self,
        args: List[str],
        operation: str,
        cwd: Optional[str] = None,
        stdout=subprocess.DEVNULL,
        ok_codes: Tuple[int, ...] = (0,),
        tolerate: Optional[ExitCheck] = None,
    ) -> Tuple[int, bytes]:
        """Run one command, raising a typed error on a failing exit code."""
        process = self._spawn(args, cwd=cwd, stdout=stdout, stderr=subprocess.PIPE)
        output, stderr = process.communicate()
        if process.returncode not in ok_codes and not (
            tolerate is not None and tolerate(process.returncode, stderr or b"")
        ):
            # unzip reports some archive errors on stdout
            details = (stderr or b"") + b"\n" + (output or b"")
            raise self._command_error(operation, args[0], process.returncode, details)
        return process.returncode, output or b""

    def _run_pipeline(
        self,
        producer: List[str],
        consumer: List[str],
        operation: str,
        stdout,
        producer_tolerate: Optional[ExitCheck] = None,
    ) -> None:
        """Run ``producer | consumer`` with the consumer writing to stdout."""
        with tempfile.TemporaryFile() as producer_err, tempfile.TemporaryFile() as consumer_err:
            first = self._spawn(producer, stdout=subprocess.PIPE, stderr=producer_err)
            try:
                second = self._spawn(consumer, stdin=first.stdout, stdout=stdout, stderr=consumer_err)
            except BaseException:
                first.kill()
                first.wait()
                raise
            # Only the consumer holds the read end now
            first.stdout.close()
            second.wait()
            first.wait()

            for args, process, err, tolerate in (
                (consumer, second, consumer_err, None),
                (producer, first, producer_err, producer_tolerate),
            ):
                if process.returncode != 0:
                    err.seek(0)
                    details = err.read()
                    if tolerate is not None and tolerate(process.returncode, details):
                        continue
                    raise self._command_error(operation, args[0], process.returncode, details)

    def _tar_create_tolerated(self, returncode: int, stderr: bytes) -> bool:
        """
        Accept tar runs that wrote the archive but skipped some inputs.

        Exit 1 means files changed while being read. Exit 2 is accepted only
        when every stderr line reports an unreadable input.
        """
        lines = [
            line.strip()
            for line in stderr.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if returncode == 2:
            if not lines or not all(
                any(marker in line.lower() for marker in _TAR_SKIPPED_MARKERS) for line in lines
            ):
                return False
        elif returncode != 1:
            return False

        for line in lines:
            logger.warning(f"[{self.name}] {line}")
        return True

    def _command_error(
        self, operation: str, command: str, returncode: int, stderr: bytes
    ) -> CacheError:
        message = stderr.decode("utf-8", errors="replace").strip()
        lowered = message.lower()
        context = {"handler": self.name, "command": command, "exit_code": returncode}

        if "no space left" in lowered:
            return ResourceExhaustedError(
                f"No space left on device during {operation}: {message}",
                ResourceKind.DISK_FULL,
                context,
            )
        if operation == "extract":
            if "permission denied" in lowered:
                return ArchivePermissionError(
                    f"Permission denied during extraction: {message}", context
                )
            if any(marker in lowered for marker in _CORRUPT_MARKERS):
                return ArchiveCorruptError(
                    f"[{self.name}] Archive is corrupt or truncated: {message}", context
                )
            return ExtractionError(
                f"{command} failed with exit code {returncode}: {message}", context
            )
        return CompressionError(
            f"{command} failed with exit code {returncode}: {message}", context
        )

    # Input helpers

    def _existing_sources(self, paths: Sequence[PathLike]) -> List[Tuple[str, str]]:
        """Return (parent, basename) pairs for inputs that exist, warning on the rest."""
        sources = []
        for path in paths:
            absolute = os.path.abspath(os.fspath(path))
            parent, name = os.path.split(absolute)
            if not name:
                logger.warning(f"[{self.name}] Cannot archive filesystem root, skipping: {absolute}")
                continue
            if not os.path.lexists(absolute):
                logger.warning(f"[{self.name}] Path not found, skipping: {absolute}")
                continue
            sources.append((parent, name))
        if not sources:
            raise CompressionError(
                f"[{self.name}] None of the {len(paths)} paths exist", {"handler": self.name}
            )
        return sources

    def _tar_create_args(self, archive: str, sources: List[Tuple[str, str]]) -> List[str]:
        args = ["tar", "-cf", archive]
        for parent, name in sources:
            args.extend(["-C", parent, name])
        return args

    @staticmethod
    def _gzip_level(level: int) -> str:
        # gzip only accepts 1-9
        return f"-{max(level, 1)}"

    @staticmethod
    def _count_lines(output: bytes) -> int:
        return sum(1 for line in output.splitlines() if line.strip())

    def _prepare_target(self, target_dir: PathLike) -> Path:
        target = Path(os.path.abspath(target_dir))
        try:
            target.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise ArchivePermissionError(
                f"Permission denied for extract: {target}", {"handler": self.name}
            ) from e
        return target


class TarGzipShellHandler(_ShellHandler):
    """Handler for tar+gzip archives via ``tar | gzip`` pipelines."""

    format = CompressionFormat.TAR_GZIP
    priority = 100
    extension = ".tar.gz"
    commands = ("tar", "gzip")

    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        level = self._check_level(level)
        output = Path(output_file)
        sources = self._existing_sources(paths)
        logger.debug(f"[{self.name}] Creating archive with {len(sources)} paths at level {level}")

        try:
            with open(output, "wb") as stream:
                self._run_pipeline(
                    self._tar_create_args("-", sources),
                    ["gzip", "-c", self._gzip_level(level)],
                    "compress",
                    stdout=stream,
                    producer_tolerate=self._tar_create_tolerated,
                )
        except BaseException:
            _remove_quietly(output)
            raise

        return self._finish_archive(output, ArchiveStats(entries=len(sources)))

    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        archive = self._check_archive(archive_path)
        target = self._prepare_target(target_dir)
        logger.debug(f"[{self.name}] Extracting {archive} into {target}")

        with tempfile.TemporaryFile() as listing:
            self._run_pipeline(
                ["gzip", "-dc", str(archive)],
                ["tar", "-xvf", "-", "-C", str(target)],
                "extract",
                stdout=listing,
            )
            listing.seek(0)
            extracted = self._count_lines(listing.read())

        logger.debug(f"[{self.name}] Extraction completed: {extracted} entries")
        return extracted


class ZipShellHandler(_ShellHandler):
    """Handler for ZIP archives via the zip and unzip commands."""

    format = CompressionFormat.ZIP
    priority = 50
    extension = ".zip"
    commands = ("zip", "unzip")

    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        level = self._check_level(level)
        output = Path(os.path.abspath(output_file))
        sources = self._existing_sources(paths)
        logger.debug(f"[{self.name}] Creating archive with {len(sources)} paths at level {level}")

        # zip resolves names against its working directory; one run per parent
        by_parent: Dict[str, List[str]] = OrderedDict()
        for parent, name in sources:
            by_parent.setdefault(parent, []).append(name)

        _remove_quietly(output)
        try:
            for parent, names in by_parent.items():
                returncode, _ = self._run(
                    ["zip", "-r", "-q", f"-{level}", str(output), *names],
                    "compress",
                    cwd=parent,
                    ok_codes=(0, 18),
                )
                if returncode == 18:
                    logger.warning(f"[{self.name}] Some files under {parent} could not be read")
        except BaseException:
            _remove_quietly(output)
            raise

        return self._finish_archive(output, ArchiveStats(entries=len(sources)))

    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        archive = self._check_archive(archive_path)
        target = self._prepare_target(target_dir)
        logger.debug(f"[{self.name}] Extracting {archive} into {target}")

        # unzip exits 1 for warnings that still extract everything
        _, listing = self._run(
            ["unzip", "-Z1", str(archive)], "extract", stdout=subprocess.PIPE
        )
        self._run(
            ["unzip", "-o", "-q", str(archive), "-d", str(target)],
            "extract",
            ok_codes=(0, 1),
        )

        extracted = self._count_lines(listing)
        logger.debug(f"[{self.name}] Extraction completed: {extracted} entries")
        return extracted


class GzipShellHandler(_ShellHandler):
    """
    Handler for gzip archives via separate tar and gzip steps.

    Uses an intermediate .tar file next to the output (or archive) and removes
    it whether or not the second step succeeds.
    """

    format = CompressionFormat.GZIP
    priority = 25
    extension = ".tar.gz"
    commands = ("tar", "gzip")

    def compress(
        self, paths: Sequence[PathLike], output_file: PathLike, level: int
    ) -> ArchiveStats:
        level = self._check_level(level)
        output = Path(output_file)
        sources = self._existing_sources(paths)
        intermediate = output.with_name(output.name + ".tmp.tar")
        logger.debug(f"[{self.name}] Creating archive with {len(sources)} paths at level {level}")

        try:
            self._run(
                self._tar_create_args(str(intermediate), sources),
                "compress",
                tolerate=self._tar_create_tolerated,
            )
            with open(output, "wb") as stream:
                self._run(
                    ["gzip", "-c", self._gzip_level(level), str(intermediate)],
                    "compress",
                    stdout=stream,
                )
        except BaseException:
            _remove_quietly(output)
            raise
        finally:
            _remove_quietly(intermediate)

        return self._finish_archive(output, ArchiveStats(entries=len(sources)))

    def extract(self, archive_path: PathLike, target_dir: PathLike) -> int:
        archive = self._check_archive(archive_path)
        target = self._prepare_target(target_dir)
        logger.debug(f"[{self.name}] Extracting {archive} into {target}")

        fd, intermediate = tempfile.mkstemp(suffix=".tar", dir=str(archive.parent))
        try:
            with os.fdopen(fd, "wb") as stream:
                self._run(["gzip", "-dc", str(archive)], "extract", stdout=stream)
            _, listing = self._run(
                ["tar", "-xvf", intermediate, "-C", str(target)],
                "extract",
                stdout=subprocess.PIPE,
            )
        finally:
            _remove_quietly(intermediate)

        extracted = self._count_lines(listing)
        logger.debug(f"[{self.name}] Extraction completed: {extracted} entries")
        return extracted
