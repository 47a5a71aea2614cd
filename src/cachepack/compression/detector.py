"""
Compression Tool Detection
==========================

Probes the host for the command-line tools behind the shell-exec handlers.

Detection results live in an explicit DetectionContext rather than a module
global. The context serializes to a JSON string so the save phase of a job can
reuse what the restore phase already probed.
"""

import logging
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

import orjson

from .types import CompressionFormat, DetectionResult

logger = logging.getLogger(__name__)

# Shell-exec formats and the command each one depends on
SHELL_TOOLS: Dict[CompressionFormat, str] = {
    CompressionFormat.TAR_GZIP: "tar",
    CompressionFormat.ZIP: "zip",
    CompressionFormat.GZIP: "gzip",
}

PROBE_TIMEOUT_SECONDS = 10


def detect_tool(command: str) -> bool:
    """
    Check if a command is available on PATH.

    Fails closed: any lookup or spawn error is reported as unavailable.
    """
    try:
        return shutil.which(command) is not None
    except OSError as e:
        logger.debug(f"  {command}: lookup failed ({e})")
        return False


def get_tool_version(command: str, version_flag: str = "--version") -> Optional[str]:
    """Return the first line of the command's version output, if any."""
    try:
        completed = subprocess.run(
            [command, version_flag],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"  {command} {version_flag} failed: {e}")
        return None

    output = completed.stdout.strip() or completed.stderr.strip()
    if not output:
        return None
    return output.splitlines()[0].strip()


def detect_format(format: CompressionFormat) -> DetectionResult:
    """Probe the tool behind a shell-exec format."""
    command = SHELL_TOOLS[format]
    logger.debug(f"Detecting {command} availability...")

    available = detect_tool(command)
    version = get_tool_version(command) if available else None

    logger.debug(
        f"  {command}: {'Available' if available else 'Not found'}"
        + (f" ({version})" if version else "")
    )
    return DetectionResult(format=format, available=available, command=command, version=version)


def detect_all_tools(formats: Optional[Iterable[CompressionFormat]] = None) -> List[DetectionResult]:
    """
    Detect all shell compression tools concurrently.

    Probes are independent, so they run in a thread pool; results are returned
    in the order of ``formats`` regardless of completion order.
    """
    formats = list(formats or SHELL_TOOLS)
    with ThreadPoolExecutor(max_workers=len(formats) or 1) as executor:
        return list(executor.map(detect_format, formats))


class DetectionContext:
    """
    Detection results for one job, shared by every handler selection.

    Build it with ``DetectionContext.detect()`` (probes now) or
    ``DetectionContext.from_state(state)`` (reuses a previous phase's probes).
    """

    def __init__(self, results: Iterable[DetectionResult] = ()):
        self._results: Dict[CompressionFormat, DetectionResult] = {
            result.format: result for result in results
        }

    @classmethod
    def detect(cls) -> "DetectionContext":
        logger.info("🔍 Detecting available compression tools...")
        context = cls(detect_all_tools())
        context.log_summary()
        return context

    @classmethod
    def from_state(cls, state: Optional[str]) -> "DetectionContext":
        """Restore a context from ``to_state()`` output, re-probing if unusable."""
        if state:
            try:
                context = cls(DetectionResult.from_dict(item) for item in orjson.loads(state))
                logger.debug("Loaded detection results from saved state")
                return context
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Failed to parse saved detection results ({e}), re-detecting")
        return cls.detect()

    def to_state(self) -> str:
        return orjson.dumps([result.to_dict() for result in self.results]).decode("utf-8")

    @property
    def results(self) -> List[DetectionResult]:
        return list(self._results.values())

    def get(self, format: CompressionFormat) -> Optional[DetectionResult]:
        return self._results.get(format)

    def is_available(self, format: CompressionFormat) -> bool:
        """Report availability; formats never probed count as unavailable."""
        result = self._results.get(format)
        return bool(result and result.available)

    def command_available(self, command: str) -> Optional[bool]:
        """Look up a probed command by name; None if it was never probed."""
        for result in self._results.values():
            if result.command == command:
                return result.available
        return None

    def log_summary(self) -> None:
        for result in self.results:
            logger.info(
                f"   {result.command}: {'✅ Available' if result.available else '❌ Not found'}"
                + (f" ({result.version})" if result.version else "")
            )

    def __repr__(self) -> str:
        available = [r.command for r in self.results if r.available]
        return f"<DetectionContext available={available}>"
