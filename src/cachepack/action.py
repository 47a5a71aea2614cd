"""
GitHub Actions Entry Points
===========================

Glue between the runner and the CacheOrchestrator:

- ActionIO reads ``INPUT_*`` variables and writes outputs and phase state
  through the runner's ``GITHUB_OUTPUT`` / ``GITHUB_STATE`` files
- run_restore() is the main step; it fails the job on fatal errors
- run_save() is the post step; it never fails the job

Run either phase with ``python -m cachepack restore`` / ``python -m cachepack save``.
"""

import argparse
import logging
import os
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

import orjson

from .compression import BackendPreference, DetectionContext, HandlerRegistry
from .config import CacheConfig, create_cache_config
from .error_handling import CacheConfigurationError, CacheError, log_troubleshooting
from .orchestrator import CacheOrchestrator
from .paths import parse_multiline
from .state import PhaseState

logger = logging.getLogger(__name__)

STATE_NAME = "cache-state"
STATE_FILE_NAME = "cachepack-state.json"


class ActionIO:
    """
    Runner I/O: inputs, outputs and state persisted between job phases.

    Outside a runner (no GITHUB_STATE), state goes to a JSON file under
    RUNNER_TEMP or the system temp dir so both phases can run locally.
    """

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.outputs: Dict[str, str] = {}

    # Inputs

    def get_input(self, name: str, required: bool = False, default: str = "") -> str:
        value = self.environ.get(f"INPUT_{name.replace(' ', '_').upper()}", "").strip()
        if required and not value:
            raise CacheConfigurationError(f"Input required and not supplied: {name}")
        return value or default

    # Outputs and state

    def set_output(self, name: str, value: str) -> None:
        self.outputs[name] = value
        if not self._append_command_file("GITHUB_OUTPUT", name, value):
            logger.info(f"Output {name}={value}")

    def save_state(self, name: str, value: str) -> None:
        if self._append_command_file("GITHUB_STATE", name, value):
            return
        path = self.state_file
        states = self._read_state_file()
        states[name] = value
        path.write_bytes(orjson.dumps(states))
        logger.debug(f"Saved state {name} to {path}")

    def get_state(self, name: str) -> str:
        value = self.environ.get(f"STATE_{name}")
        if value is not None:
            return value
        return self._read_state_file().get(name, "")

    @property
    def state_file(self) -> Path:
        directory = self.environ.get("RUNNER_TEMP") or tempfile.gettempdir()
        return Path(directory) / STATE_FILE_NAME

    def _read_state_file(self) -> Dict[str, str]:
        try:
            return orjson.loads(self.state_file.read_bytes())
        except FileNotFoundError:
            return {}
        except orjson.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
            return {}

    def _append_command_file(self, variable: str, name: str, value: str) -> bool:
        """Append name/value to a runner command file using a heredoc delimiter."""
        path = self.environ.get(variable)
        if not path:
            return False
        delimiter = f"ghadelimiter_{uuid.uuid4()}"
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        return True


def _int_input(io: ActionIO, name: str, default: int) -> int:
    raw = io.get_input(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise CacheConfigurationError(f"Input {name} must be an integer, got '{raw}'") from None


def config_from_inputs(io: ActionIO) -> CacheConfig:
    """Build the cache configuration from action inputs."""
    defaults = CacheConfig()
    config = create_cache_config(
        redis_host=io.get_input("redis-host", default=defaults.store.host),
        redis_port=_int_input(io, "redis-port", defaults.store.port),
        redis_password=io.get_input("redis-password") or None,
        backend=io.get_input("store-backend", default=defaults.store.backend),
        ttl_seconds=_int_input(io, "ttl", defaults.ttl_seconds),
        compression_level=_int_input(io, "compression", defaults.compression_level),
        compression_backend=io.get_input(
            "compression-backend", default=defaults.archive.compression_backend
        ),
        max_cache_size_bytes=_int_input(io, "max-cache-size", defaults.max_cache_size_bytes),
    )
    if config.store.backend == "memory":
        logger.warning(
            "⚠️ store-backend is 'memory': entries live only inside this process "
            "and are not shared between the restore and save phases"
        )
    return config


def run_restore(
    io: Optional[ActionIO] = None,
    orchestrator_factory: Callable[..., CacheOrchestrator] = CacheOrchestrator,
) -> int:
    """Restore phase. Returns the process exit code."""
    io = io or ActionIO()
    logger.info("🚀 Cache Action - Restore Phase")

    try:
        patterns = parse_multiline(io.get_input("path", required=True))
        key = io.get_input("key", required=True)
        restore_keys = parse_multiline(io.get_input("restore-keys"))
        config = config_from_inputs(io)

        logger.info(f"📂 Cache paths ({len(patterns)} patterns):")
        for pattern in patterns:
            logger.info(f"   - {pattern}")
        if restore_keys:
            logger.info(f"🔑 Restore keys ({len(restore_keys)} fallbacks):")
            for restore_key in restore_keys:
                logger.info(f"   - {restore_key}")

        result = orchestrator_factory(config).restore(key, patterns, restore_keys)
    except Exception as e:
        logger.error(f"❌ Cache restore failed: {e}")
        logger.debug("Stack trace:", exc_info=True)
        log_troubleshooting(e)
        return 1

    io.set_output("cache-hit", "true" if result.cache_hit else "false")
    io.set_output("cache-matched-key", result.matched_key)

    logger.info("📊 Cache Statistics:")
    if result.phase_state is not None:
        io.save_state(STATE_NAME, result.phase_state.to_json())
        logger.info("   Cache Hit: No (miss)")
    else:
        # Empty state tells the save phase there is nothing to do
        io.save_state(STATE_NAME, "")
        logger.info(
            f"   Cache Hit: {'Yes (exact match)' if result.cache_hit else 'No (restored from fallback)'}"
        )
        logger.info(f"   Matched Key: {result.matched_key}")
    return 0


def run_save(
    io: Optional[ActionIO] = None,
    orchestrator_factory: Callable[..., CacheOrchestrator] = CacheOrchestrator,
) -> int:
    """Save phase. Always returns 0 so the job never fails here."""
    io = io or ActionIO()
    logger.info("💾 Cache Action - Save Phase")

    raw_state = io.get_state(STATE_NAME)
    if not raw_state:
        logger.info("ℹ️  Cache was restored successfully - skipping save")
        return 0

    try:
        state = PhaseState.from_json(raw_state)
        config = state.to_config()
    except CacheError as e:
        logger.warning(f"⚠️  Failed to save cache: {e}")
        logger.warning("Job will continue (cache save failures are non-fatal)")
        return 0

    registry = None
    if config.compression_backend is not BackendPreference.NATIVE:
        registry = HandlerRegistry(DetectionContext.from_state(state.detection))

    result = orchestrator_factory(config, registry=registry).save(state.key, state.path_patterns)
    logger.debug(f"Save outcome: {result.outcome.value}")
    return 0


# =============================================================================
# Logging and CLI
# =============================================================================


def _escape_command_data(message: str) -> str:
    return message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


class WorkflowCommandFormatter(logging.Formatter):
    """Prefix records with GitHub workflow commands so the runner annotates them."""

    PREFIXES = {
        logging.DEBUG: "::debug::",
        logging.WARNING: "::warning::",
        logging.ERROR: "::error::",
        logging.CRITICAL: "::error::",
    }

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        prefix = self.PREFIXES.get(record.levelno)
        if prefix is None:
            return message
        return prefix + _escape_command_data(message)


def configure_logging(verbose: bool = False, environ: Optional[Dict[str, str]] = None) -> None:
    """Send cachepack logs to stdout, as workflow commands when on a runner."""
    environ = os.environ if environ is None else environ
    debug = verbose or environ.get("RUNNER_DEBUG") == "1"

    handler = logging.StreamHandler(sys.stdout)
    if environ.get("GITHUB_ACTIONS") == "true":
        handler.setFormatter(WorkflowCommandFormatter("%(message)s"))
    else:
        handler.setFormatter(logging.Formatter("%(levelname)-8s %(name)s: %(message)s"))

    package_logger = logging.getLogger("cachepack")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    package_logger.propagate = False


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="cachepack",
        description="Restore or save a CI cache held in a Redis/Valkey store.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "phase", choices=["restore", "save"], help="Job phase to run"
    )
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    if args.phase == "restore":
        return run_restore()
    return run_save()
