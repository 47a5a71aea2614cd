"""
Redis/Valkey Store Backend
==========================

Store backend built on redis-py. Works against any server speaking the Redis
protocol (Redis, Valkey, KeyDB).

Connection failures are classified from the redis-py exception type and the
OS error it wraps, so callers can print targeted troubleshooting hints.
"""

import errno
import logging
import socket
import time
from typing import List, Optional

import redis
from redis.exceptions import (
    AuthenticationError,
    OutOfMemoryError,
    RedisError,
    ResponseError,
)
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import StoreConfig
from ..error_handling import (
    CacheStoreError,
    ConnectionFailure,
    ResourceExhaustedError,
    ResourceKind,
    StoreConnectionError,
)
from .base import StoreBackend

logger = logging.getLogger(__name__)

RETRY_DELAY_STEP = 0.2
MAX_RETRY_DELAY = 2.0
SCAN_COUNT = 100


def retry_delay(attempt: int) -> float:
    """Delay in seconds before connection attempt ``attempt + 1``."""
    return min(attempt * RETRY_DELAY_STEP, MAX_RETRY_DELAY)


def _causes(exc: BaseException):
    """Walk an exception and the errors it was raised from."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def classify_connection_error(exc: Optional[BaseException]) -> ConnectionFailure:
    """Map a redis-py connection failure to its root cause."""
    if exc is None:
        return ConnectionFailure.UNKNOWN

    for error in _causes(exc):
        if isinstance(error, AuthenticationError):
            return ConnectionFailure.AUTH
        if isinstance(error, ResponseError) and str(error).startswith(("NOAUTH", "WRONGPASS")):
            return ConnectionFailure.AUTH
        if isinstance(error, (RedisTimeoutError, socket.timeout, TimeoutError)):
            return ConnectionFailure.TIMEOUT
        if isinstance(error, socket.gaierror):
            return ConnectionFailure.DNS
        if isinstance(error, ConnectionRefusedError):
            return ConnectionFailure.REFUSED
        if isinstance(error, OSError) and error.errno == errno.ETIMEDOUT:
            return ConnectionFailure.TIMEOUT

    # redis-py flattens some socket errors into the message of its own ConnectionError
    if isinstance(exc, RedisConnectionError):
        message = str(exc)
        if "Connection refused" in message or f"Error {errno.ECONNREFUSED} " in message:
            return ConnectionFailure.REFUSED
        if "Name or service not known" in message or "nodename nor servname" in message:
            return ConnectionFailure.DNS
    return ConnectionFailure.UNKNOWN


def _is_oom(exc: RedisError) -> bool:
    return isinstance(exc, OutOfMemoryError) or (
        isinstance(exc, ResponseError) and str(exc).startswith("OOM")
    )


class RedisStore(StoreBackend):
    """Store backend for Redis-protocol servers."""

    def __init__(self, client: "redis.Redis", config: Optional[StoreConfig] = None):
        self._client = client
        self.config = config or StoreConfig()

    @classmethod
    def connect(cls, config: StoreConfig) -> "RedisStore":
        """
        Connect and validate with PING, retrying with a linear backoff.

        Args:
            config: Store connection settings

        Returns:
            Connected RedisStore

        Raises:
            StoreConnectionError: If every attempt fails; ``reason`` holds the
                classified root cause
        """
        attempts = config.connect_attempts
        last_error: Optional[RedisError] = None
        logger.info(f"🔌 Connecting to store at {config.host}:{config.port}...")

        for attempt in range(1, attempts + 1):
            client = redis.Redis(
                host=config.host,
                port=config.port,
                password=config.password or None,
                socket_timeout=config.socket_timeout,
                socket_connect_timeout=config.socket_timeout,
                decode_responses=False,
            )
            try:
                client.ping()
            except RedisError as e:
                last_error = e
                client.close()
                logger.warning(f"Connection attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    delay = retry_delay(attempt)
                    logger.debug(f"Retrying connection in {delay:.1f}s")
                    time.sleep(delay)
                continue

            logger.info(f"✅ Connected to store at {config.host}:{config.port}")
            return cls(client, config)

        reason = classify_connection_error(last_error)
        raise StoreConnectionError(
            f"Failed to connect to {config.host}:{config.port} "
            f"after {attempts} attempts: {last_error}",
            reason,
            {"host": config.host, "port": config.port},
        ) from last_error

    def get(self, key: str) -> Optional[bytes]:
        try:
            data = self._client.get(key)
        except RedisError as e:
            raise CacheStoreError(f"Failed to read key {key}: {e}", {"key": key}) from e
        logger.debug(f"GET {key}: {'hit' if data is not None else 'miss'}")
        return data

    def set_with_expiry(self, key: str, data: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise CacheStoreError(f"TTL must be positive, got {ttl_seconds}", {"key": key})
        try:
            self._client.setex(key, ttl_seconds, data)
        except RedisError as e:
            if _is_oom(e):
                raise ResourceExhaustedError(
                    f"Store out of memory while writing {key}: {e}",
                    ResourceKind.STORE_OOM,
                    {"key": key, "size": len(data)},
                ) from e
            raise CacheStoreError(f"Failed to write key {key}: {e}", {"key": key}) from e
        logger.debug(f"SETEX {key} ({len(data)} bytes, ttl={ttl_seconds}s)")

    def exists(self, key: str) -> bool:
        try:
            return bool(self._client.exists(key))
        except RedisError as e:
            raise CacheStoreError(f"Failed to check key {key}: {e}", {"key": key}) from e

    def scan_by_prefix(self, pattern: str) -> List[str]:
        keys: List[str] = []
        seen = set()
        cursor = 0
        iterations = 0
        try:
            while True:
                cursor, batch = self._client.scan(cursor=cursor, match=pattern, count=SCAN_COUNT)
                iterations += 1
                logger.debug(
                    f"SCAN iteration {iterations}: cursor={cursor}, {len(batch)} keys"
                )
                for key in batch:
                    name = key.decode("utf-8") if isinstance(key, bytes) else key
                    # SCAN may return a key more than once
                    if name not in seen:
                        seen.add(name)
                        keys.append(name)
                if int(cursor) == 0:
                    break
        except RedisError as e:
            raise CacheStoreError(
                f"SCAN failed for pattern {pattern}: {e}",
                {"pattern": pattern, "iterations": iterations},
            ) from e

        logger.debug(f"SCAN {pattern}: {len(keys)} keys in {iterations} iterations")
        return keys

    def close(self) -> None:
        try:
            self._client.execute_command("QUIT")
        except RedisError as e:
            logger.debug(f"QUIT failed, closing anyway: {e}")
        self._client.close()
        logger.debug("Store connection closed")
