"""
Redis client for publish notifications.

A single pooled async client per process, created lazily. Redis is optional:
with CLIPSTREAM_REDIS_URL unset every call is a no-op. Repeated failures open
a circuit breaker so a dead Redis costs one fast check per request instead of
a socket timeout.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

# Failures before the circuit opens, and the longest it stays open (seconds)
CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_MAX_OPEN_SECONDS = 300


class RedisClient:
    """Singleton Redis client with connection pooling and a circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None

    def __init__(self, url: str = REDIS_URL) -> None:
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy = False
        self._last_health_check: Optional[datetime] = None
        self._consecutive_failures = 0
        self._circuit_open_until: Optional[datetime] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        """Get the class lock, recreating it if it belongs to another event loop."""
        if cls._lock is None or getattr(cls._lock, "_loop", None) not in (None, _running_loop()):
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        """Get or create the singleton instance."""
        async with cls._get_lock():
            if cls._instance is None:
                instance = cls()
                await instance._connect()
                cls._instance = instance
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close and forget the singleton (shutdown and tests)."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None

    async def _connect(self) -> None:
        if not self.url:
            logger.info("Redis URL not configured, publish notifications disabled")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._healthy = True
            self._last_health_check = datetime.now(timezone.utc)
            # Never log credentials embedded in the URL
            logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._healthy = False

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    @property
    def is_available(self) -> bool:
        """Configured, connected, and not inside an open circuit window."""
        if not self.url or self._client is None:
            return False
        if self._circuit_open_until is not None:
            if datetime.now(timezone.utc) < self._circuit_open_until:
                return False
            self._circuit_open_until = None
            logger.info("Redis circuit breaker half-open, retrying")
            return True
        return self._healthy

    async def get_client(self) -> Optional[Redis]:
        """The Redis client, or None when unavailable."""
        return self._client if self.is_available else None

    async def publish(self, channel: str, payload: str) -> bool:
        """Publish one message. Returns False instead of raising on Redis errors."""
        client = await self.get_client()
        if client is None:
            return False
        try:
            await client.publish(channel, payload)
        except RedisError as e:
            logger.warning(f"Redis publish to {channel} failed: {e}")
            self._record_failure()
            return False
        self._record_success()
        return True

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        self._healthy = False
        if self._consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            # 30s, 60s, 120s, ... capped
            backoff = min(
                CIRCUIT_MAX_OPEN_SECONDS,
                30 * (2 ** (self._consecutive_failures - CIRCUIT_FAILURE_THRESHOLD)),
            )
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )

    def _record_success(self) -> None:
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._healthy = True
        self._circuit_open_until = None

    async def health_check(self) -> bool:
        """Ping Redis, at most once per REDIS_HEALTH_CHECK_INTERVAL."""
        if self._client is None:
            return False

        now = datetime.now(timezone.utc)
        if self._last_health_check is not None:
            if (now - self._last_health_check).total_seconds() < REDIS_HEALTH_CHECK_INTERVAL:
                return self._healthy

        self._last_health_check = now
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            self._record_failure()
            return False
        self._record_success()
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except (RedisError, OSError) as e:
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


async def get_redis() -> Optional[RedisClient]:
    """
    The shared RedisClient if Redis is configured and available, else None.
    """
    client = await RedisClient.get_instance()
    return client if client.is_available else None
