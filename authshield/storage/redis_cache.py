from __future__ import annotations

import contextlib
from typing import Any, Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authshield.logging import get_logger
from authshield.storage.common import decode_value, encode_value, ensure_ttl
from authshield.storage.errors import CacheUnavailableError

logger = get_logger(__name__)


@contextlib.contextmanager
def _translate_errors(operation: str, key: Optional[str] = None) -> Iterator[None]:
    """Surface redis-py failures as CacheUnavailableError.

    No retry here: the caller owns retry and fail-open/fail-closed policy.
    """
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
        logger.warning("cache_unreachable", operation=operation, key=key, error=str(exc))
        raise CacheUnavailableError(
            f"cache {operation} failed: {exc}", detail={"operation": operation}
        ) from exc
    except RedisError as exc:
        logger.error("cache_command_failed", operation=operation, key=key, error=str(exc))
        raise CacheUnavailableError(
            f"cache {operation} failed: {exc}", detail={"operation": operation}
        ) from exc


class RedisCache:
    """Thin Redis wrapper storing JSON payloads with per-key expiry."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        with _translate_errors("get", full_key):
            raw = await self.client.get(full_key)
        return decode_value(full_key, raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._key(key)
        payload = encode_value(full_key, value)
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("set", full_key):
            await self.client.set(full_key, payload, ex=ttl)

    async def delete(self, key: str) -> None:
        full_key = self._key(key)
        with _translate_errors("delete", full_key):
            await self.client.delete(full_key)

    async def exists(self, key: str) -> bool:
        full_key = self._key(key)
        with _translate_errors("exists", full_key):
            return bool(await self.client.exists(full_key))

    async def is_healthy(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("cache_health_check_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        with _translate_errors("get", full_key):
            raw = self.client.get(full_key)
        return decode_value(full_key, raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._key(key)
        payload = encode_value(full_key, value)
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("set", full_key):
            self.client.set(full_key, payload, ex=ttl)

    async def delete(self, key: str) -> None:
        full_key = self._key(key)
        with _translate_errors("delete", full_key):
            self.client.delete(full_key)

    async def exists(self, key: str) -> bool:
        full_key = self._key(key)
        with _translate_errors("exists", full_key):
            return bool(self.client.exists(full_key))

    async def is_healthy(self) -> bool:
        try:
            return bool(self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("cache_health_check_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
