"""Common cache utilities shared between the Redis and in-memory backends.

Both backends store JSON-encoded payloads so a value read back from either one
has the same shape, and both raise the same errors on corrupt payloads.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Protocol, runtime_checkable

from authshield.storage.errors import CacheSerializationError


@runtime_checkable
class TTLCache(Protocol):
    """Key/value cache where every entry carries its own expiry."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def is_healthy(self) -> bool: ...


def encode_value(key: str, value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise CacheSerializationError(
            "cache value is not JSON serializable", detail={"key": key}
        ) from exc


def decode_value(key: str, raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise CacheSerializationError(
            "corrupt cache payload", detail={"key": key}
        ) from exc


def ensure_ttl(ttl_seconds: int) -> int:
    """Reject TTLs Redis would refuse (``SET ... EX 0`` is an error)."""
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError(f"ttl_seconds must be a positive integer, got {ttl_seconds!r}")
    return ttl_seconds


class PrefixedCache:
    """View of a cache where every key is namespaced under ``prefix``.

    Components receive one of these instead of the raw client so their key
    spaces cannot collide; nesting composes prefixes left to right.
    """

    def __init__(self, cache: TTLCache, prefix: str) -> None:
        self._cache = cache
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def scoped(self, prefix: str) -> "PrefixedCache":
        return PrefixedCache(self._cache, self.prefix + prefix)

    async def get(self, key: str) -> Optional[Any]:
        return await self._cache.get(self._key(key))

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._cache.set(self._key(key), value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._cache.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        return await self._cache.exists(self._key(key))

    async def is_healthy(self) -> bool:
        return await self._cache.is_healthy()


__all__ = [
    "TTLCache",
    "PrefixedCache",
    "encode_value",
    "decode_value",
    "ensure_ttl",
]
