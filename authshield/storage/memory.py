from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from authshield.logging import get_logger
from authshield.storage.common import decode_value, encode_value, ensure_ttl


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryCache:
    """In-process TTL cache for tests and single-node development.

    Expired entries are dropped lazily when touched; there is no reaper
    thread. Values round-trip through JSON exactly like RedisCache so callers
    see identical shapes from either backend.
    """

    def __init__(
        self,
        *,
        key_prefix: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.key_prefix = key_prefix
        self._clock = clock or _utcnow
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.RLock()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _live_payload(self, full_key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(full_key, None)
                return None
            return payload

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        return decode_value(full_key, self._live_payload(full_key))

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._key(key)
        payload = encode_value(full_key, value)
        ttl = ensure_ttl(ttl_seconds)
        with self._lock:
            self._entries[full_key] = (payload, self._clock() + timedelta(seconds=ttl))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(self._key(key), None)

    async def exists(self, key: str) -> bool:
        return self._live_payload(self._key(key)) is not None

    async def is_healthy(self) -> bool:
        return True

    async def ttl(self, key: str) -> Optional[int]:
        """Whole seconds until ``key`` expires, or None when absent."""
        full_key = self._key(key)
        with self._lock:
            if self._live_payload(full_key) is None:
                return None
            _, expires_at = self._entries[full_key]
            return int((expires_at - self._clock()).total_seconds())

    def clear(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        self.logger.debug("memory_cache_cleared", entries=dropped)

    async def close(self) -> None:
        self.clear()
