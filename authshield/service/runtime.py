from __future__ import annotations

import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from authshield.config import Settings, get_settings, reset_settings_cache
from authshield.logging import get_logger
from authshield.service.audit import SecurityAuditLog, StructlogAuditLog
from authshield.service.fingerprint import FingerprintService
from authshield.service.login_guard import LoginAttemptGuard
from authshield.service.token_revocation import TokenRevocationRegistry
from authshield.storage.common import PrefixedCache
from authshield.storage.memory import MemoryCache
from authshield.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

LOGIN_SCOPE = "login:"
REVOCATION_SCOPE = "revocation:"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the cache and the security components from settings."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        audit: Optional[SecurityAuditLog] = None,
    ):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        self.backend = "redis"
        cache_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        key_prefix=self.settings.cache_key_prefix,
                        socket_timeout=self.settings.cache_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        key_prefix=self.settings.cache_key_prefix,
                        socket_timeout=self.settings.cache_socket_timeout,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                cache_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login lockouts and token revocation; start Redis "
                    "or set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for local fallback."
                ) from cache_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(cache_error) if cache_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockouts and revocations "
                    "are per-process and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(key_prefix=self.settings.cache_key_prefix)
            self.backend = "memory"

        self.audit: SecurityAuditLog = audit or StructlogAuditLog()
        root = PrefixedCache(self.cache, "")
        self.login_guard = LoginAttemptGuard.from_settings(
            root.scoped(LOGIN_SCOPE), self.settings, audit=self.audit
        )
        self.revocations = TokenRevocationRegistry.from_settings(
            root.scoped(REVOCATION_SCOPE), self.settings, audit=self.audit
        )
        self.fingerprints = FingerprintService()
        logger.info("runtime_init_completed", cache_backend=self.backend)

    async def health(self) -> Dict[str, str]:
        healthy = await self.cache.is_healthy()
        return {
            "cache": "ok" if healthy else "unavailable",
            "backend": self.backend,
        }

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use.

    Double-checked locking: fast path without the lock once created.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            try:
                runtime.cache.client.close()
            except Exception:
                # Connection may already be closed
                pass

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
