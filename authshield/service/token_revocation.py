"""Deny-list for self-verifying tokens.

Refresh tokens are stateless, so revoking one before its natural expiry needs
an out-of-band record. Entries are keyed by a fixed-length SHA-256 digest of
the raw token so secrets never reach the cache, and each entry's TTL is
clamped to the refresh-token horizon: the registry prunes itself and an entry
can never outlive the token it blocks.

Three granularities are supported, checked independently by the caller:
a single token, a token family (every rotation descending from one login),
and a user (logout-everywhere, forced password change). Detecting replay is
the issuing flow's job; this module only records and answers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from authshield.config import Settings
from authshield.logging import get_logger
from authshield.service.audit import SecurityAuditLog, StructlogAuditLog
from authshield.service.errors import TokenRevokedError, ValidationError
from authshield.service.hashing import (
    TOKEN_DIGEST_LENGTH,
    Digest,
    IdFactory,
    digest,
    new_family_id,
)
from authshield.storage.common import TTLCache
from authshield.storage.errors import CacheSerializationError
from authshield.storage.models import BlacklistEntry

logger = get_logger(__name__)

# 7 days, the refresh token lifetime
TOKEN_MAX_LIFETIME = 7 * 24 * 60 * 60

BLACKLIST_PREFIX = "blacklist:"
USER_BLACKLIST_PREFIX = "blacklist:user:"
TOKEN_FAMILY_PREFIX = "token_family:"

LAYER_TOKEN = "token"
LAYER_USER = "user"
LAYER_FAMILY = "family"

_LAYER_ERRORS = {
    LAYER_TOKEN: ("token_revoked", "Refresh token has been revoked"),
    LAYER_USER: (
        "session_invalidated",
        "All sessions have been invalidated. Please log in again.",
    ),
    LAYER_FAMILY: (
        "token_family_revoked",
        "This session family has been revoked. Please log in again.",
    ),
}


@dataclass
class RevocationStatus:
    revoked: bool
    layer: Optional[str] = None
    revoked_at: Optional[datetime] = None


class TokenRevocationRegistry:
    """Records and answers revocations of tokens, token families, and users."""

    def __init__(
        self,
        cache: TTLCache,
        *,
        audit: Optional[SecurityAuditLog] = None,
        token_max_lifetime_seconds: int = TOKEN_MAX_LIFETIME,
        clock: Optional[Callable[[], datetime]] = None,
        digest_fn: Digest = digest,
        id_factory: IdFactory = new_family_id,
    ) -> None:
        self.cache = cache
        self.audit: SecurityAuditLog = audit or StructlogAuditLog()
        self.token_max_lifetime_seconds = token_max_lifetime_seconds
        self._clock = clock
        self._digest = digest_fn
        self._id_factory = id_factory

    @classmethod
    def from_settings(
        cls,
        cache: TTLCache,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "TokenRevocationRegistry":
        return cls(
            cache,
            audit=audit,
            token_max_lifetime_seconds=settings.token_max_lifetime_seconds,
            clock=clock,
        )

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _require(value: str, name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} must be a non-empty string")
        return value

    def _ttl(self, ttl: Optional[int]) -> int:
        if ttl is None:
            return self.token_max_lifetime_seconds
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ValidationError("ttl must be a positive number of seconds", detail={"ttl": ttl})
        if ttl > self.token_max_lifetime_seconds:
            logger.debug(
                "blacklist_ttl_clamped",
                requested=ttl,
                maximum=self.token_max_lifetime_seconds,
            )
        return min(ttl, self.token_max_lifetime_seconds)

    def _token_key(self, raw_token: str) -> str:
        return f"{BLACKLIST_PREFIX}{self._digest(raw_token, TOKEN_DIGEST_LENGTH)}"

    def _entry(self, *, all_tokens: bool = False) -> dict:
        return BlacklistEntry(blacklisted_at=self._now(), all_tokens=all_tokens).to_cache()

    def generate_token_family(self) -> str:
        return self._id_factory()

    async def blacklist_token(self, raw_token: str, ttl: Optional[int] = None) -> None:
        self._require(raw_token, "raw_token")
        ttl_seconds = self._ttl(ttl)
        key = self._token_key(raw_token)
        await self.cache.set(key, self._entry(), ttl_seconds)
        self.audit.log_security_event(
            "token_blacklisted",
            token_hash=key[len(BLACKLIST_PREFIX):],
            ttl_seconds=ttl_seconds,
        )

    async def blacklist_token_until(self, raw_token: str, expires_at: datetime) -> bool:
        """Blacklist ``raw_token`` until its own expiry.

        Returns False without writing when the token has already expired,
        since an expired token is rejected by signature checks anyway.
        """
        self._require(raw_token, "raw_token")
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        remaining = int((expires_at - self._now()).total_seconds())
        if remaining <= 0:
            return False
        await self.blacklist_token(raw_token, remaining)
        return True

    async def is_token_blacklisted(self, raw_token: str) -> bool:
        self._require(raw_token, "raw_token")
        return await self.cache.exists(self._token_key(raw_token))

    async def blacklist_token_family(self, family_id: str, ttl: Optional[int] = None) -> None:
        self._require(family_id, "family_id")
        ttl_seconds = self._ttl(ttl)
        await self.cache.set(f"{TOKEN_FAMILY_PREFIX}{family_id}", self._entry(), ttl_seconds)
        self.audit.log_security_event(
            "token_family_blacklisted", family_id=family_id, ttl_seconds=ttl_seconds
        )

    async def is_token_family_blacklisted(self, family_id: str) -> bool:
        self._require(family_id, "family_id")
        return await self.cache.exists(f"{TOKEN_FAMILY_PREFIX}{family_id}")

    async def blacklist_user_tokens(self, user_id: str, ttl: Optional[int] = None) -> None:
        self._require(user_id, "user_id")
        ttl_seconds = self._ttl(ttl)
        await self.cache.set(
            f"{USER_BLACKLIST_PREFIX}{user_id}", self._entry(all_tokens=True), ttl_seconds
        )
        self.audit.log_security_event(
            "user_tokens_blacklisted", user_id=user_id, ttl_seconds=ttl_seconds
        )

    async def are_user_tokens_blacklisted(self, user_id: str) -> bool:
        self._require(user_id, "user_id")
        return await self.cache.exists(f"{USER_BLACKLIST_PREFIX}{user_id}")

    async def _entry_at(self, key: str) -> Optional[BlacklistEntry]:
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            return BlacklistEntry.from_cache(data)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise CacheSerializationError("corrupt blacklist entry", detail={"key": key}) from exc

    async def check_token(
        self,
        raw_token: str,
        *,
        family_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RevocationStatus:
        """Check every applicable layer; the first hit wins.

        Order is token, user, family: the cheapest and most specific answer
        first, and the user flag before the family so a logout-everywhere is
        reported as such.
        """
        self._require(raw_token, "raw_token")
        layers = [(LAYER_TOKEN, self._token_key(raw_token))]
        if user_id is not None:
            layers.append((LAYER_USER, f"{USER_BLACKLIST_PREFIX}{self._require(user_id, 'user_id')}"))
        if family_id is not None:
            layers.append((LAYER_FAMILY, f"{TOKEN_FAMILY_PREFIX}{self._require(family_id, 'family_id')}"))

        for layer, key in layers:
            entry = await self._entry_at(key)
            if entry is not None:
                return RevocationStatus(
                    revoked=True, layer=layer, revoked_at=entry.blacklisted_at
                )
        return RevocationStatus(revoked=False)

    async def ensure_not_revoked(
        self,
        raw_token: str,
        *,
        family_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        status = await self.check_token(raw_token, family_id=family_id, user_id=user_id)
        if not status.revoked:
            return
        error_code, message = _LAYER_ERRORS[status.layer]
        logger.info("revoked_token_presented", layer=status.layer, user_id=user_id)
        raise TokenRevokedError(
            message,
            error_code=error_code,
            detail={"layer": status.layer},
        )
