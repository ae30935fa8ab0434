"""Brute-force protection for the login flow.

Failed attempts are counted per identity in the shared cache. Repeated
failures first impose an exponential backoff between attempts and, once the
threshold is reached, a temporary lockout. All state self-expires via cache
TTLs; there is no reaper.

The attempts and lockout keys are written in separate round trips with no
transaction. Every decision is recomputed from whatever is in the cache at
call time, so a crash between the two writes, or two concurrent failures
reading the same count, only skews the counter by the number of in-flight
requests. An exact count would need an atomic increment primitive in the
cache interface.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from authshield.config import FailurePolicy, Settings
from authshield.logging import get_logger
from authshield.service.audit import SecurityAuditLog, StructlogAuditLog
from authshield.service.errors import (
    AccountLockedError,
    LoginThrottledError,
    ServiceUnavailableError,
    ValidationError,
)
from authshield.service.hashing import Digest, digest, hash_identity
from authshield.storage.common import TTLCache
from authshield.storage.errors import CacheSerializationError, CacheUnavailableError
from authshield.storage.models import AttemptRecord, LockoutRecord

logger = get_logger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION = 15 * 60
ATTEMPT_WINDOW = 15 * 60
BACKOFF_BASE = 1
BACKOFF_MAX = 60

ATTEMPTS_PREFIX = "login_attempts:"
LOCKOUT_PREFIX = "account_lockout:"
LOCKOUT_REASON = "Too many failed login attempts"
WARNING_THRESHOLD = 2

DENY_LOCKED = "locked"
DENY_BACKOFF = "backoff"
DENY_UNAVAILABLE = "unavailable"


@dataclass
class LoginDecision:
    allowed: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None
    wait_seconds: Optional[int] = None
    message: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.reason == DENY_LOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining_attempts": self.remaining_attempts,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "wait_seconds": self.wait_seconds,
            "message": self.message,
        }

    def raise_for_denial(self) -> None:
        """Raise the service error matching a denied decision; no-op when allowed."""
        if self.allowed:
            return
        detail = {"retry_after": self.wait_seconds, **self.to_dict()}
        message = self.message or "Login attempt denied"
        if self.reason == DENY_LOCKED:
            raise AccountLockedError(message, detail=detail)
        if self.reason == DENY_UNAVAILABLE:
            raise ServiceUnavailableError(message, detail=detail)
        raise LoginThrottledError(message, detail=detail)


def backoff_delay(
    attempt_count: int, base: int = BACKOFF_BASE, maximum: int = BACKOFF_MAX
) -> int:
    """Seconds to wait after ``attempt_count`` failures: base * 2**(n-2), capped."""
    if attempt_count <= 1:
        return 0
    return min(base * 2 ** (attempt_count - 2), maximum)


def _ceil_seconds(delta: timedelta) -> int:
    return max(0, math.ceil(delta.total_seconds()))


class LoginAttemptGuard:
    """Admit/deny login attempts and track failures per identity."""

    def __init__(
        self,
        cache: TTLCache,
        *,
        audit: Optional[SecurityAuditLog] = None,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
        lockout_duration_seconds: int = LOCKOUT_DURATION,
        attempt_window_seconds: int = ATTEMPT_WINDOW,
        backoff_base_seconds: int = BACKOFF_BASE,
        backoff_max_seconds: int = BACKOFF_MAX,
        failure_policy: FailurePolicy = FailurePolicy.CLOSED,
        clock: Optional[Callable[[], datetime]] = None,
        digest_fn: Digest = digest,
    ) -> None:
        self.cache = cache
        self.audit: SecurityAuditLog = audit or StructlogAuditLog()
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration_seconds = lockout_duration_seconds
        self.attempt_window_seconds = attempt_window_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.failure_policy = FailurePolicy(failure_policy)
        self._clock = clock
        self._digest = digest_fn

    @classmethod
    def from_settings(
        cls,
        cache: TTLCache,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "LoginAttemptGuard":
        return cls(
            cache,
            audit=audit,
            max_failed_attempts=settings.max_failed_attempts,
            lockout_duration_seconds=settings.lockout_duration_seconds,
            attempt_window_seconds=settings.attempt_window_seconds,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
            failure_policy=settings.lockout_failure_policy,
            clock=clock,
        )

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _identity_hash(self, identity: str) -> str:
        if not isinstance(identity, str) or not identity.strip():
            raise ValidationError("identity must be a non-empty string")
        return hash_identity(identity, self._digest)

    @staticmethod
    def _validate_source_ip(source_ip: str) -> None:
        if not isinstance(source_ip, str):
            raise ValidationError("source_ip must be a string")

    def _backoff(self, count: int) -> int:
        return backoff_delay(count, self.backoff_base_seconds, self.backoff_max_seconds)

    async def _load_attempts(self, identity_hash: str) -> Optional[AttemptRecord]:
        key = f"{ATTEMPTS_PREFIX}{identity_hash}"
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            return AttemptRecord.from_cache(data)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise CacheSerializationError("corrupt attempt record", detail={"key": key}) from exc

    async def _load_lockout(self, identity_hash: str) -> Optional[LockoutRecord]:
        key = f"{LOCKOUT_PREFIX}{identity_hash}"
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            return LockoutRecord.from_cache(data)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise CacheSerializationError("corrupt lockout record", detail={"key": key}) from exc

    async def _clear(self, identity_hash: str) -> None:
        # Independent, idempotent deletes; no cross-key atomicity
        await asyncio.gather(
            self.cache.delete(f"{ATTEMPTS_PREFIX}{identity_hash}"),
            self.cache.delete(f"{LOCKOUT_PREFIX}{identity_hash}"),
        )

    def _locked_decision(self, unlock_at: datetime, wait_seconds: int, message: str) -> LoginDecision:
        return LoginDecision(
            allowed=False,
            remaining_attempts=0,
            locked_until=unlock_at,
            wait_seconds=wait_seconds,
            message=message,
            reason=DENY_LOCKED,
        )

    async def check(self, identity: str, source_ip: str) -> LoginDecision:
        """Decide whether a login attempt may proceed right now.

        ``source_ip`` is accepted for the caller's forensic logging only; the
        decision depends on the identity alone.
        """
        identity_hash = self._identity_hash(identity)
        self._validate_source_ip(source_ip)
        now = self._now()

        lockout = await self._load_lockout(identity_hash)
        if lockout is not None:
            if lockout.is_active(now):
                wait_seconds = _ceil_seconds(lockout.unlock_at - now)
                return self._locked_decision(
                    lockout.unlock_at,
                    wait_seconds,
                    "Account is temporarily locked. "
                    f"Please try again in {math.ceil(wait_seconds / 60)} minutes.",
                )
            # Served lockout: the failures that caused it are spent as well
            await self._clear(identity_hash)
            logger.info("lockout_expired_cleared", identity_hash=identity_hash)

        record = await self._load_attempts(identity_hash)
        count = record.count if record else 0
        remaining = max(0, self.max_failed_attempts - count)

        if record is not None and count > 1:
            delay = self._backoff(count)
            next_allowed = record.last_attempt_at + timedelta(seconds=delay)
            if next_allowed > now:
                wait_seconds = _ceil_seconds(next_allowed - now)
                return LoginDecision(
                    allowed=False,
                    remaining_attempts=remaining,
                    wait_seconds=wait_seconds,
                    message=f"Please wait {wait_seconds} seconds before trying again.",
                    reason=DENY_BACKOFF,
                )

        return LoginDecision(allowed=True, remaining_attempts=remaining)

    async def record_failed_attempt(self, identity: str, source_ip: str) -> LoginDecision:
        identity_hash = self._identity_hash(identity)
        self._validate_source_ip(source_ip)
        now = self._now()

        record = await self._load_attempts(identity_hash)
        if record is None:
            record = AttemptRecord(count=0, first_attempt_at=now, last_attempt_at=now)
        record.count += 1
        record.last_attempt_at = now
        record.track_ip(source_ip)

        # Sliding window: every failure restarts the TTL
        await self.cache.set(
            f"{ATTEMPTS_PREFIX}{identity_hash}",
            record.to_cache(),
            self.attempt_window_seconds,
        )
        logger.info(
            "login_attempt_failed",
            identity_hash=identity_hash,
            attempt_count=record.count,
            max_attempts=self.max_failed_attempts,
        )

        if record.count >= self.max_failed_attempts:
            unlock_at = now + timedelta(seconds=self.lockout_duration_seconds)
            lockout = LockoutRecord(
                locked_at=now,
                unlock_at=unlock_at,
                reason=LOCKOUT_REASON,
                failed_attempts=record.count,
                last_ip=source_ip or None,
            )
            await self.cache.set(
                f"{LOCKOUT_PREFIX}{identity_hash}",
                lockout.to_cache(),
                self.lockout_duration_seconds,
            )
            self.audit.log_security_event(
                "account_locked",
                identity_hash=identity_hash,
                failed_attempts=record.count,
                source_ips=list(record.source_ips),
                last_ip=source_ip,
                locked_until=unlock_at.isoformat(),
            )
            return self._locked_decision(
                unlock_at,
                self.lockout_duration_seconds,
                "Account is temporarily locked due to too many failed login attempts. "
                f"Please try again in {math.ceil(self.lockout_duration_seconds / 60)} minutes.",
            )

        delay = self._backoff(record.count)
        remaining = self.max_failed_attempts - record.count
        message = None
        if remaining <= WARNING_THRESHOLD:
            self.audit.log_security_event(
                "login_attempt_warning",
                identity_hash=identity_hash,
                remaining_attempts=remaining,
                source_ip=source_ip,
            )
            message = (
                f"Warning: {remaining} login attempts remaining before account lockout."
            )

        return LoginDecision(
            allowed=True,
            remaining_attempts=remaining,
            wait_seconds=delay if delay > 0 else None,
            message=message,
        )

    async def record_successful_login(self, identity: str) -> None:
        identity_hash = self._identity_hash(identity)
        await self._clear(identity_hash)

    async def unlock_account(self, identity: str, *, actor: Optional[str] = None) -> None:
        """Administrative override: drop any lockout and failure history."""
        identity_hash = self._identity_hash(identity)
        await self._clear(identity_hash)
        self.audit.log_security_event(
            "account_unlocked", identity_hash=identity_hash, actor=actor
        )

    async def get_lockout_status(self, identity: str) -> Optional[LockoutRecord]:
        """Return the lockout record only while it is still in force."""
        identity_hash = self._identity_hash(identity)
        lockout = await self._load_lockout(identity_hash)
        if lockout is not None and lockout.is_active(self._now()):
            return lockout
        return None

    async def get_failed_attempt_count(self, identity: str) -> int:
        identity_hash = self._identity_hash(identity)
        record = await self._load_attempts(identity_hash)
        return record.count if record else 0

    async def check_with_policy(
        self,
        identity: str,
        source_ip: str,
        policy: Optional[FailurePolicy] = None,
    ) -> LoginDecision:
        """Run ``check`` and resolve cache outages with an explicit policy.

        ``check`` itself never guesses; this wrapper is where the host's
        fail-closed (default) or fail-open choice is applied and alerted on.
        """
        identity_hash = self._identity_hash(identity)
        chosen = FailurePolicy(policy) if policy is not None else self.failure_policy
        try:
            return await self.check(identity, source_ip)
        except CacheUnavailableError as exc:
            self.audit.log_security_event(
                "login_guard_cache_unavailable",
                identity_hash=identity_hash,
                policy=chosen.value,
                error=exc.message,
            )
            if chosen is FailurePolicy.OPEN:
                return LoginDecision(
                    allowed=True, remaining_attempts=self.max_failed_attempts
                )
            return LoginDecision(
                allowed=False,
                remaining_attempts=0,
                message="Login is temporarily unavailable. Please try again shortly.",
                reason=DENY_UNAVAILABLE,
            )
