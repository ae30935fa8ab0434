"""Unit tests for the login attempt guard.

Tests for:
- Lockout after repeated failures
- Exponential backoff between attempts
- Reset on success and administrative unlock
- Expired lockouts cleared by the next check
- Identity normalization and hashed cache keys
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from authshield.config import FailurePolicy, Settings
from authshield.service.errors import (
    AccountLockedError,
    LoginThrottledError,
    ServiceUnavailableError,
    ValidationError,
)
from authshield.service.hashing import hash_identity
from authshield.service.login_guard import (
    ATTEMPTS_PREFIX,
    LOCKOUT_PREFIX,
    LoginAttemptGuard,
    LoginDecision,
    backoff_delay,
)
from authshield.storage.errors import CacheSerializationError, CacheUnavailableError
from authshield.storage.models import LockoutRecord

EMAIL = "user@example.com"
IP = "10.0.0.1"


def attempts_key(identity=EMAIL):
    return f"{ATTEMPTS_PREFIX}{hash_identity(identity)}"


def lockout_key(identity=EMAIL):
    return f"{LOCKOUT_PREFIX}{hash_identity(identity)}"


async def fail_times(guard, count, identity=EMAIL, ip=IP):
    decision = None
    for _ in range(count):
        decision = await guard.record_failed_attempt(identity, ip)
    return decision


class TestBackoffDelay:
    def test_no_delay_for_first_failure(self):
        assert backoff_delay(0) == 0
        assert backoff_delay(1) == 0

    def test_doubles_per_failure(self):
        assert backoff_delay(2) == 1
        assert backoff_delay(3) == 2
        assert backoff_delay(4) == 4

    def test_capped_at_maximum(self):
        assert backoff_delay(10) == 60
        assert backoff_delay(10, base=1, maximum=30) == 30


class TestCheck:
    @pytest.mark.asyncio
    async def test_fresh_identity_is_allowed(self, guard):
        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 5
        assert decision.locked_until is None
        assert decision.wait_seconds is None

    @pytest.mark.asyncio
    async def test_single_failure_has_no_backoff(self, guard):
        await fail_times(guard, 1)

        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 4

    @pytest.mark.asyncio
    async def test_backoff_wait_grows_with_failures(self, guard, cache):
        expected = {2: 1, 3: 2, 4: 4}
        for count, wait in expected.items():
            await cache.delete(attempts_key())
            await fail_times(guard, count)

            decision = await guard.check(EMAIL, IP)

            assert decision.allowed is False, count
            assert decision.wait_seconds == wait, count
            assert decision.remaining_attempts == 5 - count
            assert decision.locked_until is None
            assert f"Please wait {wait} seconds" in decision.message

    @pytest.mark.asyncio
    async def test_allowed_once_backoff_elapses(self, guard, clock):
        await fail_times(guard, 3)
        clock.advance(1)
        assert (await guard.check(EMAIL, IP)).allowed is False

        clock.advance(1)
        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 2

    @pytest.mark.asyncio
    async def test_backoff_wait_rounds_up(self, guard, clock):
        await fail_times(guard, 4)
        clock.advance(2.5)

        decision = await guard.check(EMAIL, IP)

        assert decision.wait_seconds == 2

    @pytest.mark.asyncio
    async def test_fifth_failure_locks_instead_of_backoff(self, guard, clock):
        await fail_times(guard, 5)

        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is False
        assert decision.is_locked
        assert decision.remaining_attempts == 0
        assert decision.locked_until == clock() + timedelta(seconds=900)
        assert decision.wait_seconds == 900
        assert "locked" in decision.message

    @pytest.mark.asyncio
    async def test_source_ip_does_not_affect_decision(self, guard):
        await guard.record_failed_attempt(EMAIL, "10.0.0.1")
        await guard.record_failed_attempt(EMAIL, "10.0.0.2")
        await guard.record_failed_attempt(EMAIL, "10.0.0.3")
        await guard.record_failed_attempt(EMAIL, "10.0.0.4")
        await guard.record_failed_attempt(EMAIL, "10.0.0.5")

        for ip in ("10.0.0.1", "192.168.1.9"):
            decision = await guard.check(EMAIL, ip)
            assert decision.is_locked

    @pytest.mark.asyncio
    async def test_identity_is_case_insensitive(self, guard):
        await fail_times(guard, 5, identity="User@Example.COM")

        decision = await guard.check("  user@example.com ", IP)

        assert decision.is_locked
        assert await guard.get_failed_attempt_count("USER@EXAMPLE.COM") == 5


class TestRecordFailedAttempt:
    @pytest.mark.asyncio
    async def test_returns_remaining_and_advisory_wait(self, guard):
        first = await guard.record_failed_attempt(EMAIL, IP)
        second = await guard.record_failed_attempt(EMAIL, IP)

        assert first.allowed is True
        assert first.remaining_attempts == 4
        assert first.wait_seconds is None
        assert first.message is None
        assert second.remaining_attempts == 3
        assert second.wait_seconds == 1

    @pytest.mark.asyncio
    async def test_warns_when_two_or_fewer_remain(self, guard, audit):
        decision = await fail_times(guard, 3)

        assert decision.allowed is True
        assert decision.remaining_attempts == 2
        assert decision.message == (
            "Warning: 2 login attempts remaining before account lockout."
        )
        assert audit.kinds().count("login_attempt_warning") == 1
        assert audit.last("login_attempt_warning")["remaining_attempts"] == 2

        await guard.record_failed_attempt(EMAIL, IP)
        assert audit.kinds().count("login_attempt_warning") == 2

    @pytest.mark.asyncio
    async def test_threshold_creates_lockout(self, guard, cache, clock):
        decision = await fail_times(guard, 5)

        assert decision.allowed is False
        assert decision.is_locked
        assert decision.wait_seconds == 900
        assert decision.locked_until == clock() + timedelta(seconds=900)
        assert "too many failed login attempts" in decision.message
        assert "15 minutes" in decision.message

        stored = await cache.get(lockout_key())
        assert stored["failed_attempts"] == 5
        assert stored["last_ip"] == IP
        assert stored["reason"] == "Too many failed login attempts"
        assert await cache.ttl(lockout_key()) == 900

    @pytest.mark.asyncio
    async def test_lockout_audit_event_lists_all_ips(self, guard, audit):
        await guard.record_failed_attempt(EMAIL, "10.0.0.1")
        await guard.record_failed_attempt(EMAIL, "10.0.0.2")
        await guard.record_failed_attempt(EMAIL, "10.0.0.1")
        await guard.record_failed_attempt(EMAIL, "10.0.0.3")
        await guard.record_failed_attempt(EMAIL, "10.0.0.4")

        event = audit.last("account_locked")
        assert event is not None
        assert event["source_ips"] == ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"]
        assert event["failed_attempts"] == 5
        assert event["last_ip"] == "10.0.0.4"
        assert event["identity_hash"] == hash_identity(EMAIL)
        assert EMAIL not in repr(audit.events)

    @pytest.mark.asyncio
    async def test_source_ips_unique_and_capped(self, cache, audit, clock):
        guard = LoginAttemptGuard(cache, audit=audit, clock=clock, max_failed_attempts=50)
        for i in range(12):
            await guard.record_failed_attempt(EMAIL, f"10.0.0.{i}")
            await guard.record_failed_attempt(EMAIL, f"10.0.0.{i}")

        stored = await cache.get(attempts_key())

        assert stored["count"] == 24
        assert len(stored["source_ips"]) == 10
        assert len(set(stored["source_ips"])) == 10
        assert stored["source_ips"][0] == "10.0.0.0"

    @pytest.mark.asyncio
    async def test_window_slides_on_each_failure(self, guard, cache, clock):
        await guard.record_failed_attempt(EMAIL, IP)
        first_seen = clock()
        clock.advance(600)
        await guard.record_failed_attempt(EMAIL, IP)
        clock.advance(600)

        stored = await cache.get(attempts_key())

        assert stored is not None
        assert stored["count"] == 2
        assert stored["first_attempt_at"] == first_seen.isoformat()
        assert await cache.ttl(attempts_key()) == 300

    @pytest.mark.asyncio
    async def test_attempts_expire_after_window(self, guard, clock):
        await fail_times(guard, 4)
        clock.advance(901)

        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 5

    @pytest.mark.asyncio
    async def test_raw_identity_never_used_as_key(self, guard, cache):
        await fail_times(guard, 5)

        keys = list(cache._entries)
        assert keys
        assert all(EMAIL not in key for key in keys)
        assert all(len(key.split(":", 1)[1]) == 16 for key in keys)


class TestResetAndUnlock:
    @pytest.mark.asyncio
    async def test_success_resets_failure_sequence(self, guard):
        await fail_times(guard, 3)
        await guard.record_successful_login(EMAIL)

        assert await guard.get_failed_attempt_count(EMAIL) == 0
        for expected_remaining in (4, 3, 2, 1):
            decision = await guard.record_failed_attempt(EMAIL, IP)
            assert decision.allowed is True
            assert decision.remaining_attempts == expected_remaining

        decision = await guard.record_failed_attempt(EMAIL, IP)
        assert decision.is_locked

    @pytest.mark.asyncio
    async def test_success_clears_lockout(self, guard):
        await fail_times(guard, 5)
        await guard.record_successful_login(EMAIL)

        decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 5

    @pytest.mark.asyncio
    async def test_success_is_idempotent(self, guard):
        await guard.record_successful_login(EMAIL)
        await guard.record_successful_login(EMAIL)

        assert await guard.get_failed_attempt_count(EMAIL) == 0

    @pytest.mark.asyncio
    async def test_unlock_account_clears_state_and_audits(self, guard, audit):
        await fail_times(guard, 5)

        await guard.unlock_account(EMAIL, actor="admin-1")

        assert await guard.get_lockout_status(EMAIL) is None
        assert await guard.get_failed_attempt_count(EMAIL) == 0
        assert (await guard.check(EMAIL, IP)).allowed is True
        event = audit.last("account_unlocked")
        assert event == {"identity_hash": hash_identity(EMAIL), "actor": "admin-1"}


class TestLockoutExpiry:
    @pytest.mark.asyncio
    async def test_get_lockout_status_only_reports_active(self, guard, clock):
        assert await guard.get_lockout_status(EMAIL) is None

        await fail_times(guard, 5)
        status = await guard.get_lockout_status(EMAIL)

        assert isinstance(status, LockoutRecord)
        assert status.unlock_at == clock() + timedelta(seconds=900)
        assert status.failed_attempts == 5

        clock.advance(900)
        assert await guard.get_lockout_status(EMAIL) is None

    @pytest.mark.asyncio
    async def test_next_check_clears_stale_lockout(self, guard, cache, clock):
        """A lockout the cache has not expired yet is cleared by the next check."""
        stale = LockoutRecord(
            locked_at=clock() - timedelta(seconds=1000),
            unlock_at=clock() - timedelta(seconds=1),
            reason="Too many failed login attempts",
            failed_attempts=5,
            last_ip=IP,
        )
        await cache.set(lockout_key(), stale.to_cache(), 3600)
        await fail_times(guard, 4)

        with patch("authshield.service.login_guard.logger") as mock_logger:
            decision = await guard.check(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 5
        assert await cache.exists(lockout_key()) is False
        assert await cache.exists(attempts_key()) is False
        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args[0][0] == "lockout_expired_cleared"

    @pytest.mark.asyncio
    async def test_active_lockout_wins_over_missing_attempts(self, guard, cache, clock):
        await fail_times(guard, 5)
        await cache.delete(attempts_key())

        decision = await guard.check(EMAIL, IP)

        assert decision.is_locked
        assert decision.wait_seconds == 900


class TestValidation:
    @pytest.mark.parametrize("identity", ["", "   ", None])
    @pytest.mark.asyncio
    async def test_rejects_empty_identity_before_cache_access(self, identity):
        cache = MagicMock()
        cache.get = AsyncMock()
        cache.set = AsyncMock()
        cache.delete = AsyncMock()
        guard = LoginAttemptGuard(cache, audit=MagicMock())

        for call in (
            guard.check(identity, IP),
            guard.record_failed_attempt(identity, IP),
            guard.record_successful_login(identity),
            guard.unlock_account(identity),
            guard.get_lockout_status(identity),
            guard.get_failed_attempt_count(identity),
        ):
            with pytest.raises(ValidationError):
                await call

        cache.get.assert_not_called()
        cache.set.assert_not_called()
        cache.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_serialization_error(self, guard, cache):
        await cache.set(attempts_key(), {"count": 2}, 60)

        with pytest.raises(CacheSerializationError):
            await guard.check(EMAIL, IP)


class TestCacheFailures:
    @pytest.fixture
    def broken_cache(self):
        cache = MagicMock()
        cache.get = AsyncMock(side_effect=CacheUnavailableError("cache get failed"))
        cache.set = AsyncMock(side_effect=CacheUnavailableError("cache set failed"))
        cache.delete = AsyncMock(side_effect=CacheUnavailableError("cache delete failed"))
        return cache

    @pytest.mark.asyncio
    async def test_errors_propagate_without_retry(self, broken_cache, audit):
        guard = LoginAttemptGuard(broken_cache, audit=audit)

        with pytest.raises(CacheUnavailableError):
            await guard.check(EMAIL, IP)
        with pytest.raises(CacheUnavailableError):
            await guard.record_failed_attempt(EMAIL, IP)
        with pytest.raises(CacheUnavailableError):
            await guard.record_successful_login(EMAIL)

        assert broken_cache.get.await_count == 2

    @pytest.mark.asyncio
    async def test_fail_closed_policy_denies(self, broken_cache, audit):
        guard = LoginAttemptGuard(broken_cache, audit=audit)

        decision = await guard.check_with_policy(EMAIL, IP)

        assert decision.allowed is False
        assert decision.remaining_attempts == 0
        assert "temporarily unavailable" in decision.message
        event = audit.last("login_guard_cache_unavailable")
        assert event["policy"] == "closed"
        with pytest.raises(ServiceUnavailableError):
            decision.raise_for_denial()

    @pytest.mark.asyncio
    async def test_fail_open_policy_allows_with_alert(self, broken_cache, audit):
        guard = LoginAttemptGuard(
            broken_cache, audit=audit, failure_policy=FailurePolicy.OPEN
        )

        decision = await guard.check_with_policy(EMAIL, IP)

        assert decision.allowed is True
        assert decision.remaining_attempts == 5
        assert audit.last("login_guard_cache_unavailable")["policy"] == "open"

    @pytest.mark.asyncio
    async def test_policy_argument_overrides_default(self, broken_cache, audit):
        guard = LoginAttemptGuard(
            broken_cache, audit=audit, failure_policy=FailurePolicy.OPEN
        )

        decision = await guard.check_with_policy(EMAIL, IP, policy=FailurePolicy.CLOSED)

        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_policy_passes_through_healthy_decisions(self, guard):
        await fail_times(guard, 5)

        decision = await guard.check_with_policy(EMAIL, IP, policy=FailurePolicy.OPEN)

        assert decision.is_locked


class TestDecision:
    def test_raise_for_denial_noop_when_allowed(self):
        LoginDecision(allowed=True, remaining_attempts=3).raise_for_denial()

    @pytest.mark.asyncio
    async def test_raise_for_denial_locked(self, guard):
        decision = await fail_times(guard, 5)

        with pytest.raises(AccountLockedError) as excinfo:
            decision.raise_for_denial()

        assert excinfo.value.status_code == 423
        assert excinfo.value.detail["retry_after"] == 900

    @pytest.mark.asyncio
    async def test_raise_for_denial_backoff(self, guard):
        await fail_times(guard, 3)
        decision = await guard.check(EMAIL, IP)

        with pytest.raises(LoginThrottledError) as excinfo:
            decision.raise_for_denial()

        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "login_throttled"
        assert excinfo.value.detail["retry_after"] == 2

    @pytest.mark.asyncio
    async def test_to_dict_is_json_friendly(self, guard, clock):
        decision = await fail_times(guard, 5)

        payload = decision.to_dict()

        assert payload["allowed"] is False
        assert payload["locked_until"] == (clock() + timedelta(seconds=900)).isoformat()
        assert "reason" not in payload


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_uses_configured_thresholds(self, cache, audit, clock):
        settings = Settings(
            max_failed_attempts=3,
            lockout_duration_seconds=120,
            backoff_base_seconds=2,
            backoff_max_seconds=10,
        )
        guard = LoginAttemptGuard.from_settings(cache, settings, audit=audit, clock=clock)

        await guard.record_failed_attempt(EMAIL, IP)
        second = await guard.record_failed_attempt(EMAIL, IP)
        third = await guard.record_failed_attempt(EMAIL, IP)

        assert second.wait_seconds == 2
        assert third.is_locked
        assert third.wait_seconds == 120
        assert "2 minutes" in third.message
