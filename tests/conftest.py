import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any authshield import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_CACHE_FALLBACK_DEV", "true")
# Empty Redis URL keeps tests on the in-memory cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authshield.service.login_guard import LoginAttemptGuard  # noqa: E402
from authshield.service.token_revocation import TokenRevocationRegistry  # noqa: E402
from authshield.storage.memory import MemoryCache  # noqa: E402

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock shared by the cache and the components."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class RecordingAuditLog:
    def __init__(self):
        self.events = []

    def log_security_event(self, kind, **fields):
        self.events.append((kind, fields))

    def kinds(self):
        return [kind for kind, _ in self.events]

    def last(self, kind):
        for event_kind, fields in reversed(self.events):
            if event_kind == kind:
                return fields
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def audit():
    return RecordingAuditLog()


@pytest.fixture
def guard(cache, audit, clock):
    return LoginAttemptGuard(cache, audit=audit, clock=clock)


@pytest.fixture
def registry(cache, audit, clock):
    return TokenRevocationRegistry(cache, audit=audit, clock=clock)


@pytest.fixture
def runtime():
    from authshield.service.runtime import reset_runtime_for_tests

    return reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
