import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before edugate.app reads settings at import
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_REDIS", "false")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("MFA_SECRET_KEY", "mfa-key-material-for-tests-only")
os.environ.setdefault("REQUIRE_EMAIL_VERIFICATION", "false")
os.environ.setdefault("STORE_RETRY_BACKOFF_SECONDS", "0")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edugate.config import Settings  # noqa: E402
from edugate.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Mutable UTC clock; call it for a datetime, ``timestamp()`` for epoch seconds."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal cost so hashing-heavy tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="a" * 40,
        refresh_token_secret="r" * 40,
        mfa_secret_key="unit-test-mfa-key",
        require_email_verification=False,
        store_retry_backoff_seconds=0,
        test_mode=True,
    )


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
