import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from estate_auth.config import Settings  # noqa: E402
from estate_auth.service.auth import AuthService  # noqa: E402
from estate_auth.service.email import NotificationService  # noqa: E402
from estate_auth.service.lockout import AccountLockout  # noqa: E402
from estate_auth.service.rate_limit import MemoryRateLimitStore, RateLimiter  # noqa: E402
from estate_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from estate_auth.service.sessions import SessionManager  # noqa: E402
from estate_auth.service.tokens import TokenService  # noqa: E402
from estate_auth.service.trial import TrialEngine, TrialPolicy  # noqa: E402
from estate_auth.storage.memory import MemoryStore  # noqa: E402


class FrozenClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Settings with generous rate limits so service tests exercise one concern at a time."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        rate_limit_login_ip="1000/15m:30m",
        rate_limit_login_account="1000/15m:60m",
        rate_limit_signup_ip="1000/1h:2h",
        rate_limit_reset_ip="1000/1h:2h",
        rate_limit_reset_account="1000/1h:3h",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    """Notification double recording every send."""
    mock = MagicMock(spec=NotificationService)
    for name in (
        "send_password_reset",
        "send_trial_started",
        "send_trial_reminder",
        "send_trial_expired",
    ):
        getattr(mock, name).return_value = True
    return mock


@pytest.fixture
def services(memory_store, settings, clock, notifier):
    tokens = TokenService(settings, clock=clock)
    sessions = SessionManager(memory_store, tokens, settings, clock=clock)
    limiter = RateLimiter(MemoryRateLimitStore(), settings.rate_limit_policies(), clock=clock)
    lockout = AccountLockout(settings.max_failed_logins, settings.lockout_duration)
    trials = TrialEngine(memory_store, notifier, TrialPolicy.from_settings(settings), clock=clock)
    auth = AuthService(
        memory_store,
        tokens=tokens,
        sessions=sessions,
        limiter=limiter,
        lockout=lockout,
        trials=trials,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
    return SimpleNamespace(
        store=memory_store,
        tokens=tokens,
        sessions=sessions,
        limiter=limiter,
        lockout=lockout,
        trials=trials,
        auth=auth,
        notifier=notifier,
        clock=clock,
        settings=settings,
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
