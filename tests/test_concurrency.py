"""Tests for concurrent access to rate-limit counters and account lockout.

Counters and the account record are shared mutable state; bursts of
attempts on one key or one account must be counted exactly.
"""

import asyncio
import threading
from datetime import timedelta

from estate_auth.config import RateLimitPolicy
from estate_auth.service.errors import AuthenticationError, LockedError
from estate_auth.service.lockout import AccountLockout
from estate_auth.service.rate_limit import MemoryRateLimitStore
from estate_auth.service.sessions import DeviceInfo
from estate_auth.storage.models import Account

POLICY = RateLimitPolicy("login_ip", 5, timedelta(minutes=15), timedelta(minutes=30))
PASSWORD = "Tr0ub4dor&Kx"


def _run_threads(target, count):
    barrier = threading.Barrier(count)
    errors = []

    def worker():
        try:
            barrier.wait()
            target()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(errors) == 0, f"Thread errors: {errors}"


class TestRateLimitStoreThreadSafety:
    """Concurrent hits on one key."""

    def test_concurrent_hits_never_undercount(self, clock):
        store = MemoryRateLimitStore()
        decisions = []
        decisions_lock = threading.Lock()

        def hit():
            decision = asyncio.run(store.hit("login_ip:burst", POLICY, clock()))
            with decisions_lock:
                decisions.append(decision)

        _run_threads(hit, 20)

        assert len(decisions) == 20
        assert sum(1 for d in decisions if d.allowed) == POLICY.max_attempts
        assert all(d.retry_after == 1800 for d in decisions if not d.allowed)
        assert store._entries["login_ip:burst"].count == 20

    async def test_gathered_hits_never_undercount(self, clock):
        store = MemoryRateLimitStore()

        decisions = await asyncio.gather(
            *(store.hit("login_ip:burst", POLICY, clock()) for _ in range(12))
        )

        assert sum(1 for d in decisions if d.allowed) == POLICY.max_attempts


class TestLockoutThreadSafety:
    """Parallel failures against one account record."""

    def test_parallel_failures_lock_exactly_once(self, memory_store, clock):
        lockout = AccountLockout(max_failed_attempts=5, lock_duration=timedelta(minutes=30))
        account = memory_store.create_account(Account.new("target@example.com", name="Target"))
        outcomes = []

        def attempt(current: Account) -> None:
            # Same check-then-count sequence a login runs inside the store mutation
            now = clock()
            if lockout.remaining_minutes(current, now) is not None:
                outcomes.append("locked")
                return
            outcomes.append("locked_now" if lockout.register_failure(current, now) else "failed")

        _run_threads(lambda: memory_store.mutate_account(account.id, attempt), 8)

        stored = memory_store.get_account(account.id)
        assert stored.failed_login_count == 5
        assert stored.lock_until == clock() + timedelta(minutes=30)
        assert outcomes.count("failed") == 4
        assert outcomes.count("locked_now") == 1
        assert outcomes.count("locked") == 3

    async def test_gathered_wrong_password_logins(self, services):
        await services.auth.signup(
            "target@example.com",
            PASSWORD,
            name="Target Person",
            device=DeviceInfo(ip_address="198.51.100.60"),
        )

        results = await asyncio.gather(
            *(
                services.auth.login(
                    "target@example.com",
                    "Wrong!Pass9x",
                    device=DeviceInfo(ip_address=f"203.0.113.{index}"),
                )
                for index in range(8)
            ),
            return_exceptions=True,
        )

        assert sum(isinstance(r, LockedError) for r in results) == 3
        assert sum(isinstance(r, AuthenticationError) for r in results) == 5
        stored = services.store.get_account_by_email("target@example.com")
        assert stored.failed_login_count == 5
        assert stored.lock_until is not None
