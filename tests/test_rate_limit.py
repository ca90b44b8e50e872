"""Tests for fixed-window rate limiting with blocks."""

from datetime import timedelta

import pytest

from estate_auth.config import RateLimitPolicy
from estate_auth.service.rate_limit import (
    MemoryRateLimitStore,
    RateLimitEntry,
    RateLimiter,
    apply_attempt,
    client_ip,
)

LOGIN_IP = RateLimitPolicy("login_ip", 5, timedelta(minutes=15), timedelta(minutes=30))


class TestApplyAttempt:
    """The pure counting rule shared by every backend."""

    def test_first_attempt_opens_window(self, clock):
        entry, decision = apply_attempt(None, LOGIN_IP, clock())

        assert decision.allowed
        assert entry.count == 1
        assert entry.reset_at == clock() + timedelta(minutes=15)

    def test_attempt_over_limit_blocks(self, clock):
        entry = RateLimitEntry(count=5, reset_at=clock() + timedelta(minutes=10))
        entry, decision = apply_attempt(entry, LOGIN_IP, clock())

        assert not decision.allowed
        assert decision.retry_after == 30 * 60
        assert entry.block_until == clock() + timedelta(minutes=30)

    def test_live_block_rejects_without_counting(self, clock):
        blocked = RateLimitEntry(
            count=6,
            reset_at=clock() + timedelta(minutes=5),
            block_until=clock() + timedelta(minutes=20),
        )
        entry, decision = apply_attempt(blocked, LOGIN_IP, clock())

        assert not decision.allowed
        assert decision.retry_after == 20 * 60
        assert entry.count == 6

    def test_retry_after_rounds_up(self, clock):
        blocked = RateLimitEntry(
            count=6,
            reset_at=clock(),
            block_until=clock() + timedelta(seconds=90, milliseconds=1),
        )
        _, decision = apply_attempt(blocked, LOGIN_IP, clock())

        assert decision.retry_after == 91

    def test_elapsed_block_starts_fresh_window(self, clock):
        blocked = RateLimitEntry(
            count=6, reset_at=clock(), block_until=clock() - timedelta(seconds=1)
        )
        entry, decision = apply_attempt(blocked, LOGIN_IP, clock())

        assert decision.allowed
        assert entry.count == 1
        assert entry.block_until is None

    def test_elapsed_window_resets_count(self, clock):
        stale = RateLimitEntry(count=4, reset_at=clock() - timedelta(seconds=1))
        entry, decision = apply_attempt(stale, LOGIN_IP, clock())

        assert decision.allowed
        assert entry.count == 1


class TestMemoryRateLimitStore:
    async def test_counts_per_key(self, clock):
        store = MemoryRateLimitStore()
        await store.hit("login_ip:a", LOGIN_IP, clock())
        await store.hit("login_ip:a", LOGIN_IP, clock())
        await store.hit("login_ip:b", LOGIN_IP, clock())

        assert store._entries["login_ip:a"].count == 2
        assert store._entries["login_ip:b"].count == 1

    async def test_sweep_removes_only_stale_entries(self, clock):
        store = MemoryRateLimitStore()
        await store.hit("old", LOGIN_IP, clock())
        clock.advance(minutes=10)
        await store.hit("fresh", LOGIN_IP, clock())
        clock.advance(minutes=6)

        removed = await store.sweep(clock())

        assert removed == 1
        assert "old" not in store._entries
        assert "fresh" in store._entries

    async def test_blocked_entry_survives_sweep(self, clock):
        store = MemoryRateLimitStore()
        for _ in range(6):
            await store.hit("k", LOGIN_IP, clock())
        clock.advance(minutes=20)

        assert await store.sweep(clock()) == 0
        assert len(store) == 1


class _BrokenStore:
    async def hit(self, key, policy, now):
        raise ConnectionError("backend down")

    async def reset(self, key):
        raise ConnectionError("backend down")

    async def sweep(self, now):
        return 0


class TestRateLimiter:
    """Named policies over the counter store."""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(MemoryRateLimitStore(), [LOGIN_IP], clock=clock)

    async def test_sixth_attempt_from_ip_is_blocked(self, limiter, clock):
        for _ in range(5):
            assert (await limiter.check("login_ip", "203.0.113.7")).allowed

        decision = await limiter.check("login_ip", "203.0.113.7")

        assert not decision.allowed
        assert decision.retry_after == 1800

    async def test_block_lifts_after_block_duration(self, limiter, clock):
        for _ in range(6):
            await limiter.check("login_ip", "203.0.113.7")
        clock.advance(minutes=29)
        assert not (await limiter.check("login_ip", "203.0.113.7")).allowed

        clock.advance(minutes=1, seconds=1)
        assert (await limiter.check("login_ip", "203.0.113.7")).allowed

    async def test_subjects_are_case_insensitive(self, limiter):
        await limiter.check("login_ip", "Host")

        assert limiter.store._entries[RateLimiter.key("login_ip", "host")].count == 1

    async def test_reset_clears_counter(self, limiter):
        for _ in range(6):
            await limiter.check("login_ip", "203.0.113.7")
        await limiter.reset("login_ip", "203.0.113.7")

        assert (await limiter.check("login_ip", "203.0.113.7")).allowed

    async def test_backend_failure_fails_closed(self, clock):
        limiter = RateLimiter(_BrokenStore(), [LOGIN_IP], clock=clock)

        decision = await limiter.check("login_ip", "203.0.113.7")

        assert not decision.allowed
        assert decision.retry_after == 60

    async def test_reset_failure_is_not_raised(self, clock):
        limiter = RateLimiter(_BrokenStore(), [LOGIN_IP], clock=clock)

        await limiter.reset("login_ip", "203.0.113.7")


class TestClientIp:
    def test_first_forwarded_hop_when_trusted(self):
        assert client_ip("198.51.100.1, 10.0.0.2", "10.0.0.9") == "198.51.100.1"

    def test_peer_when_forwarding_untrusted(self):
        assert client_ip("198.51.100.1", "10.0.0.9", trust_forwarded=False) == "10.0.0.9"

    def test_peer_when_header_missing(self):
        assert client_ip(None, "10.0.0.9") == "10.0.0.9"

    def test_unknown_without_any_address(self):
        assert client_ip(None, None) == "unknown"
