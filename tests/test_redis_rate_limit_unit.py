from datetime import datetime, timedelta, timezone

from estate_auth.config import RateLimitPolicy
from estate_auth.storage.redis_cache import RedisRateLimitStore

POLICY = RateLimitPolicy("login_ip", 5, timedelta(minutes=15), timedelta(minutes=30))


def _store_with_script(result):
    store: RedisRateLimitStore = RedisRateLimitStore.__new__(RedisRateLimitStore)
    calls = []

    async def _script(keys, args):
        calls.append((keys, args))
        return result

    store._fixed_window = _script
    return store, calls


def test_keys_are_hashed():
    key = RedisRateLimitStore._normalize_key("login_ip:203.0.113.9")

    assert key.startswith("rate:")
    assert "203.0.113.9" not in key
    assert key == RedisRateLimitStore._normalize_key("login_ip:203.0.113.9")


async def test_hit_passes_policy_in_milliseconds():
    store, calls = _store_with_script([1, 0])
    now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    decision = await store.hit("login_ip:203.0.113.9", POLICY, now)

    assert decision.allowed
    keys, args = calls[0]
    assert keys == [RedisRateLimitStore._normalize_key("login_ip:203.0.113.9")]
    assert args == [int(now.timestamp() * 1000), 900_000, 5, 1_800_000]


async def test_blocked_result_carries_retry_after():
    store, _ = _store_with_script([0, 1800])

    decision = await store.hit("k", POLICY, datetime.now(timezone.utc))

    assert not decision.allowed
    assert decision.retry_after == 1800
