from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

from estate_auth.config import RateLimitPolicy
from estate_auth.logging import get_logger
from estate_auth.storage.models import utcnow

logger = get_logger(__name__)

# Retry hint returned when the backing store cannot answer
_BACKEND_FAILURE_RETRY_SECONDS = 60


@dataclass
class RateLimitEntry:
    count: int
    reset_at: datetime
    block_until: Optional[datetime] = None

    def is_stale(self, now: datetime) -> bool:
        """True once both the window and any block have elapsed."""
        blocked = self.block_until is not None and self.block_until > now
        return not blocked and self.reset_at <= now


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[int] = None


def _ceil_seconds(delta: timedelta) -> int:
    return max(1, math.ceil(delta.total_seconds()))


def apply_attempt(
    entry: Optional[RateLimitEntry], policy: RateLimitPolicy, now: datetime
) -> Tuple[RateLimitEntry, RateLimitDecision]:
    """Count one attempt against ``entry`` and decide whether it is allowed.

    A live block rejects without touching the counter. An elapsed window or an
    elapsed block starts a fresh window with this attempt as its first.
    """
    if entry is not None and entry.block_until is not None:
        if entry.block_until > now:
            return entry, RateLimitDecision(False, _ceil_seconds(entry.block_until - now))
        entry = None

    if entry is None or entry.reset_at <= now:
        return RateLimitEntry(count=1, reset_at=now + policy.window), RateLimitDecision(True)

    entry = RateLimitEntry(count=entry.count + 1, reset_at=entry.reset_at)
    if entry.count > policy.max_attempts:
        entry.block_until = now + policy.block
        return entry, RateLimitDecision(False, _ceil_seconds(policy.block))
    return entry, RateLimitDecision(True)


class RateLimitStore(Protocol):
    async def hit(self, key: str, policy: RateLimitPolicy, now: datetime) -> RateLimitDecision:
        ...

    async def reset(self, key: str) -> None:
        ...

    async def sweep(self, now: datetime) -> int:
        ...


class MemoryRateLimitStore:
    """Process-local counters.

    Every read-modify-write happens under one lock and never awaits, so
    concurrent attempts on the same key are strictly serialized.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def hit(self, key: str, policy: RateLimitPolicy, now: datetime) -> RateLimitDecision:
        with self._lock:
            entry, decision = apply_attempt(self._entries.get(key), policy, now)
            self._entries[key] = entry
        return decision

    async def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def sweep(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)


class RateLimiter:
    """Named fixed-window policies over a pluggable counter store.

    IP and account dimensions are independent keys: exhausting one never
    tightens the other.
    """

    def __init__(
        self,
        store: RateLimitStore,
        policies: Iterable[RateLimitPolicy],
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.policies: Dict[str, RateLimitPolicy] = {policy.name: policy for policy in policies}
        self._clock = clock
        self._timeout = timeout_seconds

    @staticmethod
    def key(policy_name: str, subject: str) -> str:
        return f"{policy_name}:{subject.strip().lower()}"

    async def check(self, policy_name: str, subject: str) -> RateLimitDecision:
        policy = self.policies[policy_name]
        key = self.key(policy_name, subject)
        try:
            decision = await asyncio.wait_for(
                self.store.hit(key, policy, self._clock()), timeout=self._timeout
            )
        except Exception as exc:
            logger.error(
                "rate_limit_backend_failed", policy=policy_name, error=str(exc)
            )
            return RateLimitDecision(False, _BACKEND_FAILURE_RETRY_SECONDS)
        if not decision.allowed:
            logger.warning(
                "rate_limit_blocked",
                policy=policy_name,
                subject=subject,
                retry_after=decision.retry_after,
            )
        return decision

    async def reset(self, policy_name: str, subject: str) -> None:
        try:
            await asyncio.wait_for(
                self.store.reset(self.key(policy_name, subject)), timeout=self._timeout
            )
        except Exception as exc:
            logger.warning("rate_limit_reset_failed", policy=policy_name, error=str(exc))

    async def sweep(self) -> int:
        removed = await self.store.sweep(self._clock())
        if removed:
            logger.info("rate_limit_sweep", removed=removed)
        return removed


def client_ip(
    forwarded_for: Optional[str], peer: Optional[str], *, trust_forwarded: bool = True
) -> str:
    """First X-Forwarded-For hop when trusted, else the transport peer."""
    if trust_forwarded and forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return peer or "unknown"
