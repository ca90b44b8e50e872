from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from estate_auth.config import get_settings, reset_settings_cache
from estate_auth.logging import get_logger
from estate_auth.service.auth import AuthService
from estate_auth.service.email import NotificationService
from estate_auth.service.lockout import AccountLockout
from estate_auth.service.rate_limit import MemoryRateLimitStore, RateLimiter
from estate_auth.service.scheduler import LifecycleScheduler, ScheduledTask
from estate_auth.service.sessions import SessionManager
from estate_auth.service.tokens import TokenService
from estate_auth.service.trial import TrialEngine, TrialPolicy
from estate_auth.storage.memory import MemoryStore
from estate_auth.storage.postgres import PostgresStore
from estate_auth.storage.redis_cache import RedisRateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url, timeout_seconds=settings.storage_timeout_seconds
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limit_store = self._build_rate_limit_store()
        self.limiter = RateLimiter(
            self.rate_limit_store,
            settings.rate_limit_policies(),
            timeout_seconds=settings.storage_timeout_seconds,
        )
        self.tokens = TokenService(settings)
        self.sessions = SessionManager(self.store, self.tokens, settings)
        self.lockout = AccountLockout(settings.max_failed_logins, settings.lockout_duration)
        self.notifier = NotificationService.from_settings(settings)
        self.trials = TrialEngine(self.store, self.notifier, TrialPolicy.from_settings(settings))
        self.auth = AuthService(
            self.store,
            tokens=self.tokens,
            sessions=self.sessions,
            limiter=self.limiter,
            lockout=self.lockout,
            trials=self.trials,
            notifier=self.notifier,
            settings=settings,
        )
        self.scheduler = LifecycleScheduler(
            [
                ScheduledTask(
                    "trial_sweep", settings.trial_sweep_interval.total_seconds(), self.trials.run
                ),
                ScheduledTask(
                    "session_sweep",
                    settings.session_sweep_interval.total_seconds(),
                    self.sessions.sweep_expired,
                ),
                ScheduledTask(
                    "rate_limit_sweep",
                    settings.rate_limit_sweep_interval.total_seconds(),
                    self.limiter.sweep,
                ),
            ],
            poll_interval=settings.scheduler_poll_interval,
        )
        logger.info(
            "runtime_init_complete",
            store_type="memory" if settings.use_memory_store else "postgres",
            rate_limit_backend=self.rate_limit_backend,
        )

    @property
    def rate_limit_backend(self) -> str:
        return "redis" if isinstance(self.rate_limit_store, RedisRateLimitStore) else "memory"

    def _build_rate_limit_store(self):
        settings = self.settings
        redis_error: Exception | None = None
        # Test mode stays in-process so counters reset with the runtime
        if settings.redis_url and not settings.test_mode:
            try:
                store = RedisRateLimitStore(
                    settings.redis_url, socket_timeout=settings.storage_timeout_seconds
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_not_used",
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            message="Rate limits are process-local and reset on restart.",
        )
        return MemoryRateLimitStore()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
