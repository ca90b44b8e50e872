from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from estate_auth.config import SELF_SERVICE_ROLES, TRIAL_ROLE, Role, Settings
from estate_auth.logging import get_logger
from estate_auth.service.email import NotificationService
from estate_auth.service.errors import (
    AuthenticationError,
    InternalError,
    LockedError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from estate_auth.service.lockout import AccountLockout
from estate_auth.service.passwords import check_new_password
from estate_auth.service.rate_limit import RateLimiter
from estate_auth.service.sessions import DeviceInfo, SessionManager, TokenPair
from estate_auth.service.tokens import TokenService, generate_reset_token, hash_token
from estate_auth.service.trial import (
    TrialEngine,
    effective_listings_limit,
    start_trial,
    wants_trial,
)
from estate_auth.storage.common import AccountStore
from estate_auth.storage.errors import ConstraintViolation
from estate_auth.storage.models import Account, LoginEvent, RefreshSession, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Signup, login and credential flows composed from the security primitives."""

    def __init__(
        self,
        store: AccountStore,
        *,
        tokens: TokenService,
        sessions: SessionManager,
        limiter: RateLimiter,
        lockout: AccountLockout,
        trials: TrialEngine,
        notifier: NotificationService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.limiter = limiter
        self.lockout = lockout
        self.trials = trials
        self.notifier = notifier
        self.settings = settings
        self.logger = logger
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("unused-placeholder-credential")

    def _now(self) -> datetime:
        return self._clock()

    # -- password hashing -------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _commit(self, account_id: str, mutator) -> Optional[Account]:
        try:
            return self.store.mutate_account(account_id, mutator)
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error("account_write_failed", user_id=account_id, error=str(exc))
            raise InternalError("could not update account") from exc

    def _record_login(
        self,
        account: Account,
        now: datetime,
        device: DeviceInfo,
        *,
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        account.login_history.append(
            LoginEvent(
                timestamp=now,
                success=success,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                failure_reason=reason,
            )
        )
        limit = self.settings.login_history_limit
        if len(account.login_history) > limit:
            account.login_history = account.login_history[-limit:]

    async def _enforce(self, policy_name: str, subject: str) -> None:
        decision = await self.limiter.check(policy_name, subject)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after or 1)

    def _require_strong(self, password: str, *, email: str, name: Optional[str]) -> None:
        check = check_new_password(password, email=email, name=name)
        if not check.valid:
            raise ValidationError(
                "password does not meet requirements",
                detail={"violations": check.violations, "strength": check.strength},
            )

    # -- flows ------------------------------------------------------------

    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        role: str = Role.BUYER.value,
        device: DeviceInfo = DeviceInfo(),
    ) -> AuthResult:
        await self._enforce("signup_ip", device.ip_address or "unknown")

        email = email.strip().lower()
        if role not in {r.value for r in SELF_SERVICE_ROLES}:
            raise ValidationError("invalid role", detail={"field": "role"})
        self._require_strong(password, email=email, name=name)
        if self.store.get_account_by_email(email):
            raise ValidationError("an account with this email already exists", detail={"field": "email"})

        now = self._now()
        account = Account.new(
            email,
            name=name,
            phone=phone,
            password_hash=self._hash_password(password),
            role=role,
            now=now,
        )
        account.available_roles = [role]
        account.active_role = role
        account.primary_role = role
        trial_started = False
        if role == TRIAL_ROLE.value:
            start_trial(account, now, self.trials.policy)
            trial_started = True
        else:
            account.listings_limit = effective_listings_limit(account, now, self.trials.policy)

        pair = self.sessions.mint_pair(account.id)
        self.sessions.attach(account, pair, device, now)
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise ValidationError(
                f"an account with this {exc.detail.get('field', 'email')} already exists",
                detail=exc.detail,
            )
        except Exception as exc:
            self.logger.error("signup_persist_failed", error=str(exc))
            raise InternalError("could not create account") from exc

        self.logger.info("account_created", user_id=account.id, role=account.role)
        if trial_started:
            try:
                await self.trials.notify_started(account)
            except Exception as exc:
                self.logger.warning("trial_start_notification_failed", user_id=account.id, error=str(exc))
        return AuthResult(account=account, tokens=pair)

    def _lookup(self, identifier: str) -> Optional[Account]:
        identifier = identifier.strip()
        if "@" in identifier:
            return self.store.get_account_by_email(identifier)
        return self.store.get_account_by_phone(identifier)

    async def login(self, identifier: str, password: str, *, device: DeviceInfo = DeviceInfo()) -> AuthResult:
        """Authenticate by email or phone.

        Order: IP limit, account limit, lock check, password, token issuance.
        Each step short-circuits; unknown account and wrong password produce
        the same error.
        """
        await self._enforce("login_ip", device.ip_address or "unknown")
        account = self._lookup(identifier)
        # Email and phone share one budget once the account is known
        account_key = account.id if account is not None else identifier
        await self._enforce("login_account", account_key)

        if account is None:
            self._verify_hash(self._dummy_hash, password)
            self.logger.info("login_failed", reason="unknown_account", ip_address=device.ip_address)
            raise AuthenticationError(INVALID_CREDENTIALS)

        pair = self.sessions.mint_pair(account.id)
        outcome: dict = {"status": None, "remaining": None}

        def _attempt(current: Account) -> None:
            now = self._now()
            remaining = self.lockout.remaining_minutes(current, now)
            if remaining is not None:
                outcome.update(status="locked", remaining=remaining)
                self._record_login(current, now, device, success=False, reason="account_locked")
                return
            if not current.password_hash:
                outcome["status"] = "no_password"
                self._record_login(current, now, device, success=False, reason="no_password")
                return
            if not self._verify_hash(current.password_hash, password):
                outcome["status"] = "invalid"
                self.lockout.register_failure(current, now)
                self._record_login(current, now, device, success=False, reason="invalid_password")
                return
            if self._pwd_hasher.check_needs_rehash(current.password_hash):
                current.password_hash = self._hash_password(password)
            self.lockout.register_success(current, now)
            self._record_login(current, now, device, success=True)
            self.sessions.attach(current, pair, device, now)
            outcome["status"] = "ok"

        updated = self._commit(account.id, _attempt)
        if updated is None:
            raise AuthenticationError(INVALID_CREDENTIALS)
        if outcome["status"] == "locked":
            self.logger.warning("login_rejected_locked", user_id=account.id)
            raise LockedError(outcome["remaining"])
        if outcome["status"] != "ok":
            self.logger.info("login_failed", user_id=account.id, reason=outcome["status"])
            raise AuthenticationError(INVALID_CREDENTIALS)

        await self.limiter.reset("login_account", account_key)
        self.logger.info("login_succeeded", user_id=account.id)
        return AuthResult(account=updated, tokens=pair)

    async def refresh(self, refresh_token: str, *, device: DeviceInfo = DeviceInfo()) -> TokenPair:
        return self.sessions.rotate(refresh_token, device)

    async def logout(self, account_id: str, refresh_token: Optional[str] = None) -> bool:
        if not refresh_token:
            return False
        revoked = self.sessions.revoke(account_id, refresh_token)
        self.logger.info("logout", user_id=account_id, revoked=revoked)
        return revoked

    async def logout_all(self, account_id: str) -> int:
        removed = self.sessions.revoke_all(account_id)
        self.logger.info("logout_all", user_id=account_id, removed=removed)
        return removed

    def list_sessions(self, account_id: str) -> List[RefreshSession]:
        return self.sessions.list_active(account_id)

    async def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        account = self.store.get_account(account_id)
        if account is None or not self._verify_hash(account.password_hash, current_password):
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        self._require_strong(new_password, email=account.email, name=account.name)
        new_hash = self._hash_password(new_password)

        def _change(current: Account) -> None:
            current.password_hash = new_hash
            current.password_changed_at = self._now()
            current.reset_token_hash = None
            current.reset_token_expires_at = None
            current.refresh_sessions = []

        self._commit(account_id, _change)
        self.logger.info("password_changed", user_id=account_id)

    async def request_password_reset(self, email: str, *, ip_address: Optional[str] = None) -> None:
        """Send a reset link if the account exists; callers always answer generically."""
        await self._enforce("reset_ip", ip_address or "unknown")
        email = email.strip().lower()
        decision = await self.limiter.check("reset_account", email)
        if not decision.allowed:
            return

        account = self.store.get_account_by_email(email)
        if account is None or not account.password_hash:
            self.logger.info("password_reset_requested_unknown")
            return

        token = generate_reset_token()
        token_hash = hash_token(token)
        expires_at = self._now() + self.settings.password_reset_ttl

        def _store_token(current: Account) -> None:
            current.reset_token_hash = token_hash
            current.reset_token_expires_at = expires_at

        self._commit(account.id, _store_token)
        sent = await asyncio.to_thread(self.notifier.send_password_reset, account.email, token)
        self.logger.info("password_reset_requested", user_id=account.id, email_sent=sent)

    async def reset_password(
        self, token: str, new_password: str, *, device: DeviceInfo = DeviceInfo()
    ) -> AuthResult:
        token_hash = hash_token(token)
        account = self.store.get_account_by_reset_token_hash(token_hash)
        now = self._now()

        def _token_valid(candidate: Account, at: datetime) -> bool:
            return (
                candidate.reset_token_hash == token_hash
                and candidate.reset_token_expires_at is not None
                and candidate.reset_token_expires_at > at
            )

        if account is None or not _token_valid(account, now):
            raise ValidationError("invalid or expired reset token")
        self._require_strong(new_password, email=account.email, name=account.name)
        new_hash = self._hash_password(new_password)
        # Taken before minting so the returned access token never predates the change
        changed_at = self._now()
        pair = self.sessions.mint_pair(account.id)

        def _reset(current: Account) -> None:
            at = self._now()
            if not _token_valid(current, at):
                raise ValidationError("invalid or expired reset token")
            current.password_hash = new_hash
            current.password_changed_at = changed_at
            current.reset_token_hash = None
            current.reset_token_expires_at = None
            current.failed_login_count = 0
            current.lock_until = None
            current.refresh_sessions = []
            self.sessions.attach(current, pair, device, at)

        updated = self._commit(account.id, _reset)
        if updated is None:
            raise ValidationError("invalid or expired reset token")
        self.logger.info("password_reset_completed", user_id=account.id)
        return AuthResult(account=updated, tokens=pair)

    async def switch_role(self, account_id: str, role: str) -> Account:
        if role not in {r.value for r in SELF_SERVICE_ROLES}:
            raise ValidationError("invalid role", detail={"field": "role"})
        started = {"trial": False}

        def _switch(current: Account) -> None:
            now = self._now()
            if role == TRIAL_ROLE.value and current.role != role and wants_trial(current):
                start_trial(current, now, self.trials.policy)
                started["trial"] = True
            current.role = role
            current.active_role = role
            if role not in current.available_roles:
                current.available_roles.append(role)
            current.listings_limit = effective_listings_limit(current, now, self.trials.policy)

        updated = self._commit(account_id, _switch)
        if updated is None:
            raise AuthenticationError("account not found")
        self.logger.info("role_switched", user_id=account_id, role=role, trial_started=started["trial"])
        if started["trial"]:
            try:
                await self.trials.notify_started(updated)
            except Exception as exc:
                self.logger.warning("trial_start_notification_failed", user_id=account_id, error=str(exc))
        return updated

    # -- bearer authentication --------------------------------------------

    def authenticate(self, access_token: Optional[str]) -> Optional[Account]:
        """Resolve a bearer access token to its account, failing closed."""
        if not access_token:
            return None
        claims = self.tokens.verify_access(access_token)
        if claims is None:
            return None
        try:
            account = self.store.get_account(claims.subject)
        except Exception as exc:
            self.logger.error("access_token_lookup_failed", error=str(exc))
            return None
        if account is None:
            return None
        changed_at = account.password_changed_at
        if changed_at is not None and claims.issued_at < int(changed_at.timestamp()):
            self.logger.info("access_token_predates_password_change", user_id=account.id)
            return None
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.store.get_account(account_id)
