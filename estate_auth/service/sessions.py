from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from estate_auth.config import Settings
from estate_auth.logging import get_logger
from estate_auth.service.errors import InternalError, NotFoundError, RefreshTokenError
from estate_auth.service.tokens import TokenService, hash_token
from estate_auth.storage.common import AccountStore, split_expired
from estate_auth.storage.models import Account, RefreshSession, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def evict_oldest(sessions: List[RefreshSession], cap: int) -> List[RefreshSession]:
    """Keep the newest ``cap`` sessions by creation time."""
    if len(sessions) <= cap:
        return sessions
    ordered = sorted(sessions, key=lambda session: session.created_at)
    return ordered[-cap:]


class SessionManager:
    """Refresh-session lifecycle on top of the account store."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.max_sessions = settings.max_sessions_per_account
        self._clock = clock

    def mint_pair(self, account_id: str) -> TokenPair:
        access = self.tokens.mint_access(account_id)
        refresh = self.tokens.mint_refresh(account_id)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    def attach(self, account: Account, pair: TokenPair, device: DeviceInfo, now: datetime) -> None:
        """Record ``pair`` on ``account`` and trim the list to capacity.

        Call from inside a store mutation so eviction sees the committed list.
        """
        account.refresh_sessions.append(
            RefreshSession(
                token_hash=hash_token(pair.refresh_token),
                created_at=now,
                expires_at=pair.refresh_expires_at,
                device_info=device.user_agent,
                ip_address=device.ip_address,
            )
        )
        account.refresh_sessions = evict_oldest(account.refresh_sessions, self.max_sessions)

    def _mutate(self, account_id: str, mutator) -> Optional[Account]:
        try:
            return self.store.mutate_account(account_id, mutator)
        except RefreshTokenError:
            raise
        except Exception as exc:
            logger.error("session_persist_failed", user_id=account_id, error=str(exc))
            raise InternalError("could not update sessions") from exc

    def issue(self, account_id: str, device: DeviceInfo) -> TokenPair:
        pair = self.mint_pair(account_id)
        updated = self._mutate(
            account_id, lambda account: self.attach(account, pair, device, self._clock())
        )
        if updated is None:
            raise NotFoundError("account not found")
        return pair

    def rotate(self, raw_refresh_token: str, device: DeviceInfo) -> TokenPair:
        claims = self.tokens.verify_refresh(raw_refresh_token, allow_expired=True)
        if claims is None:
            raise RefreshTokenError("invalid")

        token_hash = hash_token(raw_refresh_token)
        new_pair = self.mint_pair(claims.subject)
        outcome = {"expired": False}

        def _rotate(account: Account) -> None:
            now = self._clock()
            consumed = next(
                (s for s in account.refresh_sessions if s.token_hash == token_hash), None
            )
            if consumed is None:
                raise RefreshTokenError("invalid")
            account.refresh_sessions.remove(consumed)
            if consumed.is_expired(now):
                outcome["expired"] = True
                return
            self.attach(account, new_pair, device, now)

        try:
            updated = self._mutate(claims.subject, _rotate)
        except RefreshTokenError:
            logger.warning(
                "refresh_token_replay_suspected",
                user_id=claims.subject,
                jti=claims.jti,
                ip_address=device.ip_address,
            )
            raise
        if updated is None:
            raise RefreshTokenError("invalid")
        if outcome["expired"]:
            raise RefreshTokenError("expired")
        return new_pair

    def revoke(self, account_id: str, raw_refresh_token: str) -> bool:
        token_hash = hash_token(raw_refresh_token)
        removed = {"count": 0}

        def _revoke(account: Account) -> None:
            before = len(account.refresh_sessions)
            account.refresh_sessions = [
                s for s in account.refresh_sessions if s.token_hash != token_hash
            ]
            removed["count"] = before - len(account.refresh_sessions)

        self._mutate(account_id, _revoke)
        return removed["count"] > 0

    def revoke_all(self, account_id: str) -> int:
        removed = {"count": 0}

        def _revoke_all(account: Account) -> None:
            removed["count"] = len(account.refresh_sessions)
            account.refresh_sessions = []

        self._mutate(account_id, _revoke_all)
        return removed["count"]

    def list_active(self, account_id: str) -> List[RefreshSession]:
        account = self.store.get_account(account_id)
        if account is None:
            return []
        live, _ = split_expired(account.refresh_sessions, self._clock())
        return sorted(live, key=lambda session: session.created_at, reverse=True)

    def sweep_expired(self) -> int:
        removed = self.store.purge_expired_sessions(self._clock())
        logger.info("refresh_session_sweep", removed=removed)
        return removed
