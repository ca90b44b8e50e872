"""Storage contract shared between the memory and postgres implementations."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from estate_auth.storage.models import Account, RefreshSession

AccountMutator = Callable[[Account], None]


class AccountStore(Protocol):
    """Durable account records.

    ``mutate_account`` is the only write path for an existing account: the
    mutator runs against a private copy while the account is held exclusively
    and the copy is committed only if the mutator returns normally.
    """

    def create_account(self, account: Account) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        ...

    def get_account_by_reset_token_hash(self, token_hash: str) -> Optional[Account]:
        ...

    def mutate_account(self, account_id: str, mutator: AccountMutator) -> Optional[Account]:
        ...

    def list_trial_accounts(self) -> List[Account]:
        ...

    def purge_expired_sessions(self, now: datetime) -> int:
        ...

    def ping(self) -> bool:
        ...


def split_expired(
    sessions: List[RefreshSession], now: datetime
) -> Tuple[List[RefreshSession], List[RefreshSession]]:
    """Partition sessions into (live, expired)."""
    live: List[RefreshSession] = []
    expired: List[RefreshSession] = []
    for session in sessions:
        (expired if session.is_expired(now) else live).append(session)
    return live, expired
