from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional

from estate_auth.logging import get_logger
from estate_auth.storage.common import AccountMutator, split_expired
from estate_auth.storage.errors import ConstraintViolation
from estate_auth.storage.models import Account


class MemoryStore:
    """In-process account store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so mutators may call read helpers while the lock is held
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = account.email.lower()
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.phone and any(
                existing.phone == account.phone for existing in self.accounts.values()
            ):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            stored = copy.deepcopy(account)
            stored.email = email
            self.accounts[stored.id] = stored
            return copy.deepcopy(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return copy.deepcopy(account)
        return None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.phone and account.phone == phone:
                    return copy.deepcopy(account)
        return None

    def get_account_by_reset_token_hash(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.reset_token_hash == token_hash:
                    return copy.deepcopy(account)
        return None

    def mutate_account(self, account_id: str, mutator: AccountMutator) -> Optional[Account]:
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None:
                return None
            working = copy.deepcopy(current)
            mutator(working)
            self.accounts[account_id] = working
            return copy.deepcopy(working)

    def list_trial_accounts(self) -> List[Account]:
        with self._data_lock:
            return [
                copy.deepcopy(account)
                for account in self.accounts.values()
                if account.trial.is_open
            ]

    def purge_expired_sessions(self, now: datetime) -> int:
        removed = 0
        with self._data_lock:
            for account in self.accounts.values():
                live, expired = split_expired(account.refresh_sessions, now)
                if expired:
                    account.refresh_sessions = live
                    removed += len(expired)
        return removed
