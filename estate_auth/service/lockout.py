from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from estate_auth.logging import get_logger
from estate_auth.storage.models import Account

logger = get_logger(__name__)


class AccountLockout:
    """Durable per-account failure counter.

    Methods mutate the account in place and are meant to run inside
    ``AccountStore.mutate_account`` so that the check and the increment of
    concurrent attempts are serialized on the same record.
    """

    def __init__(self, max_failed_attempts: int = 5, lock_duration: timedelta = timedelta(minutes=30)):
        self.max_failed_attempts = max_failed_attempts
        self.lock_duration = lock_duration

    def remaining_minutes(self, account: Account, now: datetime) -> Optional[int]:
        """Minutes left on an active lock; clears a lock that has run out."""
        seconds = account.locked_for(now)
        if seconds is not None:
            return max(1, math.ceil(seconds / 60))
        if account.lock_until is not None:
            account.lock_until = None
            account.failed_login_count = 0
        return None

    def register_failure(self, account: Account, now: datetime) -> bool:
        """Count a failed password check; returns True when this failure locks the account."""
        account.failed_login_count += 1
        account.last_failed_login = now
        if account.failed_login_count >= self.max_failed_attempts:
            account.lock_until = now + self.lock_duration
            logger.warning(
                "account_locked",
                user_id=account.id,
                failed_attempts=account.failed_login_count,
                lock_until=account.lock_until.isoformat(),
            )
            return True
        return False

    def register_success(self, account: Account, now: datetime) -> None:
        account.failed_login_count = 0
        account.lock_until = None
        account.last_successful_login = now
