"""Agent trial entitlement.

The decision logic is pure: ``transition`` computes the next ``TrialState``
and the ``select_*`` helpers pick accounts from a snapshot. ``TrialEngine``
applies the results through the account store and sends notifications.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional

from estate_auth.config import DOWNGRADE_ROLE, TRIAL_ROLE, Role, Settings
from estate_auth.logging import get_logger
from estate_auth.service.email import NotificationService
from estate_auth.storage.common import AccountStore
from estate_auth.storage.models import Account, TrialPhase, TrialState, utcnow

logger = get_logger(__name__)

PAID_AGENT_LISTINGS_LIMIT = 50
PAID_SELLER_LISTINGS_LIMIT = 20


class TrialEvent(str, Enum):
    START = "start"
    REMIND = "remind"
    EXPIRE = "expire"


class InvalidTrialTransition(ValueError):
    def __init__(self, phase: TrialPhase, event: TrialEvent) -> None:
        super().__init__(f"cannot apply {event.value} to a trial in phase {phase.value}")
        self.phase = phase
        self.event = event


@dataclass(frozen=True)
class TrialPolicy:
    duration: timedelta = timedelta(days=7)
    reminder_lead: timedelta = timedelta(days=3)
    listings_limit: int = 10
    free_listings_limit: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrialPolicy":
        return cls(
            duration=settings.trial_duration,
            reminder_lead=settings.trial_reminder_lead,
            listings_limit=settings.trial_listings_limit,
            free_listings_limit=settings.free_listings_limit,
        )


def reminder_due(state: TrialState, now: datetime, lead: timedelta) -> bool:
    return (
        state.phase is TrialPhase.ACTIVE
        and state.end is not None
        and now <= state.end <= now + lead
    )


def expiry_due(state: TrialState, now: datetime) -> bool:
    return state.is_open and state.end is not None and state.end <= now


def transition(
    state: TrialState, event: TrialEvent, now: datetime, policy: TrialPolicy
) -> TrialState:
    """Return the state after ``event``; raises InvalidTrialTransition otherwise.

    NoTrial|Expired --start--> Active --remind--> ReminderSent
    Active|ReminderSent --expire--> Expired
    """
    phase = state.phase
    if event is TrialEvent.START:
        if phase not in (TrialPhase.NO_TRIAL, TrialPhase.EXPIRED):
            raise InvalidTrialTransition(phase, event)
        return TrialState(
            start=now,
            end=now + policy.duration,
            reminder_sent=False,
            expired=False,
            listings_limit=policy.listings_limit,
        )
    if event is TrialEvent.REMIND:
        if not reminder_due(state, now, policy.reminder_lead):
            raise InvalidTrialTransition(phase, event)
        return replace(state, reminder_sent=True)
    if event is TrialEvent.EXPIRE:
        if not expiry_due(state, now):
            raise InvalidTrialTransition(phase, event)
        return replace(state, expired=True)
    raise InvalidTrialTransition(phase, event)


def select_reminder_candidates(
    accounts: Iterable[Account], now: datetime, policy: TrialPolicy
) -> List[Account]:
    return [
        account
        for account in accounts
        if account.role == TRIAL_ROLE.value and reminder_due(account.trial, now, policy.reminder_lead)
    ]


def select_expiry_candidates(accounts: Iterable[Account], now: datetime) -> List[Account]:
    return [
        account
        for account in accounts
        if account.role == TRIAL_ROLE.value
        and expiry_due(account.trial, now)
        and not account.has_paid_plan
    ]


def start_trial(account: Account, now: datetime, policy: TrialPolicy) -> None:
    account.trial = transition(account.trial, TrialEvent.START, now, policy)
    account.role = TRIAL_ROLE.value
    account.listings_limit = policy.listings_limit
    account.subscription_status = "trial"
    if not account.available_roles:
        account.available_roles = [TRIAL_ROLE.value]
    account.active_role = account.active_role or TRIAL_ROLE.value
    account.primary_role = account.primary_role or TRIAL_ROLE.value


def apply_reminder(account: Account, now: datetime, policy: TrialPolicy) -> None:
    account.trial = transition(account.trial, TrialEvent.REMIND, now, policy)


def apply_expiry(account: Account, now: datetime, policy: TrialPolicy) -> None:
    account.trial = transition(account.trial, TrialEvent.EXPIRE, now, policy)
    account.role = DOWNGRADE_ROLE.value
    account.listings_limit = policy.free_listings_limit
    account.is_subscribed = False
    account.subscription_status = "expired"
    account.subscription_plan = None
    account.subscription_product_name = None


def wants_trial(account: Account) -> bool:
    """True when adopting the trial role should start a fresh entitlement."""
    return not account.trial.is_open and not account.has_paid_plan


def effective_listings_limit(account: Account, now: datetime, policy: TrialPolicy) -> int:
    role = account.role
    if role == Role.AGENT.value:
        if account.trial.is_open and account.trial.end and account.trial.end > now:
            return account.trial.listings_limit
        if account.has_paid_plan:
            return PAID_AGENT_LISTINGS_LIMIT
        return policy.free_listings_limit
    if role == Role.PRIVATE_SELLER.value:
        return PAID_SELLER_LISTINGS_LIMIT if account.has_paid_plan else policy.free_listings_limit
    if role == Role.BUYER.value:
        return 0
    return account.listings_limit


def days_remaining(state: TrialState, now: datetime) -> int:
    if not state.is_open or state.end is None or state.end <= now:
        return 0
    return math.ceil((state.end - now).total_seconds() / 86400)


@dataclass
class TrialSweepResult:
    reminders_sent: int = 0
    trials_expired: int = 0


class TrialEngine:
    """Applies trial transitions selected from the store."""

    def __init__(
        self,
        store: AccountStore,
        notifier: NotificationService,
        policy: TrialPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.policy = policy
        self._clock = clock

    async def notify_started(self, account: Account) -> None:
        await asyncio.to_thread(
            self.notifier.send_trial_started,
            account.email,
            account.name,
            account.trial.end,
            account.trial.listings_limit,
        )

    def _apply(self, account_id: str, due: Callable[[Account], bool], effect) -> Optional[Account]:
        """Re-check ``due`` under the account lock and apply ``effect`` once."""
        applied = {"done": False}

        def _mutate(account: Account) -> None:
            if due(account):
                effect(account, self._clock(), self.policy)
                applied["done"] = True

        updated = self.store.mutate_account(account_id, _mutate)
        return updated if applied["done"] else None

    async def send_reminders(self) -> int:
        now = self._clock()
        candidates = select_reminder_candidates(self.store.list_trial_accounts(), now, self.policy)
        sent = 0
        for candidate in candidates:
            try:
                updated = self._apply(
                    candidate.id,
                    lambda acc: bool(
                        select_reminder_candidates([acc], self._clock(), self.policy)
                    ),
                    apply_reminder,
                )
                if updated is None:
                    continue
                sent += 1
                await asyncio.to_thread(
                    self.notifier.send_trial_reminder,
                    updated.email,
                    updated.name,
                    updated.trial.end,
                    days_remaining(updated.trial, self._clock()),
                )
                logger.info("trial_reminder_sent", user_id=updated.id)
            except Exception as exc:
                logger.error("trial_reminder_failed", user_id=candidate.id, error=str(exc))
        return sent

    async def expire_trials(self) -> int:
        now = self._clock()
        candidates = select_expiry_candidates(self.store.list_trial_accounts(), now)
        expired = 0
        for candidate in candidates:
            try:
                updated = self._apply(
                    candidate.id,
                    lambda acc: bool(select_expiry_candidates([acc], self._clock())),
                    apply_expiry,
                )
                if updated is None:
                    continue
                expired += 1
                await asyncio.to_thread(
                    self.notifier.send_trial_expired,
                    updated.email,
                    updated.name,
                    updated.listings_limit,
                )
                logger.info("trial_expired", user_id=updated.id, role=updated.role)
            except Exception as exc:
                logger.error("trial_expiry_failed", user_id=candidate.id, error=str(exc))
        return expired

    async def run(self) -> TrialSweepResult:
        result = TrialSweepResult(
            reminders_sent=await self.send_reminders(),
            trials_expired=await self.expire_trials(),
        )
        logger.info(
            "trial_sweep_complete",
            reminders_sent=result.reminders_sent,
            trials_expired=result.trials_expired,
        )
        return result
