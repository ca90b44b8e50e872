from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(raw)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TrialPhase(str, Enum):
    NO_TRIAL = "no_trial"
    ACTIVE = "active"
    REMINDER_SENT = "reminder_sent"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TrialState:
    """Time-boxed entitlement embedded in an account.

    ``end`` is fixed at ``start + duration`` when the trial begins. Both flags
    only ever move from False to True.
    """

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    reminder_sent: bool = False
    expired: bool = False
    listings_limit: int = 0

    @property
    def phase(self) -> TrialPhase:
        if self.start is None:
            return TrialPhase.NO_TRIAL
        if self.expired:
            return TrialPhase.EXPIRED
        if self.reminder_sent:
            return TrialPhase.REMINDER_SENT
        return TrialPhase.ACTIVE

    @property
    def is_open(self) -> bool:
        return self.phase in (TrialPhase.ACTIVE, TrialPhase.REMINDER_SENT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": _iso(self.start),
            "end": _iso(self.end),
            "reminder_sent": self.reminder_sent,
            "expired": self.expired,
            "listings_limit": self.listings_limit,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "TrialState":
        if not raw:
            return cls()
        return cls(
            start=_dt(raw.get("start")),
            end=_dt(raw.get("end")),
            reminder_sent=bool(raw.get("reminder_sent")),
            expired=bool(raw.get("expired")),
            listings_limit=int(raw.get("listings_limit") or 0),
        )


@dataclass
class RefreshSession:
    token_hash: str
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["expires_at"] = _iso(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RefreshSession":
        return cls(
            token_hash=raw["token_hash"],
            created_at=_dt(raw["created_at"]),
            expires_at=_dt(raw["expires_at"]),
            device_info=raw.get("device_info"),
            ip_address=raw.get("ip_address"),
        )


@dataclass
class LoginEvent:
    timestamp: datetime
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoginEvent":
        return cls(
            timestamp=_dt(raw["timestamp"]),
            success=bool(raw["success"]),
            ip_address=raw.get("ip_address"),
            user_agent=raw.get("user_agent"),
            failure_reason=raw.get("failure_reason"),
        )


@dataclass
class Account:
    id: str
    email: str
    name: str = ""
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    role: str = "buyer"
    available_roles: List[str] = field(default_factory=list)
    active_role: Optional[str] = None
    primary_role: Optional[str] = None
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    listings_limit: int = 0
    is_subscribed: bool = False
    subscription_status: Optional[str] = None
    subscription_plan: Optional[str] = None
    subscription_product_name: Optional[str] = None
    trial: TrialState = field(default_factory=TrialState)
    refresh_sessions: List[RefreshSession] = field(default_factory=list)
    login_history: List[LoginEvent] = field(default_factory=list)
    last_successful_login: Optional[datetime] = None
    last_failed_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = "buyer",
        listings_limit: int = 0,
        now: Optional[datetime] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email.lower(),
            name=name,
            phone=phone,
            password_hash=password_hash,
            role=role,
            listings_limit=listings_limit,
            created_at=now or utcnow(),
        )

    @property
    def has_paid_plan(self) -> bool:
        return self.is_subscribed and self.subscription_status == "active"

    def locked_for(self, now: datetime) -> Optional[float]:
        """Seconds left on an active lock, or None when the account is not locked."""
        if self.lock_until is None or self.lock_until <= now:
            return None
        return (self.lock_until - now).total_seconds()
