from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from estate_auth.logging import get_logger
from estate_auth.storage.common import AccountMutator, split_expired
from estate_auth.storage.errors import ConstraintViolation, StorageUnavailable
from estate_auth.storage.models import (
    Account,
    LoginEvent,
    RefreshSession,
    TrialState,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    phone TEXT UNIQUE,
    password_hash TEXT,
    role TEXT NOT NULL,
    available_roles JSONB NOT NULL DEFAULT '[]'::jsonb,
    active_role TEXT,
    primary_role TEXT,
    failed_login_count INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    password_changed_at TIMESTAMPTZ,
    reset_token_hash TEXT,
    reset_token_expires_at TIMESTAMPTZ,
    listings_limit INTEGER NOT NULL DEFAULT 0,
    is_subscribed BOOLEAN NOT NULL DEFAULT FALSE,
    subscription_status TEXT,
    subscription_plan TEXT,
    subscription_product_name TEXT,
    trial JSONB,
    refresh_sessions JSONB NOT NULL DEFAULT '[]'::jsonb,
    login_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    last_successful_login TIMESTAMPTZ,
    last_failed_login TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS account_reset_token_idx ON account (reset_token_hash)
    WHERE reset_token_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS account_open_trial_idx ON account (((trial->>'end')))
    WHERE trial IS NOT NULL AND (trial->>'expired')::boolean = false;
"""

_COLUMNS = (
    "id",
    "email",
    "name",
    "phone",
    "password_hash",
    "role",
    "available_roles",
    "active_role",
    "primary_role",
    "failed_login_count",
    "lock_until",
    "password_changed_at",
    "reset_token_hash",
    "reset_token_expires_at",
    "listings_limit",
    "is_subscribed",
    "subscription_status",
    "subscription_plan",
    "subscription_product_name",
    "trial",
    "refresh_sessions",
    "login_history",
    "last_successful_login",
    "last_failed_login",
    "created_at",
)


def _load_json(raw: Any) -> Any:
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _account_from_row(row: Dict[str, Any]) -> Account:
    trial_raw = _load_json(row.get("trial"))
    return Account(
        id=row["id"],
        email=row["email"],
        name=row.get("name") or "",
        phone=row.get("phone"),
        password_hash=row.get("password_hash"),
        role=row["role"],
        available_roles=list(_load_json(row.get("available_roles")) or []),
        active_role=row.get("active_role"),
        primary_role=row.get("primary_role"),
        failed_login_count=row.get("failed_login_count") or 0,
        lock_until=row.get("lock_until"),
        password_changed_at=row.get("password_changed_at"),
        reset_token_hash=row.get("reset_token_hash"),
        reset_token_expires_at=row.get("reset_token_expires_at"),
        listings_limit=row.get("listings_limit") or 0,
        is_subscribed=bool(row.get("is_subscribed")),
        subscription_status=row.get("subscription_status"),
        subscription_plan=row.get("subscription_plan"),
        subscription_product_name=row.get("subscription_product_name"),
        trial=TrialState.from_dict(trial_raw),
        refresh_sessions=[
            RefreshSession.from_dict(item)
            for item in _load_json(row.get("refresh_sessions")) or []
        ],
        login_history=[
            LoginEvent.from_dict(item)
            for item in _load_json(row.get("login_history")) or []
        ],
        last_successful_login=row.get("last_successful_login"),
        last_failed_login=row.get("last_failed_login"),
        created_at=row["created_at"],
    )


def _account_params(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email.lower(),
        "name": account.name,
        "phone": account.phone,
        "password_hash": account.password_hash,
        "role": account.role,
        "available_roles": json.dumps(account.available_roles),
        "active_role": account.active_role,
        "primary_role": account.primary_role,
        "failed_login_count": account.failed_login_count,
        "lock_until": account.lock_until,
        "password_changed_at": account.password_changed_at,
        "reset_token_hash": account.reset_token_hash,
        "reset_token_expires_at": account.reset_token_expires_at,
        "listings_limit": account.listings_limit,
        "is_subscribed": account.is_subscribed,
        "subscription_status": account.subscription_status,
        "subscription_plan": account.subscription_plan,
        "subscription_product_name": account.subscription_product_name,
        "trial": json.dumps(account.trial.to_dict()) if account.trial.start else None,
        "refresh_sessions": json.dumps([s.to_dict() for s in account.refresh_sessions]),
        "login_history": json.dumps([e.to_dict() for e in account.login_history]),
        "last_successful_login": account.last_successful_login,
        "last_failed_login": account.last_failed_login,
        "created_at": account.created_at,
    }


class PostgresStore:
    """Account store backed by PostgreSQL.

    Each account is one row; its refresh sessions, login history and trial
    live in JSONB columns so that every per-account write is a single-row
    update under ``SELECT ... FOR UPDATE``.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.QueryCanceled, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StorageUnavailable:
            return False

    def create_account(self, account: Account) -> Account:
        params = _account_params(account)
        columns = ", ".join(_COLUMNS)
        placeholders = ", ".join(f"%({name})s" for name in _COLUMNS)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO account ({columns}) VALUES ({placeholders})",
                    params,
                )
        except errors.UniqueViolation as exc:
            field = "phone" if "phone" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def _get_one(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} = %s", (value,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._get_one("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._get_one("email", email.strip().lower())

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        return self._get_one("phone", phone)

    def get_account_by_reset_token_hash(self, token_hash: str) -> Optional[Account]:
        return self._get_one("reset_token_hash", token_hash)

    def mutate_account(self, account_id: str, mutator: AccountMutator) -> Optional[Account]:
        assignments = ", ".join(f"{name} = %({name})s" for name in _COLUMNS if name != "id")
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s FOR UPDATE", (account_id,)
                ).fetchone()
                if not row:
                    return None
                account = _account_from_row(row)
                mutator(account)
                try:
                    conn.execute(
                        f"UPDATE account SET {assignments} WHERE id = %(id)s",
                        _account_params(account),
                    )
                except errors.UniqueViolation as exc:
                    field = "phone" if "phone" in str(exc) else "email"
                    raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def list_trial_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account
                WHERE trial IS NOT NULL AND (trial->>'expired')::boolean = false
                ORDER BY (trial->>'end')
                """
            ).fetchall()
        return [_account_from_row(row) for row in rows]

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id FROM account
                WHERE EXISTS (
                    SELECT 1 FROM jsonb_array_elements(refresh_sessions) s
                    WHERE (s->>'expires_at')::timestamptz <= %s
                )
                """,
                (now,),
            ).fetchall()

        removed = 0

        def _prune(account: Account) -> None:
            nonlocal removed
            live, expired = split_expired(account.refresh_sessions, now)
            account.refresh_sessions = live
            removed += len(expired)

        # Re-read each row under its lock so concurrent logins are not lost
        for row in rows:
            self.mutate_account(row["id"], _prune)
        return removed
