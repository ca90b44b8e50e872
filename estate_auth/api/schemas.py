from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "locked",
        "rate_limited",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-]{5,19}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip()
    if not _PHONE_PATTERN.match(value):
        raise ValueError("invalid phone number")
    return value


class SignupRequest(CamelModel):
    email: str
    # Strength rules run in the service so every violation is reported together
    password: str = Field(..., max_length=1024)
    name: str = Field(..., min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: str = Field(default="buyer", max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_signup_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value


class LoginRequest(CamelModel):
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("phone")
    @classmethod
    def _validate_login_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.email and not self.phone:
            raise ValueError("email or phone is required")
        return self

    @property
    def identifier(self) -> str:
        return self.email or self.phone or ""


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., max_length=1024)


class PasswordResetRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=1024)


class SwitchRoleRequest(CamelModel):
    role: str = Field(..., max_length=32)


class TrialResponse(CamelModel):
    status: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    days_remaining: int = 0
    reminder_sent: bool = False
    listings_limit: int = 0


class UserResponse(CamelModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: str
    available_roles: List[str] = Field(default_factory=list)
    active_role: Optional[str] = None
    listings_limit: int = 0
    is_subscribed: bool = False
    subscription_status: Optional[str] = None
    trial: Optional[TrialResponse] = None
    created_at: datetime


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str


class AuthResponse(TokenResponse):
    user: UserResponse


class SessionResponse(CamelModel):
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None


class SessionListResponse(CamelModel):
    sessions: List[SessionResponse]


class MessageResponse(CamelModel):
    message: str
