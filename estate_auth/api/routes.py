from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from estate_auth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    SwitchRoleRequest,
    TokenRefreshRequest,
    TokenResponse,
    TrialResponse,
    UserResponse,
)
from estate_auth.logging import get_logger
from estate_auth.service.rate_limit import client_ip
from estate_auth.service.runtime import get_runtime
from estate_auth.service.sessions import DeviceInfo, TokenPair
from estate_auth.service.trial import days_remaining, effective_listings_limit
from estate_auth.storage.models import Account, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_RESET_REQUESTED_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _device(request: Request) -> DeviceInfo:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return DeviceInfo(
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(
            request.headers.get("x-forwarded-for"),
            peer,
            trust_forwarded=runtime.settings.trust_forwarded_for,
        ),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    account = runtime.auth.authenticate(_extract_bearer(authorization))
    if account is None:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return account


def _user_payload(account: Account) -> UserResponse:
    runtime = get_runtime()
    now = utcnow()
    trial = None
    if account.trial.start is not None:
        trial = TrialResponse(
            status=account.trial.phase.value,
            start=account.trial.start,
            end=account.trial.end,
            days_remaining=days_remaining(account.trial, now),
            reminder_sent=account.trial.reminder_sent,
            listings_limit=account.trial.listings_limit,
        )
    return UserResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        phone=account.phone,
        role=account.role,
        available_roles=account.available_roles,
        active_role=account.active_role,
        listings_limit=effective_listings_limit(account, now, runtime.trials.policy),
        is_subscribed=account.is_subscribed,
        subscription_status=account.subscription_status,
        trial=trial,
        created_at=account.created_at,
    )


def _auth_payload(account: Account, tokens: TokenPair) -> dict:
    return AuthResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        user=_user_payload(account),
    ).dump()


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest, request: Request):
    """Create an account and return its first token pair.

    Choosing the agent role starts the agent trial.
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.email,
        body.password,
        name=body.name,
        phone=body.phone,
        role=body.role,
        device=_device(request),
    )
    return Envelope(status="ok", data=_auth_payload(result.account, result.tokens))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(body.identifier, body.password, device=_device(request))
    return Envelope(status="ok", data=_auth_payload(result.account, result.tokens))


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token, device=_device(request))
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token, refresh_token=tokens.refresh_token
        ).dump(),
    )


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, account: Account = Depends(get_account)):
    runtime = get_runtime()
    await runtime.auth.logout(account.id, body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out").dump())


@router.post("/logout-all", response_model=Envelope)
async def logout_all(account: Account = Depends(get_account)):
    runtime = get_runtime()
    await runtime.auth.logout_all(account.id)
    return Envelope(
        status="ok", data=MessageResponse(message="logged out from all devices").dump()
    )


@router.get("/sessions", response_model=Envelope)
async def list_sessions(account: Account = Depends(get_account)):
    runtime = get_runtime()
    sessions = [
        SessionResponse(
            created_at=session.created_at,
            expires_at=session.expires_at,
            device_info=session.device_info,
            ip_address=session.ip_address,
        )
        for session in runtime.auth.list_sessions(account.id)
    ]
    return Envelope(status="ok", data=SessionListResponse(sessions=sessions).dump())


@router.post("/change-password", response_model=Envelope)
async def change_password(body: PasswordChangeRequest, account: Account = Depends(get_account)):
    """Change the password and sign out every session."""
    runtime = get_runtime()
    await runtime.auth.change_password(account.id, body.current_password, body.new_password)
    return Envelope(
        status="ok",
        data=MessageResponse(message="password changed, please sign in again").dump(),
    )


@router.post("/request-password-reset", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(
        body.email, ip_address=_device(request).ip_address
    )
    return Envelope(status="ok", data=MessageResponse(message=_RESET_REQUESTED_MESSAGE).dump())


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(
        body.token, body.new_password, device=_device(request)
    )
    return Envelope(status="ok", data=_auth_payload(result.account, result.tokens))


@router.post("/switch-role", response_model=Envelope)
async def switch_role(body: SwitchRoleRequest, account: Account = Depends(get_account)):
    runtime = get_runtime()
    updated = await runtime.auth.switch_role(account.id, body.role)
    return Envelope(status="ok", data={"user": _user_payload(updated).dump()})


@router.get("/me", response_model=Envelope)
async def me(account: Account = Depends(get_account)):
    return Envelope(status="ok", data={"user": _user_payload(account).dump()})
