from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from estate_auth.config import Settings
from estate_auth.logging import get_logger
from estate_auth.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class MintedToken:
    token: str
    jti: str
    expires_at: datetime


def hash_token(raw: str) -> str:
    """One-way digest stored in place of a refresh or reset token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_reset_token() -> str:
    return secrets.token_hex(32)


class TokenService:
    """HS256 bearer tokens with an explicit ``token_type`` discriminator.

    Access and refresh tokens are signed with different secrets, so a token
    of one kind never verifies as the other even before the type check.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self._clock = clock

    def _secret(self, token_type: str) -> bytes:
        if token_type == ACCESS:
            return self.settings.access_secret.encode()
        return self.settings.refresh_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(self._secret(token_type), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['token_type'])}"

    def _decode_jwt(
        self, token: str, expected_type: str, *, allow_expired: bool = False
    ) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", expected_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        # A missing discriminator is rejected, never inferred
        if payload.get("token_type") != expected_type:
            logger.warning(
                "jwt_token_type_mismatch",
                expected=expected_type,
                actual=payload.get("token_type"),
            )
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            return None
        if not allow_expired and exp_ts <= self._clock().timestamp():
            return None
        return payload

    def _mint(self, subject: str, token_type: str, ttl: timedelta) -> MintedToken:
        now = self._clock()
        expires_at = now + ttl
        jti = uuid.uuid4().hex
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return MintedToken(self._encode_jwt(payload), jti, expires_at)

    def mint_access(self, subject: str) -> MintedToken:
        return self._mint(subject, ACCESS, self.settings.access_token_ttl)

    def mint_refresh(self, subject: str) -> MintedToken:
        return self._mint(subject, REFRESH, self.settings.refresh_token_ttl)

    def _claims(self, payload: Optional[dict[str, Any]]) -> Optional[TokenClaims]:
        if payload is None:
            return None
        return TokenClaims(
            subject=str(payload["sub"]),
            token_type=payload["token_type"],
            jti=str(payload["jti"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def verify_access(self, token: str) -> Optional[TokenClaims]:
        return self._claims(self._decode_jwt(token, ACCESS))

    def verify_refresh(self, token: str, *, allow_expired: bool = False) -> Optional[TokenClaims]:
        """Check signature and type of a refresh token.

        ``allow_expired`` leaves the expiry decision to the stored session so
        rotation can tell "expired" apart from "invalid".
        """
        return self._claims(self._decode_jwt(token, REFRESH, allow_expired=allow_expired))
