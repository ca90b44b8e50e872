"""Password policy checks.

Pure functions only: nothing here hashes, stores or logs a password.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List

MIN_LENGTH = 8
MAX_LENGTH = 128
MIN_IDENTITY_TOKEN_LENGTH = 3

COMMON_PASSWORDS = (
    "password",
    "password1",
    "password123",
    "12345678",
    "qwerty",
    "abc123",
    "letmein",
    "welcome",
    "monkey",
    "1q2w3e4r",
    "qwertyuiop",
    "admin",
    "root",
    "user",
    "passw0rd",
    "p@ssword",
    "p@ssw0rd",
)

SEQUENCES = (
    "0123456789",
    "abcdefghijklmnopqrstuvwxyz",
    "qwertyuiop",
    "asdfghjkl",
    "zxcvbnm",
)

_SYMBOL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_IDENTITY_SPLIT_RE = re.compile(r"[\s._\-+@]+")


def _sequence_runs(run_length: int = 3) -> frozenset[str]:
    return frozenset(
        seq[i : i + run_length]
        for seq in SEQUENCES
        for i in range(len(seq) - run_length + 1)
    )


_SEQUENCE_RUNS = _sequence_runs()


@dataclass
class PasswordCheck:
    valid: bool
    violations: List[str] = field(default_factory=list)
    strength: str = "weak"


def strength(password: str) -> str:
    """Rate a password as weak, medium or strong."""
    score = 0
    if len(password) >= 8:
        score += 1
    if len(password) >= 12:
        score += 1
    if len(password) >= 16:
        score += 1
    if any(c.islower() for c in password):
        score += 1
    if any(c.isupper() for c in password):
        score += 1
    if any(c.isdigit() for c in password):
        score += 1
    if _SYMBOL_RE.search(password):
        score += 1
    if len(set(password)) >= max(1, len(password) * 3 // 4):
        score += 1
    if score <= 4:
        return "weak"
    if score <= 7:
        return "medium"
    return "strong"


def has_sequence(password: str) -> bool:
    lowered = password.lower()
    return any(lowered[i : i + 3] in _SEQUENCE_RUNS for i in range(len(lowered) - 2))


def validate(password: str) -> PasswordCheck:
    violations: List[str] = []
    if len(password) < MIN_LENGTH:
        violations.append(f"password must be at least {MIN_LENGTH} characters")
    if len(password) > MAX_LENGTH:
        violations.append(f"password must be at most {MAX_LENGTH} characters")
    if not any(c.isupper() for c in password):
        violations.append("password must contain an uppercase letter")
    if not any(c.islower() for c in password):
        violations.append("password must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        violations.append("password must contain a digit")
    if not _SYMBOL_RE.search(password):
        violations.append("password must contain a special character")

    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        violations.append("password is too common")
    if has_sequence(password):
        violations.append("password must not contain sequential characters")

    return PasswordCheck(valid=not violations, violations=violations, strength=strength(password))


def identity_tokens(email: str, name: str | None = None) -> List[str]:
    """Email local part plus the words of the display name."""
    tokens: List[str] = []
    local_part = (email or "").split("@", 1)[0]
    if local_part:
        tokens.append(local_part)
        tokens.extend(_IDENTITY_SPLIT_RE.split(local_part))
    if name:
        tokens.append(name)
        tokens.extend(_IDENTITY_SPLIT_RE.split(name))
    return tokens


def contains_identity(password: str, tokens: Iterable[str]) -> bool:
    lowered = password.lower()
    for token in tokens:
        token = (token or "").strip().lower()
        if len(token) >= MIN_IDENTITY_TOKEN_LENGTH and token in lowered:
            return True
    return False


def check_new_password(password: str, *, email: str, name: str | None = None) -> PasswordCheck:
    """Strength rules plus the identity check, as applied on signup and password change."""
    result = validate(password)
    if contains_identity(password, identity_tokens(email, name)):
        result.violations.append("password must not contain your name or email")
        result.valid = False
    return result
