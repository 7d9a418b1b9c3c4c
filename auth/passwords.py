"""
auth/passwords.py -- Password hashing, verification and strength policy.

bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug detection
feeds bcrypt 4.x a password longer than 72 bytes, which it rejects. The work
factor comes from Settings.bcrypt_rounds (default 12) and is embedded in every
hash, so raising it later only affects newly written hashes.

The _DUMMY_HASH constant enables timing equalization in validate_credentials()
so response time does not reveal whether an email is registered [C1].
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import ValidationError
from core.config import get_settings

# Lowercase, uppercase, digit and one of the accepted symbols, 8+ chars.
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&]).{8,}$")
_BCRYPT_MAX_BYTES = 72

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters and contain an uppercase letter, "
    "a lowercase letter, a number, and one of @$!%*?&."
)


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only reads the first 72 bytes; recent releases raise instead of
    truncating, so the cut is made here for both hashing and verifying.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or empty stored hash.
        return False


def check_password_policy(plain: str, field: str = "password") -> None:
    """Raise ValidationError naming `field` if the password is too weak."""
    if not _PASSWORD_RE.match(plain or ""):
        raise ValidationError([field], PASSWORD_POLICY_MESSAGE)


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sheetflow_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    """Spend one bcrypt verification without a real hash to compare against."""
    verify_password(plain, _DUMMY_HASH)
