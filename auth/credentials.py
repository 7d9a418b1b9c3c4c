"""
auth/credentials.py -- Email/password verification with lockout policy.

Order of checks (first failure wins):
  1. Unknown email        -> InvalidCredentials (bcrypt still runs) [C1]
  2. now < locked_until   -> AccountLocked, even with the right password
  3. is_active is False   -> AccountInactive
  4. Wrong password       -> atomic failure count, InvalidCredentials

A previous lock that has already expired is cleared lazily by the next
failure, which restarts the count at 1 rather than 0 or the pre-lock value.
See AuthStore.record_failed_login.

A correct password resets login_attempts to 0 and stamps last_login_at,
unless the account has 2FA enabled: then authentication is not complete until
the second factor passes, and the caller finishes it with
complete_authentication() or records the bad code with record_failure().
"""

from __future__ import annotations

import logging
from datetime import datetime

from auth.errors import AccountInactive, AccountLocked, InvalidCredentials
from auth.models import Account
from auth.passwords import burn_dummy_check, verify_password
from auth.store import AuthStore

logger = logging.getLogger("sheetflow.auth.credentials")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_locked(account: Account, now: datetime) -> bool:
    return account.locked_until is not None and now < account.locked_until


def record_failure(store: AuthStore, account: Account, *, now: datetime, threshold: int, lock_seconds: int) -> None:
    """Count one failed attempt against the account, locking it at the threshold."""
    updated = store.record_failed_login(account.id, now, threshold, lock_seconds)
    if updated is not None and is_locked(updated, now):
        logger.warning("Account id=%s locked after %d failed attempts", account.id, updated.login_attempts)


def complete_authentication(store: AuthStore, account: Account, now: datetime) -> Account:
    """Reset the failure counter and stamp last_login_at on the stored and in-memory account."""
    store.record_successful_login(account.id, now)
    account.login_attempts = 0
    account.locked_until = None
    account.last_login_at = now
    return account


def validate_credentials(
    store: AuthStore,
    email: str,
    password: str,
    *,
    now: datetime,
    threshold: int,
    lock_seconds: int,
) -> Account:
    """Return the account if email/password are valid and it may log in; raise otherwise."""
    account = store.get_by_email(normalize_email(email))
    if account is None:
        # Equalize timing -- do NOT return before running bcrypt [C1]
        burn_dummy_check(password)
        raise InvalidCredentials()

    if is_locked(account, now):
        logger.info("Login refused for locked account id=%s", account.id)
        raise AccountLocked()

    if not account.is_active:
        raise AccountInactive()

    if not verify_password(password, account.password_hash):
        record_failure(store, account, now=now, threshold=threshold, lock_seconds=lock_seconds)
        raise InvalidCredentials()

    if account.totp_enabled:
        return account
    return complete_authentication(store, account, now)
