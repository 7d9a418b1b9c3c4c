"""
auth/totp.py -- Time-based one-time password (RFC 6238) two-factor authentication.

Enrollment is two-phase:
  setup   -> secret stored, totp_enabled stays False (pending, not enforced)
  enable  -> a valid code proves the authenticator app holds the secret
  disable -> a valid code clears secret, flag and backup codes

Codes use the standard 30-second step with a drift window of +/- valid_window
steps (default 1). Backup codes are single-use and stored as HMAC digests,
like every other opaque credential (see auth/tokens.py).
"""

from __future__ import annotations

import base64
import io
import logging
from collections.abc import Callable
from datetime import datetime, timezone

import pyotp
import qrcode

from auth.errors import BadCode, BadRequest, NotFound
from auth.models import Account, TOTPSetup
from auth.store import AuthStore
from auth.tokens import TokenIssuer, generate_backup_code

logger = logging.getLogger("sheetflow.auth.totp")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(code: str | None) -> str:
    return (code or "").replace(" ", "").replace("-", "").strip()


def verify_totp(secret: str, code: str | None, for_time: datetime, valid_window: int = 1) -> bool:
    """Return True if `code` matches `secret` within +/- valid_window steps of for_time."""
    code = _clean(code)
    if not secret or not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=valid_window)


def qr_code_data_uri(otpauth_uri: str) -> str:
    """Render the provisioning URI as a PNG data URI for authenticator apps."""
    img = qrcode.make(otpauth_uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class TOTPManager:
    def __init__(
        self,
        store: AuthStore,
        token_issuer: TokenIssuer,
        *,
        issuer_name: str,
        valid_window: int = 1,
        backup_code_count: int = 8,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.token_issuer = token_issuer
        self.issuer_name = issuer_name
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self._clock = clock

    def _get_account(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFound()
        return account

    def setup(self, account_id: int) -> TOTPSetup:
        """Generate a pending secret and fresh backup codes.

        Calling setup again before enable replaces both. Once 2FA is enabled
        it must be disabled first, so the enforced secret never changes
        silently.
        """
        account = self._get_account(account_id)
        if account.totp_enabled:
            raise BadRequest("Two-factor authentication is already enabled.")

        secret = pyotp.random_base32(length=32)
        otpauth_uri = pyotp.TOTP(secret).provisioning_uri(name=account.email, issuer_name=self.issuer_name)
        backup_codes = [generate_backup_code() for _ in range(self.backup_code_count)]
        hashes = [self.token_issuer.digest(code) for code in backup_codes]
        if not self.store.set_totp_secret(account_id, secret, hashes):
            raise BadRequest("Two-factor authentication is already enabled.")

        logger.info("2FA setup started for account id=%s", account_id)
        return TOTPSetup(
            secret=secret,
            otpauth_uri=otpauth_uri,
            qr_code_data_uri=qr_code_data_uri(otpauth_uri),
            backup_codes=backup_codes,
        )

    def enable(self, account_id: int, code: str) -> None:
        account = self._get_account(account_id)
        if not account.totp_secret:
            raise BadRequest("Two-factor authentication setup not initiated.")
        if not verify_totp(account.totp_secret, code, self._clock(), self.valid_window):
            raise BadCode()
        if not self.store.enable_totp(account_id, account.totp_secret):
            # Secret cleared or replaced since it was read.
            raise BadRequest("Two-factor authentication setup not initiated.")
        logger.info("2FA enabled for account id=%s", account_id)

    def disable(self, account_id: int, code: str) -> None:
        account = self._get_account(account_id)
        if not account.totp_secret:
            raise BadRequest("Two-factor authentication is not enabled.")
        if not verify_totp(account.totp_secret, code, self._clock(), self.valid_window):
            raise BadCode()
        self.store.clear_totp(account_id)
        logger.info("2FA disabled for account id=%s", account_id)

    def verify_login_code(self, account: Account, code: str) -> bool:
        """Accept a current TOTP code, or consume one unused backup code."""
        now = self._clock()
        if verify_totp(account.totp_secret, code, now, self.valid_window):
            return True
        cleaned = _clean(code).upper()
        if cleaned and self.store.consume_backup_code(account.id, self.token_issuer.digest(cleaned), now):
            logger.info("Backup code used for account id=%s", account.id)
            return True
        return False
