"""
auth/service.py -- Boundary operations of the IAM core.

AuthService composes the leaf components (credentials, TokenIssuer,
SessionManager, TOTPManager) into the operations the HTTP layer exposes:
register, login, refresh, logout, logout-all, change/forgot/reset password,
2FA setup/enable/disable, profile and admin account updates.

It is built once per process in the FastAPI lifespan (or by the CLI) and
holds no per-request state. Errors are AuthError subclasses; persistence
errors propagate untouched.

The clock is injectable so lockout windows, token expiry and TOTP steps can
be tested without sleeping.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.credentials import (
    complete_authentication,
    normalize_email,
    record_failure,
    validate_credentials,
)
from auth.errors import (
    BadRequest,
    Conflict,
    Forbidden,
    InvalidResetToken,
    InvalidTwoFactorCode,
    NotFound,
    TwoFactorRequired,
)
from auth.models import AccessClaims, Account, Role, TokenPair, TOTPSetup
from auth.passwords import check_password_policy, hash_password, verify_password
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import TokenIssuer, generate_reset_token
from auth.totp import TOTPManager
from core.config import Settings, get_settings

logger = logging.getLogger("sheetflow.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_reset_token(account: Account, raw_token: str) -> None:
    """Default reset delivery: no mail transport is wired in, so log it.

    The raw token is only written in debug mode.
    """
    if get_settings().debug:
        logger.info("Password reset token for account id=%s: %s", account.id, raw_token)
    else:
        logger.info("Password reset requested for account id=%s", account.id)


class AuthService:
    """Usage:
    service = AuthService(AuthStore(), TokenIssuer.from_settings())
    pair = service.login("a@x.com", "Str0ng!Pass1")
    """

    def __init__(
        self,
        store: AuthStore,
        token_issuer: TokenIssuer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        reset_notifier: Callable[[Account, str], None] = _log_reset_token,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.token_issuer = token_issuer
        self._clock = clock
        self._reset_notifier = reset_notifier
        self.sessions = SessionManager(store, token_issuer, self.settings.refresh_token_expire_seconds, clock)
        self.totp = TOTPManager(
            store,
            token_issuer,
            issuer_name=self.settings.totp_issuer,
            valid_window=self.settings.totp_valid_window,
            backup_code_count=self.settings.backup_code_count,
            clock=clock,
        )

    def _get_account(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFound()
        return account

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        *,
        email: str,
        password: str,
        department_id: str,
        role: Role = Role.END_USER,
        first_name: str = "",
        last_name: str = "",
        actor: AccessClaims | None = None,
    ) -> Account:
        """Create an account.

        Anonymous callers may only self-register as END_USER, and only while
        self-registration is enabled. Any other role needs an ADMIN actor.
        """
        is_admin = actor is not None and actor.role == Role.ADMIN
        if not is_admin:
            if not self.settings.self_registration_enabled:
                raise Forbidden([Role.ADMIN], "Self-registration is disabled.")
            if Role(role) != Role.END_USER:
                raise Forbidden([Role.ADMIN], "Only administrators can assign elevated roles.")

        check_password_policy(password)
        account = Account(
            email=normalize_email(email),
            password_hash=hash_password(password, self.settings.bcrypt_rounds),
            role=Role(role),
            department_id=department_id,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError as exc:
            raise Conflict() from exc

        logger.info("Account registered id=%s role=%s", account_id, account.role.value)
        return self._get_account(account_id)

    def login(
        self,
        email: str,
        password: str,
        code: str | None = None,
        ip: str | None = None,
        agent: str | None = None,
    ) -> TokenPair:
        """Verify credentials (and the second factor if enabled); issue an access/refresh pair."""
        now = self._clock()
        account = validate_credentials(
            self.store,
            email,
            password,
            now=now,
            threshold=self.settings.lockout_threshold,
            lock_seconds=self.settings.lockout_seconds,
        )

        if account.totp_enabled:
            if not code:
                raise TwoFactorRequired()
            if not self.totp.verify_login_code(account, code):
                record_failure(
                    self.store,
                    account,
                    now=now,
                    threshold=self.settings.lockout_threshold,
                    lock_seconds=self.settings.lockout_seconds,
                )
                raise InvalidTwoFactorCode()
            complete_authentication(self.store, account, now)

        refresh_token = self.sessions.create_session(account.id, ip, agent)
        logger.info("Login succeeded for account id=%s", account.id)
        return TokenPair(
            account=account,
            access_token=self.token_issuer.issue_access_token(account, now),
            refresh_token=refresh_token,
            expires_in=self.token_issuer.ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, ip: str | None = None) -> TokenPair:
        return self.sessions.refresh(refresh_token, ip)

    def logout(self, refresh_token: str, ip: str | None = None) -> None:
        self.sessions.revoke_one(refresh_token, ip)

    def logout_all(self, account_id: int) -> int:
        return self.sessions.revoke_all(account_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, account_id: int, current_password: str, new_password: str) -> None:
        """Replace the password after re-verifying the current one; log out every device."""
        account = self._get_account(account_id)
        if not verify_password(current_password, account.password_hash):
            raise BadRequest("Current password is incorrect.")
        if verify_password(new_password, account.password_hash):
            raise BadRequest("New password must be different from current password.")
        check_password_policy(new_password, field="new_password")

        self.store.set_password(account_id, hash_password(new_password, self.settings.bcrypt_rounds), self._clock())
        self.sessions.revoke_all(account_id)
        logger.info("Password changed for account id=%s", account_id)

    def forgot_password(self, email: str) -> None:
        """Issue a reset token if the email belongs to an active account.

        The caller always answers with the same generic message, so this
        returns nothing either way.
        """
        account = self.store.get_by_email(normalize_email(email))
        if account is None or not account.is_active:
            return
        raw = generate_reset_token()
        expires_at = self._clock() + timedelta(seconds=self.settings.password_reset_expire_seconds)
        self.store.create_password_reset(account.id, self.token_issuer.digest(raw), expires_at)
        self._reset_notifier(account, raw)

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token, set the new password, clear lockout and revoke all sessions."""
        check_password_policy(new_password, field="new_password")
        now = self._clock()
        account_id = self.store.consume_password_reset(self.token_issuer.digest(token or ""), now)
        if account_id is None or self.store.get_by_id(account_id) is None:
            raise InvalidResetToken()

        self.store.set_password(account_id, hash_password(new_password, self.settings.bcrypt_rounds), now)
        self.sessions.revoke_all(account_id)
        logger.info("Password reset completed for account id=%s", account_id)

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def setup_2fa(self, account_id: int) -> TOTPSetup:
        return self.totp.setup(account_id)

    def enable_2fa(self, account_id: int, code: str) -> None:
        self.totp.enable(account_id, code)

    def disable_2fa(self, account_id: int, code: str) -> None:
        self.totp.disable(account_id, code)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_profile(self, account_id: int) -> Account:
        return self._get_account(account_id)

    def list_department(self, department_id: str) -> list[Account]:
        return self.store.list_by_department(department_id)

    def update_account(self, actor: AccessClaims, account_id: int, **changes) -> Account:
        """Apply admin changes (role, department_id, is_active, names).

        Refuses self-deactivation and removing the last active ADMIN [M4].
        Deactivation revokes every session so the account cannot refresh.
        """
        target = self._get_account(account_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        if not updates:
            raise BadRequest("No fields to update.")

        deactivating = updates.get("is_active") is False
        demoting = "role" in updates and Role(updates["role"]) != Role.ADMIN
        if deactivating and str(target.id) == actor.subject:
            raise BadRequest("You cannot deactivate your own account.")
        if (deactivating or demoting) and target.role == Role.ADMIN and target.is_active:
            if self.store.count_active_admins() <= 1:
                raise BadRequest("Cannot remove the last active admin account.")

        self.store.update_account(account_id, **updates)
        if deactivating:
            self.sessions.revoke_all(account_id)
        logger.info("Account id=%s updated by id=%s: %s", account_id, actor.subject, ", ".join(sorted(updates)))
        return self._get_account(account_id)
