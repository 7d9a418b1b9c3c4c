"""
tests/test_service.py -- AuthService registration, password and account administration flows.

Login/lockout, sessions and 2FA have their own modules; this one covers what
remains on the service boundary: registration rules, change/forgot/reset
password, and the admin update guards.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import (
    AccountLocked,
    BadRequest,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidResetToken,
    NotFound,
    ValidationError,
)
from auth.models import AccessClaims, Role
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings

PASSWORD = "Str0ng!Pass1"
NEW_PASSWORD = "N3w!Passw0rd"


def _actor(account_id: int, role: Role = Role.ADMIN, department_id: str = "D1") -> AccessClaims:
    now = datetime.now(timezone.utc)
    return AccessClaims(
        subject=str(account_id),
        email="admin@x.com",
        role=role,
        department_id=department_id,
        issued_at=now,
        expires_at=now + timedelta(minutes=15),
    )


class TestRegister:
    def test_self_registration(self, service: AuthService) -> None:
        account = service.register(email="A@X.com", password=PASSWORD, department_id="D1")
        assert account.id is not None
        assert account.email == "a@x.com"
        assert account.role == Role.END_USER
        assert account.password_hash != PASSWORD
        assert service.login("a@x.com", PASSWORD).access_token

    def test_duplicate_email(self, service: AuthService) -> None:
        service.register(email="a@x.com", password=PASSWORD, department_id="D1")
        with pytest.raises(Conflict) as exc_info:
            service.register(email="a@x.com", password=PASSWORD, department_id="D2")
        assert exc_info.value.status_code == 409

    def test_weak_password(self, service: AuthService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.register(email="a@x.com", password="password", department_id="D1")
        assert exc_info.value.fields == ["password"]

    def test_elevated_role_needs_admin(self, service: AuthService) -> None:
        with pytest.raises(Forbidden):
            service.register(email="p@x.com", password=PASSWORD, department_id="D1", role=Role.PREPARER)
        with pytest.raises(Forbidden):
            service.register(
                email="p@x.com",
                password=PASSWORD,
                department_id="D1",
                role=Role.PREPARER,
                actor=_actor(1, role=Role.IQP_REVIEWER),
            )

    def test_admin_assigns_role(self, service: AuthService) -> None:
        account = service.register(
            email="r@x.com",
            password=PASSWORD,
            department_id="D2",
            role=Role.IPDF_REVIEWER,
            actor=_actor(1),
        )
        assert account.role == Role.IPDF_REVIEWER
        assert account.department_id == "D2"

    def test_self_registration_disabled(self, store: AuthStore, issuer, clock) -> None:
        closed = AuthService(store, issuer, Settings(debug=True, self_registration_enabled=False), clock=clock)
        with pytest.raises(Forbidden):
            closed.register(email="a@x.com", password=PASSWORD, department_id="D1")
        assert closed.register(email="a@x.com", password=PASSWORD, department_id="D1", actor=_actor(1)).id


class TestChangePassword:
    def test_change_revokes_sessions(self, service: AuthService, make_account) -> None:
        account = make_account()
        pair = service.login("a@x.com", PASSWORD)
        service.change_password(account.id, PASSWORD, NEW_PASSWORD)

        with pytest.raises(InvalidRefreshToken):
            service.refresh(pair.refresh_token)
        with pytest.raises(InvalidCredentials):
            service.login("a@x.com", PASSWORD)
        assert service.login("a@x.com", NEW_PASSWORD).access_token

    def test_wrong_current_password(self, service: AuthService, make_account) -> None:
        account = make_account()
        with pytest.raises(BadRequest):
            service.change_password(account.id, "Wr0ng!Pass1", NEW_PASSWORD)

    def test_same_password(self, service: AuthService, make_account) -> None:
        account = make_account()
        with pytest.raises(BadRequest):
            service.change_password(account.id, PASSWORD, PASSWORD)

    def test_weak_new_password(self, service: AuthService, make_account) -> None:
        account = make_account()
        with pytest.raises(ValidationError) as exc_info:
            service.change_password(account.id, PASSWORD, "weakweak")
        assert exc_info.value.fields == ["new_password"]


class TestPasswordReset:
    def test_reset_flow(self, service: AuthService, store: AuthStore, make_account, outbox) -> None:
        """forgot -> reset: new password works, old sessions are gone, token is single use."""
        account = make_account()
        pair = service.login("a@x.com", PASSWORD)
        service.forgot_password("A@x.com")
        [(email, token)] = outbox
        assert email == "a@x.com"

        service.reset_password(token, NEW_PASSWORD)
        assert service.login("a@x.com", NEW_PASSWORD).access_token
        with pytest.raises(InvalidRefreshToken):
            service.refresh(pair.refresh_token)
        with pytest.raises(InvalidResetToken):
            service.reset_password(token, "An0ther!Pass")
        assert store.get_by_id(account.id).password_changed_at is not None

    def test_unknown_email_is_silent(self, service: AuthService, outbox) -> None:
        service.forgot_password("nobody@x.com")
        assert outbox == []

    def test_expired_token(self, service: AuthService, make_account, outbox, clock) -> None:
        make_account()
        service.forgot_password("a@x.com")
        clock.advance(hours=1)
        with pytest.raises(InvalidResetToken):
            service.reset_password(outbox[0][1], NEW_PASSWORD)

    def test_bogus_token(self, service: AuthService) -> None:
        with pytest.raises(InvalidResetToken):
            service.reset_password("0" * 64, NEW_PASSWORD)

    def test_reset_clears_lockout(self, service: AuthService, make_account, outbox) -> None:
        make_account()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("a@x.com", "Wr0ng!Pass1")
        with pytest.raises(AccountLocked):
            service.login("a@x.com", PASSWORD)

        service.forgot_password("a@x.com")
        service.reset_password(outbox[0][1], NEW_PASSWORD)
        assert service.login("a@x.com", NEW_PASSWORD).access_token


class TestUpdateAccount:
    def test_update_fields(self, service: AuthService, make_account) -> None:
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        user = make_account(email="u@x.com")
        updated = service.update_account(_actor(admin.id), user.id, role=Role.PREPARER, department_id="D3")
        assert updated.role == Role.PREPARER
        assert updated.department_id == "D3"

    def test_no_changes(self, service: AuthService, make_account) -> None:
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        with pytest.raises(BadRequest):
            service.update_account(_actor(admin.id), admin.id, role=None)

    def test_unknown_account(self, service: AuthService, make_account) -> None:
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        with pytest.raises(NotFound):
            service.update_account(_actor(admin.id), 9999, is_active=False)

    def test_self_deactivation_blocked(self, service: AuthService, make_account) -> None:
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        make_account(email="admin2@x.com", role=Role.ADMIN)
        with pytest.raises(BadRequest):
            service.update_account(_actor(admin.id), admin.id, is_active=False)

    def test_last_admin_protected(self, service: AuthService, make_account) -> None:
        """The only active ADMIN cannot be demoted or deactivated by another actor."""
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        with pytest.raises(BadRequest):
            service.update_account(_actor(999), admin.id, role=Role.PREPARER)
        with pytest.raises(BadRequest):
            service.update_account(_actor(999), admin.id, is_active=False)

    def test_deactivation_revokes_sessions(self, service: AuthService, make_account) -> None:
        admin = make_account(email="admin@x.com", role=Role.ADMIN)
        make_account(email="u@x.com")
        pair = service.login("u@x.com", PASSWORD)
        service.update_account(_actor(admin.id), pair.account.id, is_active=False)
        assert service.sessions.list_active(pair.account.id) == []
