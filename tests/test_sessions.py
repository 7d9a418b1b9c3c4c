"""
tests/test_sessions.py -- Refresh session rotation and revocation (auth/sessions.py).

Coverage:
  - refresh returns a new pair and revokes the presented token (single use)
  - replayed, unknown and expired tokens are InvalidRefreshToken
  - the successor chain is recorded in replaced_by
  - logout is idempotent; logout-all revokes every live session
  - deactivated accounts cannot refresh
  - role/department changes reach the next refreshed access token
  - concurrent refreshes of one token: exactly one winner
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth.errors import AccountInactive, InvalidRefreshToken
from auth.models import Role, TokenPair
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenIssuer

PASSWORD = "Str0ng!Pass1"


def _login(service: AuthService, email: str = "a@x.com", **kwargs) -> TokenPair:
    return service.login(email, PASSWORD, **kwargs)


class TestRotation:
    def test_refresh_returns_new_pair(self, service: AuthService, make_account) -> None:
        make_account()
        first = _login(service)
        second = service.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert len(second.refresh_token) == 128
        assert second.access_token
        assert second.expires_in == 900

    def test_old_token_is_single_use(self, service: AuthService, make_account) -> None:
        """Presenting the same refresh token twice fails the second time."""
        make_account()
        first = _login(service)
        service.refresh(first.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            service.refresh(first.refresh_token)

    def test_successor_keeps_working(self, service: AuthService, make_account) -> None:
        make_account()
        pair = _login(service)
        for _ in range(3):
            pair = service.refresh(pair.refresh_token)
        assert pair.access_token

    def test_chain_is_recorded(
        self, service: AuthService, store: AuthStore, issuer: TokenIssuer, make_account
    ) -> None:
        """The revoked row points at its successor's digest; raw tokens are never stored."""
        account = make_account()
        first = _login(service)
        second = service.refresh(first.refresh_token, ip="10.0.0.7")
        rows = {s.token_hash: s for s in store.list_sessions(account.id)}
        old = rows[issuer.digest(first.refresh_token)]
        assert old.revoked is True
        assert old.revoked_by_ip == "10.0.0.7"
        assert old.replaced_by == issuer.digest(second.refresh_token)
        assert first.refresh_token not in rows

    def test_unknown_token(self, service: AuthService) -> None:
        with pytest.raises(InvalidRefreshToken):
            service.refresh("f" * 128)

    def test_expired_token(self, service: AuthService, make_account, clock) -> None:
        """Seven days after issue the session is no longer live."""
        make_account()
        pair = _login(service)
        clock.advance(days=7)
        with pytest.raises(InvalidRefreshToken):
            service.refresh(pair.refresh_token)

    def test_inactive_account_cannot_refresh(self, service: AuthService, store: AuthStore, make_account) -> None:
        account = make_account()
        pair = _login(service)
        store.update_account(account.id, is_active=False)
        with pytest.raises(AccountInactive):
            service.refresh(pair.refresh_token)

    def test_role_change_reaches_next_access_token(
        self, service: AuthService, store: AuthStore, issuer: TokenIssuer, make_account
    ) -> None:
        """A promotion is visible in the access token minted by the next refresh."""
        account = make_account()
        pair = _login(service)
        assert issuer.verify_access_token(pair.access_token).role == Role.END_USER

        store.update_account(account.id, role=Role.PREPARER, department_id="D2")
        claims = issuer.verify_access_token(service.refresh(pair.refresh_token).access_token)
        assert claims.role == Role.PREPARER
        assert claims.department_id == "D2"

    def test_concurrent_refresh_has_one_winner(self, service: AuthService, make_account) -> None:
        """Racing refreshes of one token: exactly one pair, everyone else InvalidRefreshToken."""
        make_account()
        token = _login(service).refresh_token
        winners: list[TokenPair] = []
        losers: list[Exception] = []
        barrier = threading.Barrier(8)

        def attempt() -> None:
            barrier.wait()
            try:
                winners.append(service.refresh(token))
            except InvalidRefreshToken as exc:
                losers.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1, f"Expected one winner, got {len(winners)}"
        assert len(losers) == 7


class TestRevocation:
    def test_logout_is_idempotent(self, service: AuthService, make_account) -> None:
        make_account()
        pair = _login(service)
        service.logout(pair.refresh_token)
        service.logout(pair.refresh_token)
        service.logout("never-issued")
        with pytest.raises(InvalidRefreshToken):
            service.refresh(pair.refresh_token)

    def test_logout_all(self, service: AuthService, make_account) -> None:
        """Three devices, one logout-all: zero live sessions remain."""
        account = make_account()
        pairs = [_login(service, agent=f"device-{i}") for i in range(3)]
        assert len(service.sessions.list_active(account.id)) == 3

        assert service.logout_all(account.id) == 3
        assert service.sessions.list_active(account.id) == []
        for pair in pairs:
            with pytest.raises(InvalidRefreshToken):
                service.refresh(pair.refresh_token)

    def test_logout_all_leaves_other_accounts(self, service: AuthService, make_account) -> None:
        account = make_account()
        make_account(email="b@x.com")
        _login(service)
        other_pair = _login(service, email="b@x.com")
        assert service.logout_all(account.id) == 1
        assert service.refresh(other_pair.refresh_token).access_token


class TestSessionListing:
    def test_metadata_is_kept(self, service: AuthService, make_account) -> None:
        account = make_account()
        _login(service, ip="192.0.2.1", agent="x" * 600)
        [session] = service.sessions.list_active(account.id)
        assert session.issued_ip == "192.0.2.1"
        assert len(session.issued_agent) == 512

    def test_purge_removes_expired(self, service: AuthService, store: AuthStore, make_account, clock) -> None:
        account = make_account()
        _login(service)
        clock.advance(days=3)
        _login(service)
        clock.advance(days=5)
        assert service.sessions.purge_expired() == 1
        assert len(store.list_sessions(account.id)) == 1

    def test_rotation_preserves_device_info(self, service: AuthService, make_account) -> None:
        account = make_account()
        pair = _login(service, ip="192.0.2.1", agent="phone")
        service.refresh(pair.refresh_token, ip="198.51.100.9")
        [live] = service.sessions.list_active(account.id)
        assert live.issued_agent == "phone"
        assert live.created_at is not None
        assert live.expires_at - live.created_at == timedelta(days=7)
