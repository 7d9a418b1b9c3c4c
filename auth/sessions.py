"""
auth/sessions.py -- Refresh session issue, rotation and revocation.

Refresh tokens are opaque: 512 random bits handed to the client once, stored
only as an HMAC digest. They mean nothing outside this table.

Rotation (refresh) is single-use. AuthStore.rotate_session revokes the old row
with a compare-and-revoke UPDATE and inserts the successor in the same
transaction. If two refresh calls race on one token, exactly one sees
revoked = 0 and wins; the other gets InvalidRefreshToken. A token therefore
never has two successors.

The access token is minted from a fresh read of the account, so a role or
department change takes effect on the very next refresh.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import AccountInactive, InvalidRefreshToken
from auth.models import RefreshSession, TokenPair
from auth.store import AuthStore
from auth.tokens import TokenIssuer, generate_refresh_token

logger = logging.getLogger("sheetflow.auth.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        ttl_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _new_session(
        self,
        account_id: int,
        ip: str | None,
        agent: str | None,
        now: datetime,
    ) -> tuple[str, RefreshSession]:
        raw = generate_refresh_token()
        session = RefreshSession(
            token_hash=self.issuer.digest(raw),
            account_id=account_id,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            issued_ip=ip,
            issued_agent=agent[:512] if agent else agent,
            created_at=now,
        )
        return raw, session

    def create_session(self, account_id: int, ip: str | None = None, agent: str | None = None) -> str:
        """Persist a new session and return the raw refresh token."""
        raw, session = self._new_session(account_id, ip, agent, self._clock())
        self.store.create_session(session)
        return raw

    def refresh(self, old_token: str, ip: str | None = None) -> TokenPair:
        """Exchange a live refresh token for a new access token and a successor refresh token."""
        now = self._clock()
        old_hash = self.issuer.digest(old_token or "")
        current = self.store.get_active_session(old_hash, now)
        if current is None:
            raise InvalidRefreshToken()

        account = self.store.get_by_id(current.account_id)
        if account is None or not account.is_active:
            raise AccountInactive()

        raw, successor = self._new_session(account.id, current.issued_ip, current.issued_agent, now)
        if not self.store.rotate_session(old_hash, successor, now, revoked_by_ip=ip):
            logger.warning("Refresh token replay or race for account id=%s", account.id)
            raise InvalidRefreshToken()

        return TokenPair(
            account=account,
            access_token=self.issuer.issue_access_token(account, now),
            refresh_token=raw,
            expires_in=self.issuer.ttl_seconds,
        )

    def revoke_one(self, token: str, ip: str | None = None) -> None:
        """Revoke a single refresh token. Unknown or already revoked tokens are fine."""
        self.store.revoke_session(self.issuer.digest(token or ""), self._clock(), revoked_by_ip=ip)

    def revoke_all(self, account_id: int) -> int:
        """Revoke every live session of the account ("log out all devices")."""
        count = self.store.revoke_all_sessions(account_id, self._clock())
        logger.info("Revoked %d session(s) for account id=%s", count, account_id)
        return count

    def list_active(self, account_id: int) -> list[RefreshSession]:
        return self.store.list_sessions(account_id, active_at=self._clock())

    def purge_expired(self) -> int:
        return self.store.purge_expired(self._clock())
