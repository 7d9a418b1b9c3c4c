"""
auth/store.py -- SQLAlchemy Core persistence layer for IAM entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Managers and routes never touch SQL directly.

Concurrency:
  Several service instances may hit the same account at once. Every state
  transition that can race is a single conditional UPDATE evaluated by the
  database, never a read-modify-write in Python:
    - failed login:   increment-and-check (login_attempts + 1, CASE for lock)
    - refresh:        compare-and-revoke (WHERE revoked = 0) + successor insert
                      in one transaction
    - reset / backup: compare-and-consume (WHERE used_at IS NULL)
  The rowcount tells the caller whether it won.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision, +00:00 offset) so string comparison in SQL is chronological.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only digests of opaque tokens are stored (see auth/tokens.py).

Failures (IntegrityError aside, which create_account documents) propagate as
SQLAlchemyError. Nothing here retries or swallows a failed write.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Account, RefreshSession, Role
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default=Role.END_USER.value),
    Column("department_id", String(64), nullable=False, index=True),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("totp_secret", String(64)),  # pending or active TOTP secret
    Column("totp_enabled", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("account_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("revoked_by_ip", String(45)),
    Column("replaced_by", String(64)),  # token_hash of the rotation successor
    Column("issued_ip", String(45)),
    Column("issued_agent", String(512)),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_backup_codes = Table(
    "totp_backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a writer commits.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Account, RefreshSession, password reset and backup code rows.

    Usage:
        store = AuthStore("sqlite:///auth.db")
        account_id = store.create_account(Account(email=..., password_hash=..., role=Role.ADMIN, department_id="D1"))
        account = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None, timeout_seconds: float | None = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.database_url
        timeout = timeout_seconds if timeout_seconds is not None else settings.db_timeout_seconds
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # pysqlite busy timeout: how long a writer waits for the lock.
            connect_args["timeout"] = timeout
        else:
            engine_kwargs["pool_timeout"] = timeout
            engine_kwargs["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        """Return True if at least one account exists (first-run detection)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into a Conflict; the UNIQUE constraint is the
        only check that is safe against two concurrent registrations.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    password_hash=account.password_hash,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    role=Role(account.role).value,
                    department_id=account.department_id,
                    is_active=1 if account.is_active else 0,
                    login_attempts=0,
                    totp_enabled=0,
                    created_at=_to_iso(_utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by normalized (lowercase) email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_by_department(self, department_id: str) -> list[Account]:
        """Return all accounts in a department ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.department_id == department_id).order_by(_accounts.c.email)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing account.

        Accepted fields: role, department_id, is_active, first_name, last_name.
        Lockout, password and 2FA columns have dedicated methods so their
        invariants cannot be bypassed through here.

        Returns True if a row was updated, False if account_id was not found.
        """
        allowed = {"role", "department_id", "is_active", "first_name", "last_name"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active ADMIN accounts (last-admin guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_accounts)
                .where((_accounts.c.role == Role.ADMIN.value) & (_accounts.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def record_failed_login(
        self,
        account_id: int,
        now: datetime,
        threshold: int,
        lock_seconds: int,
    ) -> Account | None:
        """Register one failed password attempt atomically; return the updated account.

        Two conditional UPDATEs in one transaction:
          1. If a previous lock expired strictly before `now`, restart the
             count at 1 and clear the lock.
          2. Otherwise increment, and set locked_until when the incremented
             value reaches `threshold` and no lock is in force. A failure at
             exactly locked_until lands here and locks again.
        The database evaluates both conditions against the committed row, so
        concurrent failures cannot lose an increment.
        """
        c = _accounts.c
        now_iso = _to_iso(now)
        lock_iso = _to_iso(now + timedelta(seconds=lock_seconds))
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((c.id == account_id) & c.locked_until.is_not(None) & (c.locked_until < now_iso))
                .values(login_attempts=1, locked_until=None)
            )
            if result.rowcount == 0:
                conn.execute(
                    _accounts.update()
                    .where(c.id == account_id)
                    .values(
                        login_attempts=c.login_attempts + 1,
                        locked_until=case(
                            (
                                and_(
                                    c.login_attempts + 1 >= threshold,
                                    or_(c.locked_until.is_(None), c.locked_until <= now_iso),
                                ),
                                lock_iso,
                            ),
                            else_=c.locked_until,
                        ),
                    )
                )
            row = conn.execute(_accounts.select().where(c.id == account_id)).fetchone()
            conn.commit()
        return _row_to_account(row) if row is not None else None

    def record_successful_login(self, account_id: int, now: datetime) -> None:
        """Reset the failure counter, clear any lock, and stamp last_login_at."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(login_attempts=0, locked_until=None, last_login_at=_to_iso(now))
            )
            conn.commit()

    def set_password(self, account_id: int, password_hash: str, now: datetime) -> bool:
        """Replace the password hash and clear lockout state."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    password_hash=password_hash,
                    password_changed_at=_to_iso(now),
                    login_attempts=0,
                    locked_until=None,
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Two-factor state
    # ------------------------------------------------------------------

    def set_totp_secret(self, account_id: int, secret: str, backup_code_hashes: list[str]) -> bool:
        """Store a pending secret and replace the backup codes.

        Only applies while 2FA is not enabled, so an active secret can never
        be swapped out from under the user. Returns False if it was enabled.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.totp_enabled == 0))
                .values(totp_secret=secret)
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(_backup_codes.delete().where(_backup_codes.c.account_id == account_id))
            if backup_code_hashes:
                conn.execute(
                    _backup_codes.insert(),
                    [{"account_id": account_id, "code_hash": h} for h in backup_code_hashes],
                )
            conn.commit()
        return True

    def enable_totp(self, account_id: int, secret: str | None = None) -> bool:
        """Activate 2FA. No-op (False) when there is no secret to activate.

        With `secret`, activation only happens if that is still the stored
        secret, so a concurrent disable or re-setup is not silently enabled.
        """
        c = _accounts.c
        condition = (c.id == account_id) & c.totp_secret.is_not(None)
        if secret is not None:
            condition = condition & (c.totp_secret == secret)
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(condition)
                .values(totp_enabled=1)
            )
            conn.commit()
        return result.rowcount > 0

    def clear_totp(self, account_id: int) -> bool:
        """Drop the secret, the enabled flag and every backup code."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(totp_secret=None, totp_enabled=0)
            )
            conn.execute(_backup_codes.delete().where(_backup_codes.c.account_id == account_id))
            conn.commit()
        return result.rowcount > 0

    def consume_backup_code(self, account_id: int, code_hash: str, now: datetime) -> bool:
        """Mark one unused matching backup code as used. True only for the first caller."""
        bc = _backup_codes.c
        with self.engine.connect() as conn:
            row = conn.execute(
                select(bc.id)
                .where((bc.account_id == account_id) & (bc.code_hash == code_hash) & bc.used_at.is_(None))
                .limit(1)
            ).fetchone()
            if row is None:
                return False
            result = conn.execute(
                _backup_codes.update().where((bc.id == row.id) & bc.used_at.is_(None)).values(used_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def count_unused_backup_codes(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_backup_codes)
                .where((_backup_codes.c.account_id == account_id) & _backup_codes.c.used_at.is_(None))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def create_session(self, session: RefreshSession) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.insert().values(**_session_values(session)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_active_session(self, token_hash: str, now: datetime) -> RefreshSession | None:
        """Return the session for a digest if it is neither revoked nor expired."""
        s = _sessions.c
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where((s.token_hash == token_hash) & (s.revoked == 0) & (s.expires_at > _to_iso(now)))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_session(
        self,
        old_hash: str,
        successor: RefreshSession,
        now: datetime,
        revoked_by_ip: str | None = None,
    ) -> bool:
        """Compare-and-revoke the old session and insert its successor atomically.

        Returns False, writing nothing, if the old session was already revoked
        or expired -- the losing side of a concurrent refresh. When this
        returns True the revocation is committed, so the successor token can
        be handed out with no replay window.
        """
        s = _sessions.c
        now_iso = _to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((s.token_hash == old_hash) & (s.revoked == 0) & (s.expires_at > now_iso))
                .values(revoked=1, revoked_at=now_iso, revoked_by_ip=revoked_by_ip, replaced_by=successor.token_hash)
            )
            if result.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(_sessions.insert().values(**_session_values(successor)))
            conn.commit()
        return True

    def revoke_session(self, token_hash: str, now: datetime, revoked_by_ip: str | None = None) -> bool:
        """Revoke one session. Returns True only if this call flipped it."""
        s = _sessions.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((s.token_hash == token_hash) & (s.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(now), revoked_by_ip=revoked_by_ip)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_sessions(self, account_id: int, now: datetime) -> int:
        """Revoke every live session of an account in one statement. Returns the count."""
        s = _sessions.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((s.account_id == account_id) & (s.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(now))
            )
            conn.commit()
        return result.rowcount

    def list_sessions(self, account_id: int, active_at: datetime | None = None) -> list[RefreshSession]:
        """Return an account's sessions, newest first.

        With active_at, only sessions that are unrevoked and unexpired at that
        moment are returned.
        """
        s = _sessions.c
        query = _sessions.select().where(s.account_id == account_id)
        if active_at is not None:
            query = query.where((s.revoked == 0) & (s.expires_at > _to_iso(active_at)))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(s.created_at.desc(), s.id.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def purge_expired(self, now: datetime) -> int:
        """Delete expired sessions and password resets. Returns the session count removed."""
        now_iso = _to_iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso))
            conn.execute(_password_resets.delete().where(_password_resets.c.expires_at <= now_iso))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def create_password_reset(self, account_id: int, token_hash: str, expires_at: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_resets.insert().values(
                    account_id=account_id,
                    token_hash=token_hash,
                    expires_at=_to_iso(expires_at),
                    created_at=_to_iso(_utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume_password_reset(self, token_hash: str, now: datetime) -> int | None:
        """Mark a live reset token used and return its account id, or None.

        Exactly one concurrent caller wins the used_at IS NULL condition.
        """
        r = _password_resets.c
        now_iso = _to_iso(now)
        with self.engine.connect() as conn:
            row = conn.execute(select(r.account_id).where(r.token_hash == token_hash)).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _password_resets.update()
                .where((r.token_hash == token_hash) & r.used_at.is_(None) & (r.expires_at > now_iso))
                .values(used_at=now_iso)
            )
            conn.commit()
        return row.account_id if result.rowcount == 1 else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: RefreshSession) -> dict:
    return {
        "token_hash": session.token_hash,
        "account_id": session.account_id,
        "expires_at": _to_iso(session.expires_at),
        "revoked": 1 if session.revoked else 0,
        "issued_ip": session.issued_ip,
        "issued_agent": session.issued_agent,
        "created_at": _to_iso(session.created_at or _utcnow()),
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        department_id=row.department_id,
        is_active=bool(row.is_active),
        login_attempts=row.login_attempts,
        locked_until=_from_iso(row.locked_until),
        totp_secret=row.totp_secret,
        totp_enabled=bool(row.totp_enabled),
        last_login_at=_from_iso(row.last_login_at),
        password_changed_at=_from_iso(row.password_changed_at),
        created_at=_from_iso(row.created_at),
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        token_hash=row.token_hash,
        account_id=row.account_id,
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_from_iso(row.revoked_at),
        revoked_by_ip=row.revoked_by_ip,
        replaced_by=row.replaced_by,
        issued_ip=row.issued_ip,
        issued_agent=row.issued_agent,
        created_at=_from_iso(row.created_at),
    )
