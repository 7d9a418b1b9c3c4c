"""
auth/models.py -- Domain dataclasses for identity and access entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, the managers and the routes do the work.

Timestamps are timezone-aware UTC datetimes. The store serializes them to
fixed-width ISO 8601 strings so SQL comparisons order correctly.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Workflow roles. Values are the wire format carried in the `role` claim."""

    ADMIN = "ADMIN"
    PREPARER = "PREPARER"
    IPDF_REVIEWER = "IPDF-REVIEWER"
    IQP_REVIEWER = "IQP-REVIEWER"
    END_USER = "END_USER"


@dataclass
class Account:
    """An identity record.

    password_hash and totp_secret never leave the auth package: response
    models are built field by field and downstream services only receive
    AccessClaims.

    totp_secret is set by 2FA setup while totp_enabled is still False
    (pending activation). Disabling 2FA clears both.
    """

    email: str
    password_hash: str
    role: Role
    department_id: str
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    is_active: bool = True
    login_attempts: int = 0
    locked_until: datetime | None = None
    totp_secret: str | None = None
    totp_enabled: bool = False
    last_login_at: datetime | None = None
    password_changed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class RefreshSession:
    """A long-lived refresh credential.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token is handed
    to the client once and never persisted; a leaked DB row cannot be replayed.

    revoked only ever moves False -> True. replaced_by holds the digest of the
    successor minted by a rotation, so a replayed token can be traced to the
    chain it belonged to.
    """

    token_hash: str
    account_id: int
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    revoked_by_ip: str | None = None
    replaced_by: str | None = None
    issued_ip: str | None = None
    issued_agent: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token. Ephemeral, never persisted."""

    subject: str
    email: str
    role: Role
    department_id: str | None
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TOTPSetup:
    """Result of starting 2FA enrollment. backup_codes are shown once."""

    secret: str
    otpauth_uri: str
    qr_code_data_uri: str
    backup_codes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TokenPair:
    """Everything a successful login or refresh hands back to the client."""

    account: Account
    access_token: str
    refresh_token: str
    expires_in: int
