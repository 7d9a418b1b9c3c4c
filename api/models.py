"""
API request and response models for SheetFlow IAM REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Response models are built field by field from Account/RefreshSession, so
password hashes, TOTP secrets and token digests can never leak through a
model_dump().

Password strength is checked by the service (auth.passwords) so the CLI and
the API enforce one policy; here only length bounds apply.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Account, RefreshSession, Role, TokenPair, TOTPSetup


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _strip(value):
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Whitespace is stripped from the profile fields only; the password is kept
    exactly as typed.
    """

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=2, max_length=100)
    last_name: str = Field(min_length=2, max_length=100)
    role: Role = Role.END_USER
    department_id: str = Field(min_length=1, max_length=64)

    @field_validator("email", "first_name", "last_name", "department_id", mode="before")
    @classmethod
    def strip_fields(cls, v):
        return _strip(v)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    code is the 6-digit TOTP code, or an 8-character backup code, and is only
    needed when the account has 2FA enabled.
    """

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    code: Optional[str] = Field(default=None, min_length=6, max_length=12)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return _strip(v)

    @field_validator("code", mode="before")
    @classmethod
    def blank_code_is_missing(cls, v):
        """An empty code means the client has not asked the user for one yet."""
        v = _strip(v)
        return v or None


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh and POST /auth/logout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=8, max_length=128)

    @field_validator("token", mode="before")
    @classmethod
    def strip_token(cls, v):
        return _strip(v)


class TwoFactorCodeRequest(BaseModel):
    """Request body for POST /auth/enable-2fa and POST /auth/disable-2fa."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(pattern=r"^\d{6}$")


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/accounts/{account_id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[Role] = None
    department_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    is_active: Optional[bool] = None
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: Role
    department_id: str
    is_active: bool
    totp_enabled: bool
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Factory Method: the mapping lives beside the output model, not in each route."""
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            department_id=account.department_id,
            is_active=account.is_active,
            totp_enabled=account.totp_enabled,
            last_login_at=_iso(account.last_login_at),
            created_at=_iso(account.created_at),
        )


class TokenResponse(BaseModel):
    """Response for a successful login or refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: AccountResponse

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user=AccountResponse.from_account(pair.account),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class TwoFactorSetupResponse(BaseModel):
    """Secret for manual entry, QR code data URI, and one-time backup codes."""

    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_uri: str
    qr_code_url: str
    backup_codes: list[str]

    @classmethod
    def from_setup(cls, setup: TOTPSetup) -> "TwoFactorSetupResponse":
        return cls(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            qr_code_url=setup.qr_code_data_uri,
            backup_codes=list(setup.backup_codes),
        )


class SessionResponse(BaseModel):
    """One signed-in device. The token itself is never returned."""

    model_config = ConfigDict(frozen=True)

    id: int
    issued_ip: Optional[str]
    issued_agent: Optional[str]
    created_at: Optional[str]
    expires_at: str

    @classmethod
    def from_session(cls, session: RefreshSession) -> "SessionResponse":
        return cls(
            id=session.id,
            issued_ip=session.issued_ip,
            issued_agent=session.issued_agent,
            created_at=_iso(session.created_at),
            expires_at=_iso(session.expires_at),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
