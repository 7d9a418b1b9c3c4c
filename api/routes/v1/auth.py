"""
api/routes/v1/auth.py -- Authentication, session and 2FA REST endpoints.

Routes:
  POST /api/v1/auth/register           -- create account (END_USER, or any role with an ADMIN token)
  POST /api/v1/auth/login              -- password (+ TOTP) login; returns access + refresh token
  POST /api/v1/auth/refresh            -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout             -- revoke one refresh token; always 200
  POST /api/v1/auth/logout-all         -- revoke every session of the caller (requires auth)
  GET  /api/v1/auth/me                 -- current account profile (requires auth)
  GET  /api/v1/auth/sessions           -- caller's active sessions (requires auth)
  POST /api/v1/auth/change-password    -- re-verify and replace password (requires auth)
  POST /api/v1/auth/forgot-password    -- issue a reset token; generic answer (public)
  POST /api/v1/auth/reset-password     -- consume a reset token (public)
  POST /api/v1/auth/setup-2fa          -- new TOTP secret, QR code, backup codes (requires auth)
  POST /api/v1/auth/enable-2fa         -- confirm the first code (requires auth)
  POST /api/v1/auth/disable-2fa        -- turn 2FA off with a current code (requires auth)

Security:
  [H2] login, register, refresh, forgot-password and reset-password are rate-limited per IP.
  [C1] AuthService.login() runs bcrypt even for unknown emails -- never inline a lookup.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain `def`: AuthService calls block on bcrypt and the database,
so FastAPI runs them in its threadpool. Errors are AuthError subclasses and are
rendered by the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
)
from auth.dependencies import get_current_claims, try_get_claims
from auth.errors import Unauthenticated
from auth.models import AccessClaims
from auth.service import AuthService
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /auth/register:         public; elevated roles need an ADMIN bearer token
# - POST /auth/login:            public
# - POST /auth/refresh:          public -- the refresh token is the credential
# - POST /auth/logout:           public -- the refresh token is the credential
# - POST /auth/forgot-password:  public
# - POST /auth/reset-password:   public -- the reset token is the credential
# - everything else:             requires auth (get_current_claims)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _account_id(claims: AccessClaims) -> int:
    try:
        return int(claims.subject)
    except ValueError as exc:
        raise Unauthenticated() from exc


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit("20/minute")  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create an account.

    Anonymous callers get END_USER in their chosen department. A caller
    presenting a valid ADMIN access token may assign any role.
    """
    account = _service(request).register(
        email=body.email,
        password=body.password,
        department_id=body.department_id,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
        actor=try_get_claims(request),
    )
    return AccountResponse.from_account(account)


@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and (when enabled) a TOTP or backup code.

    Wrong email and wrong password produce the same invalid_credentials error
    so the response does not reveal which emails are registered.
    """
    pair = _service(request).login(
        body.email,
        body.password,
        body.code,
        ip=_client_ip(request),
        agent=request.headers.get("user-agent"),
    )
    return _no_store(TokenResponse.from_pair(pair).model_dump(mode="json"))


@limiter.limit("30/minute")
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked."""
    pair = _service(request).refresh(body.refresh_token, ip=_client_ip(request))
    return _no_store(TokenResponse.from_pair(pair).model_dump(mode="json"))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> MessageResponse:
    """Revoke the given refresh token. Unknown or already revoked tokens still succeed."""
    _service(request).logout(body.refresh_token, ip=_client_ip(request))
    return MessageResponse(message="Logged out.")


@limiter.limit("5/minute")
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Start a password reset. The answer is identical whether or not the email exists."""
    _service(request).forgot_password(body.email)
    return MessageResponse(message="If the email is registered, a reset link has been sent.")


@limiter.limit("10/minute")
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a single-use reset token. All sessions are revoked."""
    _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> AccountResponse:
    """Return the caller's current profile (read from the store, not the token)."""
    return AccountResponse.from_account(_service(request).get_profile(_account_id(claims)))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> list[SessionResponse]:
    """List the caller's unexpired, unrevoked refresh sessions."""
    sessions = _service(request).sessions.list_active(_account_id(claims))
    return [SessionResponse.from_session(s) for s in sessions]


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> LogoutAllResponse:
    """Revoke every refresh session of the caller.

    Access tokens already issued stay valid until they expire.
    """
    revoked = _service(request).logout_all(_account_id(claims))
    return LogoutAllResponse(message="Logged out from all devices.", revoked=revoked)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Replace the caller's password. Every session is revoked; the client must log in again."""
    _service(request).change_password(_account_id(claims), body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Please log in again.")


@router.post("/auth/setup-2fa", response_model=TwoFactorSetupResponse)
def setup_2fa(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> JSONResponse:
    """Generate a pending TOTP secret. 2FA stays off until enable-2fa confirms a code.

    The backup codes are shown once and only their digests are stored.
    """
    setup = _service(request).setup_2fa(_account_id(claims))
    return _no_store(TwoFactorSetupResponse.from_setup(setup).model_dump(mode="json"))


@router.post("/auth/enable-2fa", response_model=MessageResponse)
def enable_2fa(
    request: Request,
    body: TwoFactorCodeRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    _service(request).enable_2fa(_account_id(claims), body.code)
    return MessageResponse(message="Two-factor authentication enabled.")


@router.post("/auth/disable-2fa", response_model=MessageResponse)
def disable_2fa(
    request: Request,
    body: TwoFactorCodeRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    _service(request).disable_2fa(_account_id(claims), body.code)
    return MessageResponse(message="Two-factor authentication disabled.")
