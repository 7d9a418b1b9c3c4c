"""
auth/errors.py -- Error taxonomy for identity and access management.

Every failure the IAM core reports is an AuthError subclass carrying a stable
external code, an HTTP status, and a deliberately generic message. api/main.py
turns any AuthError into the standard error envelope, so routes simply let
these propagate.

Messages never reveal whether an email exists or how long a lock has left.

Persistence failures are NOT wrapped here: SQLAlchemy errors propagate to the
generic handler, which logs them with context and returns internal_error.
"""

from __future__ import annotations

from collections.abc import Iterable


class AuthError(Exception):
    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        if message is not None:
            self.message = message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Credential errors
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account is temporarily locked due to too many failed attempts."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    message = "Account is deactivated."


class TwoFactorRequired(AuthError):
    code = "two_factor_required"
    status_code = 401
    message = "Two-factor authentication code required."


class InvalidTwoFactorCode(AuthError):
    code = "invalid_two_factor_code"
    status_code = 401
    message = "Invalid two-factor authentication code."


class BadCode(InvalidTwoFactorCode):
    """Wrong code while enabling or disabling 2FA (caller is already authenticated)."""

    code = "invalid_verification_code"
    status_code = 400
    message = "Invalid verification code."


# ---------------------------------------------------------------------------
# Token errors
# ---------------------------------------------------------------------------


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 401
    message = "Invalid refresh token."


class TokenError(AuthError):
    status_code = 401


class TokenExpired(TokenError):
    code = "token_expired"
    message = "Access token has expired."


class TokenMalformed(TokenError):
    code = "token_malformed"
    message = "Access token is malformed."


class InvalidSignature(TokenError):
    code = "invalid_signature"
    message = "Access token signature is invalid."


# ---------------------------------------------------------------------------
# Authorization errors
# ---------------------------------------------------------------------------


class Unauthenticated(AuthError):
    code = "unauthorized"
    status_code = 401
    message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    message = "You do not have access to this resource."

    def __init__(self, required_roles: Iterable[str] = (), message: str | None = None) -> None:
        self.required_roles = sorted(str(getattr(r, "value", r)) for r in required_roles)
        detail = f"Required roles: {', '.join(self.required_roles)}" if self.required_roles else None
        super().__init__(message, detail)


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "An account with that email already exists."


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 422
    message = "Request validation failed."

    def __init__(self, fields: Iterable[str], message: str | None = None) -> None:
        self.fields = list(fields)
        super().__init__(message, ", ".join(self.fields))


class BadRequest(AuthError):
    code = "bad_request"
    status_code = 400
    message = "Bad request."


class InvalidResetToken(BadRequest):
    code = "invalid_reset_token"
    message = "Password reset token is invalid or has expired."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Account not found."
