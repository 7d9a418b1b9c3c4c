"""
auth/tokens.py -- Access token signing/verification and opaque token helpers.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub, email, role,
       departmentId, iat and exp. Verification raises a distinct error per
       failure mode because callers react differently:
         TokenExpired      -> client should refresh
         InvalidSignature  -> tampering or a key mismatch between instances
         TokenMalformed    -> client/version bug (bad structure, missing claims)

  Opaque tokens (refresh sessions, password resets, 2FA backup codes):
       secrets.token_hex gives the entropy; only HMAC-SHA256(SECRET_KEY, raw)
       is stored so lookup is O(1) and a DB dump cannot be replayed without
       also knowing SECRET_KEY. bcrypt's slowness is unnecessary for
       high-entropy random values.

One TokenIssuer is built per process (TokenIssuer.from_settings) and shared by
the session manager, the auth service and the request dependencies. It holds
no mutable state, so verification is safe to call concurrently without locks.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import InvalidSignature, TokenExpired, TokenMalformed
from auth.models import AccessClaims, Account, Role
from core.config import Settings, get_settings

logger = logging.getLogger("sheetflow.auth.tokens")

_ALGORITHM = "HS256"

# Claims whose absence makes a correctly signed token unusable.
_REQUIRED_CLAIMS = ("sub", "email", "role")


class TokenIssuer:
    """Signs and verifies access tokens; digests opaque tokens.

    Usage:
        issuer = TokenIssuer.from_settings()
        token = issuer.issue_access_token(account)
        claims = issuer.verify_access_token(token)
    """

    def __init__(self, secret_key: str, ttl_seconds: int, algorithm: str = _ALGORITHM) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> TokenIssuer:
        cfg = settings or get_settings()
        return cls(cfg.secret_key, cfg.access_token_expire_seconds)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, account: Account, now: datetime | None = None) -> str:
        """Encode a signed JWT for the account's current role and department.

        `now` exists for tests that need a token minted in the past.
        """
        issued = int((now or datetime.now(timezone.utc)).timestamp())
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "role": Role(account.role).value,
            "departmentId": account.department_id,
            "iat": issued,
            "exp": issued + self.ttl_seconds,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify_access_token(self, token: str) -> AccessClaims:
        """Decode and verify a JWT, returning its claims or raising a TokenError."""
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            # Signature was fine but a registered claim has the wrong type.
            raise TokenMalformed() from exc
        except JWTError as exc:
            raise InvalidSignature() from exc

        missing = [name for name in _REQUIRED_CLAIMS if not payload.get(name)]
        if missing:
            logger.warning("Signed access token missing claims: %s", ", ".join(missing))
            raise TokenMalformed(detail=f"Missing claims: {', '.join(missing)}")
        try:
            role = Role(payload["role"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed() from exc

        return AccessClaims(
            subject=str(payload["sub"]),
            email=payload["email"],
            role=role,
            department_id=payload.get("departmentId"),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Opaque tokens
    # ------------------------------------------------------------------

    def digest(self, raw: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw) as hex -- the stored form of an opaque token."""
        return hmac.new(self._secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


def generate_refresh_token() -> str:
    """64 random bytes as 128 hex characters (512 bits of entropy)."""
    return secrets.token_hex(64)


def generate_reset_token() -> str:
    """32 random bytes as hex -- mailed to the user, never stored raw."""
    return secrets.token_hex(32)


def generate_backup_code() -> str:
    """An 8-character uppercase hex code for 2FA recovery."""
    return secrets.token_hex(4).upper()
