"""
auth/dependencies.py -- FastAPI Depends() adapters for the authorization evaluator.

Every protected route declares a static Requirement and depends on
require(requirement). The dependency:
  1. reads the Authorization: Bearer header,
  2. verifies the token with the process-wide TokenIssuer (app.state),
  3. resolves the target department (path -> query -> JSON body) and, for
     self-or-admin routes, the owner id from the path,
  4. hands everything to auth.authorization.evaluate().

Token errors propagate with their own codes (token_expired, invalid_signature,
token_malformed); a missing header becomes Unauthenticated inside evaluate().
Nothing here touches the database -- verification is pure and in-memory.

Layer rule: auth/dependencies.py may import from fastapi because it is the
adapter between the framework and the pure evaluator. Nothing else in auth/
does.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request

from auth.authorization import AUTHENTICATED, Requirement, evaluate, resolve_target_department
from auth.errors import TokenError
from auth.models import AccessClaims
from auth.tokens import TokenIssuer


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _verify(request: Request) -> AccessClaims | None:
    token = _bearer_token(request)
    if token is None:
        return None
    issuer: TokenIssuer = request.app.state.token_issuer
    return issuer.verify_access_token(token)


async def _json_body(request: Request) -> Any:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        return await request.json()
    except ValueError:
        # Unparseable body: no target department. Body validation reports it.
        return None


def try_get_claims(request: Request) -> AccessClaims | None:
    """Soft variant: verified claims, or None for a missing or invalid token.

    For public routes whose behavior widens for privileged callers
    (registration with an elevated role).
    """
    try:
        return _verify(request)
    except TokenError:
        return None


def require(requirement: Requirement):
    """Build a dependency enforcing `requirement`; it returns the caller's claims.

    Use as:
        @router.get("/departments/{department_id}/accounts")
        def route(claims: AccessClaims = Depends(require(STAFF_IN_DEPARTMENT))): ...
    """

    async def dependency(request: Request) -> AccessClaims:
        claims = _verify(request)
        target_department = None
        if requirement.department_scoped:
            body = await _json_body(request)
            target_department = resolve_target_department(request.path_params, request.query_params, body)
        target_owner = None
        if requirement.ownership_field is not None:
            target_owner = request.path_params.get(requirement.ownership_field)
        return evaluate(
            claims,
            requirement,
            target_department_id=target_department,
            target_owner_id=target_owner,
        )

    return dependency


get_current_claims = require(AUTHENTICATED)
