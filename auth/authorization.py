"""
auth/authorization.py -- Per-request authorization decisions.

evaluate() is a pure function of the verified claims, the route's static
Requirement and the request's target identifiers. It holds no state and does
no I/O; auth/dependencies.py is the FastAPI adapter that gathers its inputs.

Checks run in a fixed order and the first failure wins:
  1. Authentication  claims present and unexpired        else Unauthenticated
  2. Role            role in allowed_roles (if any)      else Forbidden(roles)
  3. Department      ADMIN bypasses; a target department
                     must equal claims.department_id     else Forbidden
                     (no target department -> no-op)
  4. Ownership       subject == target owner, or ADMIN   else Forbidden
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from auth.errors import Forbidden, Unauthenticated
from auth.models import AccessClaims, Role

# Keys a request may use to name the department it targets, in lookup order.
DEPARTMENT_KEYS = ("department_id", "departmentId")


@dataclass(frozen=True)
class Requirement:
    """Static access descriptor attached to a route at registration time.

    ownership_field names the path parameter holding the owner's account id
    for "self-or-admin" routes.
    """

    allowed_roles: frozenset[Role] = frozenset()
    department_scoped: bool = False
    ownership_field: str | None = None


AUTHENTICATED = Requirement()
ADMIN_ONLY = Requirement(allowed_roles=frozenset({Role.ADMIN}))


def evaluate(
    claims: AccessClaims | None,
    requirement: Requirement,
    *,
    target_department_id: str | None = None,
    target_owner_id: Any = None,
    now: datetime | None = None,
) -> AccessClaims:
    """Return the claims if access is allowed; raise Unauthenticated or Forbidden otherwise."""
    moment = now or datetime.now(timezone.utc)
    if claims is None or claims.expires_at <= moment:
        raise Unauthenticated()

    if requirement.allowed_roles and claims.role not in requirement.allowed_roles:
        raise Forbidden(requirement.allowed_roles)

    if requirement.department_scoped and claims.role != Role.ADMIN:
        if target_department_id is not None and str(target_department_id) != claims.department_id:
            raise Forbidden(message="You can only access resources in your own department.")

    if requirement.ownership_field is not None and claims.role != Role.ADMIN:
        if target_owner_id is None or claims.subject != str(target_owner_id):
            raise Forbidden(message="You can only access your own account.")

    return claims


def resolve_target_department(*sources: Mapping[str, Any] | None) -> str | None:
    """Return the first department id named in the given sources.

    Callers pass path params, query params and the JSON body in that order.
    Non-mapping sources (e.g. a JSON list body) are skipped.
    """
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key in DEPARTMENT_KEYS:
            value = source.get(key)
            if value not in (None, ""):
                return str(value)
    return None
