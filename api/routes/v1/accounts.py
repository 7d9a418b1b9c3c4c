"""
api/routes/v1/accounts.py -- Account directory and administration endpoints.

Routes:
  GET   /api/v1/accounts/{account_id}                -- self or ADMIN
  GET   /api/v1/departments/{department_id}/accounts -- staff roles, own department (ADMIN: any)
  PATCH /api/v1/accounts/{account_id}                -- ADMIN only

Every route declares its Requirement up front; auth.dependencies.require()
resolves the target department or owner from the path and evaluates it
before the handler body runs.

  [M4] PATCH blocks self-deactivation and removing the last active ADMIN.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import AccountPatch, AccountResponse
from auth.authorization import ADMIN_ONLY, Requirement
from auth.dependencies import require
from auth.models import AccessClaims, Role
from auth.service import AuthService

_SELF_OR_ADMIN = Requirement(ownership_field="account_id")

_STAFF_IN_DEPARTMENT = Requirement(
    allowed_roles=frozenset({Role.ADMIN, Role.PREPARER, Role.IPDF_REVIEWER, Role.IQP_REVIEWER}),
    department_scoped=True,
)

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    request: Request,
    account_id: int,
    claims: AccessClaims = Depends(require(_SELF_OR_ADMIN)),
) -> AccountResponse:
    """Return one account. Non-admins may only read their own."""
    return AccountResponse.from_account(_service(request).get_profile(account_id))


@router.get("/departments/{department_id}/accounts", response_model=list[AccountResponse])
def list_department_accounts(
    request: Request,
    department_id: str,
    claims: AccessClaims = Depends(require(_STAFF_IN_DEPARTMENT)),
) -> list[AccountResponse]:
    """List the accounts of a department. END_USER callers are refused."""
    return [AccountResponse.from_account(a) for a in _service(request).list_department(department_id)]


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    account_id: int,
    body: AccountPatch,
    claims: AccessClaims = Depends(require(ADMIN_ONLY)),
) -> AccountResponse:
    """Change role, department, names or active status. Admin only.

    Deactivation revokes every refresh session of the target account. A role
    or department change reaches the account's next refreshed access token.
    """
    updated = _service(request).update_account(claims, account_id, **body.model_dump(exclude_none=True))
    return AccountResponse.from_account(updated)
