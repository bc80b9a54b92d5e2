"""
api/routes/v1/accounts.py -- Account login checks, provisioning, and lifecycle endpoints.

Routes:
  POST  /api/v1/accounts/login                -- password + eligibility check (read)
  GET   /api/v1/accounts/{email}/eligibility  -- eligibility only, no password (read)
  POST  /api/v1/accounts                      -- idempotent provisioning (admin)
  PATCH /api/v1/accounts/{email}              -- status / is_active / role (write)
  PUT   /api/v1/accounts/{email}/password     -- password rotation (write)

No session or token is issued here. The login route answers "may this identity
use the system right now", evaluated fresh on every call.

Security:
  [H2] POST /accounts/login is rate-limited per client (LOGIN_RATE_LIMIT).
  [C1] authenticate() runs bcrypt even for unknown emails -- use it, never inline.
  [M5] Cache-Control: no-store on login and provisioning responses.
  Wrong email and wrong password return the same bad_credentials 401.
  Handlers are sync `def` so bcrypt runs in FastAPI's threadpool, not on the
  event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountCreate,
    AccountPatch,
    AccountResponse,
    DecisionResponse,
    LoginRequest,
    PasswordUpdate,
    ProvisionResponse,
)
from auth.accounts import login_status, provision_account, rotate_password, update_account
from auth.dependencies import require_admin, require_read, require_write
from auth.login_gate import authenticate
from auth.models import KeyContext
from auth.store import AuthStore
from core.config import get_settings

logger = logging.getLogger("accessgate.api.accounts")

_settings = get_settings()

# Auth policy:
# - POST  /api/v1/accounts/login:                read
# - GET   /api/v1/accounts/{email}/eligibility:  read
# - POST  /api/v1/accounts:                      admin
# - PATCH /api/v1/accounts/{email}:              write
# - PUT   /api/v1/accounts/{email}/password:     write
router = APIRouter()


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/accounts/login", response_model=DecisionResponse)
def login(
    request: Request,
    body: LoginRequest,
    ctx: KeyContext = Depends(require_read),
) -> JSONResponse:
    """Verify a password and apply the login gate.

    200 -- credentials valid and the account may log in.
    403 -- credentials valid but the gate denied (reason INACTIVE or STATUS).
    401 -- unknown email, wrong password, or unusable stored digest.
    """
    store: AuthStore = request.app.state.auth_store
    outcome = authenticate(store, body.email, body.password)
    if not outcome.authenticated:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
    else:
        status_code = 200 if outcome.allowed else 403
        resp = JSONResponse(
            status_code=status_code,
            content=DecisionResponse.from_decision(outcome.decision, outcome.account).model_dump(),
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/accounts/{email}/eligibility", response_model=DecisionResponse)
def eligibility(
    request: Request,
    email: str,
    ctx: KeyContext = Depends(require_read),
) -> DecisionResponse:
    """Re-evaluate whether the account may log in right now. Never cached."""
    store: AuthStore = request.app.state.auth_store
    account, decision = login_status(store, email)
    return DecisionResponse.from_decision(decision, account)


@router.post("/accounts", response_model=ProvisionResponse)
def provision(
    request: Request,
    body: AccountCreate,
    ctx: KeyContext = Depends(require_admin),
) -> JSONResponse:
    """Create the account, or rotate its password if the email already exists.

    201 on create, 200 on update. Role changes on update only with update_role.
    """
    store: AuthStore = request.app.state.auth_store
    result = provision_account(
        store,
        body.email,
        body.password,
        role=body.role,
        name=body.name,
        update_role=body.update_role,
        status=body.status,
        customer_id=body.customer_id,
    )
    logger.info("Account %s provisioned by %s (created=%s)", result.account.id, ctx.name, result.created)
    resp = JSONResponse(
        status_code=201 if result.created else 200,
        content=ProvisionResponse(
            account=AccountResponse.from_account(result.account),
            created=result.created,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.patch("/accounts/{email}", response_model=AccountResponse)
def patch_account(
    request: Request,
    email: str,
    body: AccountPatch,
    ctx: KeyContext = Depends(require_write),
) -> AccountResponse:
    """Change status, activation flag, and/or role in one compare-and-swap write."""
    store: AuthStore = request.app.state.auth_store
    if body.status is None and body.is_active is None and body.role is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    account = update_account(store, email, status=body.status, is_active=body.is_active, role=body.role)
    logger.info("Account %s updated by %s", account.id, ctx.name)
    return AccountResponse.from_account(account)


@router.put("/accounts/{email}/password", response_model=AccountResponse)
def update_password(
    request: Request,
    email: str,
    body: PasswordUpdate,
    ctx: KeyContext = Depends(require_write),
) -> AccountResponse:
    """Rotate the password digest and confirm the stored digest verifies."""
    store: AuthStore = request.app.state.auth_store
    account = rotate_password(store, email, body.password)
    logger.info("Password for account %s rotated by %s", account.id, ctx.name)
    return AccountResponse.from_account(account)
