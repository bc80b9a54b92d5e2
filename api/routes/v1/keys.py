"""
api/routes/v1/keys.py -- Service API key management endpoints.

Routes:
  GET  /api/v1/keys/me                  -- caller's own key name/scopes (read)
  GET  /api/v1/keys                     -- list keys (admin)
  POST /api/v1/keys                     -- issue (201) or rotate_existing (200); shown once (admin)
  POST /api/v1/keys/{name}/rotate       -- rotate material; shown once (admin)
  POST /api/v1/keys/{name}/deactivate   -- terminal deactivation (admin)

Security:
  Material appears only in the 201/200 body of issue and rotate. It is never
  logged and never returned by list. Cache-Control: no-store on those bodies.
  Registry errors (InvalidScope, DuplicateName, WriteConflict) are mapped to
  structured errors by the handlers in api/main.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, KeyContextResponse
from auth.dependencies import require_admin, require_read
from auth.models import KeyContext
from auth.registry import ApiKeyRegistry
from core.errors import UnknownKey

logger = logging.getLogger("accessgate.api.keys")

# Auth policy:
# - GET  /api/v1/keys/me:                 read
# - GET  /api/v1/keys:                    admin
# - POST /api/v1/keys:                    admin
# - POST /api/v1/keys/{name}/rotate:      admin
# - POST /api/v1/keys/{name}/deactivate:  admin
router = APIRouter()


@router.get("/keys/me", response_model=KeyContextResponse)
def whoami(ctx: KeyContext = Depends(require_read)) -> KeyContextResponse:
    """Return the resolved identity of the calling key."""
    return KeyContextResponse(name=ctx.name, permissions=sorted(s.value for s in ctx.permissions))


@router.get("/keys", response_model=list[ApiKeyResponse])
def list_keys(
    request: Request,
    include_inactive: bool = False,
    ctx: KeyContext = Depends(require_admin),
) -> list[ApiKeyResponse]:
    """List key records. Material and digests are never returned."""
    registry: ApiKeyRegistry = request.app.state.registry
    return [ApiKeyResponse.from_record(k) for k in registry.list_keys(include_inactive=include_inactive)]


@router.post("/keys", response_model=ApiKeyCreatedResponse, status_code=201)
def issue_key(
    request: Request,
    response: Response,
    body: ApiKeyCreate,
    ctx: KeyContext = Depends(require_admin),
) -> ApiKeyCreatedResponse:
    """Issue a new key (201), or rotate an existing one with rotate_existing (200).

    The raw material is shown ONCE and never stored.
    """
    registry: ApiKeyRegistry = request.app.state.registry
    issued = registry.issue(
        body.name,
        body.permissions,
        rotate_existing=body.rotate_existing,
        expires_at=body.expires_at,
    )
    logger.info("Key %s issued by %s", issued.record.name, ctx.name)
    if issued.record.rotated_at is not None:
        # rotate_existing hit an active key: the record was updated, not created
        response.status_code = 200
    response.headers["Cache-Control"] = "no-store"
    return ApiKeyCreatedResponse.from_issued(issued.material, issued.record)


@router.post("/keys/{name}/rotate", response_model=ApiKeyCreatedResponse)
def rotate_key(
    request: Request,
    response: Response,
    name: str,
    ctx: KeyContext = Depends(require_admin),
) -> ApiKeyCreatedResponse:
    """Replace the material of an active key. The old material stops working immediately."""
    registry: ApiKeyRegistry = request.app.state.registry
    try:
        issued = registry.rotate(name)
    except UnknownKey as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "No active key with that name."},
        ) from exc
    logger.info("Key %s rotated by %s", issued.record.name, ctx.name)
    response.headers["Cache-Control"] = "no-store"
    return ApiKeyCreatedResponse.from_issued(issued.material, issued.record)


@router.post("/keys/{name}/deactivate", response_model=ApiKeyResponse)
def deactivate_key(
    request: Request,
    name: str,
    ctx: KeyContext = Depends(require_admin),
) -> ApiKeyResponse:
    """Deactivate a key permanently. The record is kept for audit."""
    registry: ApiKeyRegistry = request.app.state.registry
    try:
        record = registry.deactivate(name)
    except UnknownKey as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "No active key with that name."},
        ) from exc
    logger.info("Key %s deactivated by %s", record.name, ctx.name)
    return ApiKeyResponse.from_record(record)
