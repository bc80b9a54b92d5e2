"""
auth/dependencies.py -- FastAPI Depends() helpers that enforce service API key scopes.

Each endpoint declares the scope it needs statically:

    @router.get("/keys")
    def list_keys(ctx: KeyContext = Depends(require_admin)): ...

The dependency reads the key from the configured header (X-API-Key by
default), calls ApiKeyRegistry.authorize(), and either attaches the resolved
key name to request.state for audit logging or rejects the request.

Denials:
  UnknownKey, InactiveKey, ExpiredKey, and InsufficientScope all produce the
  same 401 body. External callers cannot tell a missing key from a valid key
  with the wrong scope. The precise reason is logged for operators. Key
  material is never logged.

  StoreUnavailable is not a denial: it becomes 503 so an outage is never
  mistaken for bad credentials.

Layer rule: no imports from api/.
  This module may import from fastapi because it is part of the FastAPI
  dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import KeyContext, Scope
from auth.registry import ApiKeyRegistry
from auth.store import AuthStore
from core.config import get_settings
from core.errors import AuthorizationDenied, StoreUnavailable

logger = logging.getLogger("accessgate.authz")

_settings = get_settings()

UNAUTHORIZED_DETAIL = {"code": "unauthorized", "message": "Invalid or missing API key."}


def require_scope(scope: Scope) -> Callable[[Request], KeyContext]:
    """Build a dependency that admits only keys carrying scope."""
    scope = Scope(scope)

    def dependency(request: Request) -> KeyContext:
        registry: ApiKeyRegistry = request.app.state.registry
        raw_key = request.headers.get(_settings.api_key_header, "")

        try:
            ctx = registry.authorize(raw_key, scope)
        except AuthorizationDenied as exc:
            logger.warning(
                "Denied %s %s: reason=%s key=%s required=%s",
                request.method,
                request.url.path,
                exc.reason,
                exc.key_name or "-",
                scope.value,
            )
            raise HTTPException(
                status_code=401,
                detail=UNAUTHORIZED_DETAIL,
                headers={"WWW-Authenticate": _settings.api_key_header},
            ) from exc
        except StoreUnavailable as exc:
            logger.error("Key lookup failed on %s %s: %s", request.method, request.url.path, exc)
            raise HTTPException(
                status_code=503,
                detail={"code": "store_unavailable", "message": "Authorization backend unavailable."},
            ) from exc

        request.state.api_key_name = ctx.name
        request.state.api_key_permissions = sorted(s.value for s in ctx.permissions)

        # last_used is bookkeeping; a failed stamp must not fail an authorized call.
        store: AuthStore = request.app.state.auth_store
        if ctx.key_id is not None:
            try:
                store.touch_api_key(ctx.key_id)
            except StoreUnavailable as exc:
                logger.warning("Could not stamp last_used for key %s: %s", ctx.name, exc)

        logger.debug("Authorized %s %s for key=%s", request.method, request.url.path, ctx.name)
        return ctx

    dependency.__name__ = f"require_{scope.value}"
    return dependency


require_read = require_scope(Scope.read)
require_write = require_scope(Scope.write)
require_admin = require_scope(Scope.admin)
