"""
API request and response models for AccessGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.login_gate import LoginDecision
from auth.models import Account, Role, ServiceApiKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"
KEY_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Service API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/keys.

    permissions is validated by the registry, not here, so an empty or unknown
    scope comes back as a structured invalid_scope error rather than a 422.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100, pattern=KEY_NAME_PATTERN)
    permissions: list[str] = Field(default_factory=list, max_length=3)
    rotate_existing: bool = False
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    """A key record as shown to operators. Never includes material or digest."""

    model_config = ConfigDict(frozen=True)

    name: str
    key_prefix: str
    permissions: list[str]
    is_active: bool
    created_at: str
    rotated_at: Optional[str] = None
    last_used: Optional[str] = None
    expires_at: Optional[str] = None
    deactivated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: ServiceApiKey) -> "ApiKeyResponse":
        return cls(**_key_fields(record))


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Issuance/rotation response. `key` is shown ONCE and is unrecoverable afterwards."""

    key: str

    @classmethod
    def from_issued(cls, material: str, record: ServiceApiKey) -> "ApiKeyCreatedResponse":
        return cls(key=material, **_key_fields(record))


class KeyContextResponse(BaseModel):
    """Response for GET /api/v1/keys/me -- the caller's own resolved identity."""

    model_config = ConfigDict(frozen=True)

    name: str
    permissions: list[str]


def _key_fields(record: ServiceApiKey) -> dict:
    return {
        "name": record.name,
        "key_prefix": record.key_prefix,
        "permissions": sorted(s.value for s in record.permissions),
        "is_active": record.is_active,
        "created_at": record.created_at or "",
        "rotated_at": record.rotated_at,
        "last_used": record.last_used,
        "expires_at": record.expires_at,
        "deactivated_at": record.deactivated_at,
    }


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Account as exposed over HTTP. The password digest is never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    is_active: bool
    status: Optional[str]
    customer_id: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            is_active=account.is_active,
            status=account.status,
            customer_id=account.customer_id,
            created_at=account.created_at or "",
            updated_at=account.updated_at,
            last_login=account.last_login,
        )


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/accounts/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)


class DecisionResponse(BaseModel):
    """Login eligibility verdict. reason is INACTIVE or STATUS when denied."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    detail: Optional[str] = None
    account: Optional[AccountResponse] = None

    @classmethod
    def from_decision(cls, decision: LoginDecision, account: Account | None = None) -> "DecisionResponse":
        return cls(
            allowed=decision.allowed,
            reason=decision.reason.value if decision.reason else None,
            detail=decision.detail,
            account=AccountResponse.from_account(account) if account is not None else None,
        )


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/accounts (idempotent provisioning)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)
    role: Role = Role.admin
    name: Optional[str] = Field(default=None, max_length=255)
    update_role: bool = False
    status: Optional[str] = Field(default=None, min_length=1, max_length=30)
    customer_id: Optional[str] = Field(default=None, max_length=64)


class ProvisionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    created: bool


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/accounts/{email}. All fields optional; at least one required."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: Optional[str] = Field(default=None, min_length=1, max_length=30)
    is_active: Optional[bool] = None
    role: Optional[Role] = None


class PasswordUpdate(BaseModel):
    """Request body for PUT /api/v1/accounts/{email}/password."""

    password: str = Field(min_length=8, max_length=72)
