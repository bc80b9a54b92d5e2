"""
auth/models.py -- Domain dataclasses and enums for accounts and service API keys.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    user = "user"
    manager = "manager"
    admin = "admin"
    super_admin = "super_admin"


class AccountStatus(str, Enum):
    """Known lifecycle statuses. The status column accepts other strings too;
    anything other than "active" (or NULL) fails the login gate."""

    active = "active"
    suspended = "suspended"
    pending = "pending"
    deleted = "deleted"


class Scope(str, Enum):
    """Closed permission vocabulary for service API keys."""

    read = "read"
    write = "write"
    admin = "admin"


@dataclass
class Account:
    """An administrative, manager, or customer login identity.

    email is stored lower-cased; lookups normalize the same way so the
    uniqueness check is case-insensitive.

    hashed_password is a bcrypt digest or None (no local password yet). It is
    never a plaintext value.

    status may be None on legacy records that predate the column. The login
    gate treats None as "active".

    version is the compare-and-swap counter. A record fetched at version N can
    only be written back while the stored row is still at version N.
    """

    email: str
    role: str = Role.user.value
    name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    status: str | None = AccountStatus.active.value
    customer_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None
    version: int = 0


@dataclass
class ServiceApiKey:
    """A credential one service presents to another.

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, material). A deterministic digest
      lets the store look keys up in O(1); the material carries 256 bits of
      entropy so bcrypt's slowness buys nothing here.
    - key_prefix (first 12 chars of the material) is kept for display only.
    - The material itself is returned once at issuance or rotation and never
      persisted.
    - Deactivated rows are kept for the audit trail. Only one active row may
      own a given name.
    """

    name: str
    key_hash: str
    key_prefix: str
    permissions: frozenset[Scope] = field(default_factory=frozenset)
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    rotated_at: str | None = None
    last_used: str | None = None
    expires_at: str | None = None
    deactivated_at: str | None = None
    version: int = 0


@dataclass(frozen=True)
class KeyContext:
    """Resolved identity of an authorized service call, kept for audit logging."""

    name: str
    permissions: frozenset[Scope]
    key_id: int | None = None
