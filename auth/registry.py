"""
auth/registry.py -- Issuance, rotation, deactivation, and authorization of service API keys.

State machine per key:
    issued (active) -> rotated (active, new material) -> deactivated (terminal)

Deactivation is terminal. The name can be reused afterwards only by issue(),
which creates a fresh row with fresh material; the deactivated row stays for
the audit trail.

Rotation is one compare-and-swap UPDATE of the stored digest (see
AuthStore.upsert_api_key). There is no instant at which both the old and the
new material validate, and none at which neither does.

authorize() is a pure read: one indexed lookup plus set membership on a
three-token vocabulary. It takes no locks and is safe under unbounded
concurrency.

Key material is returned to the caller exactly once and never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from auth.credentials import generate_api_key, hash_api_key, key_prefix
from auth.models import KeyContext, Scope, ServiceApiKey
from auth.store import AuthStore
from core.errors import (
    DuplicateName,
    ExpiredKey,
    InactiveKey,
    InsufficientScope,
    InvalidScope,
    UnknownKey,
    WriteConflict,
)

logger = logging.getLogger("accessgate.registry")


@dataclass(frozen=True)
class IssuedKey:
    """One-time view of freshly generated material and the stored record."""

    material: str
    record: ServiceApiKey


def parse_scopes(permissions: Iterable) -> frozenset[Scope]:
    """Validate a permission set against the closed Scope vocabulary.

    Raises InvalidScope for an empty set or any unrecognized token.
    """
    scopes: set[Scope] = set()
    for p in permissions:
        try:
            scopes.add(Scope(p))
        except ValueError as exc:
            raise InvalidScope(f"Unknown scope {p!r}. Expected one of: read, write, admin.") from exc
    if not scopes:
        raise InvalidScope("A key needs at least one scope.")
    return frozenset(scopes)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_expired(record: ServiceApiKey, now: datetime) -> bool:
    if not record.expires_at:
        return False
    expires = datetime.fromisoformat(record.expires_at)
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires <= now


class ApiKeyRegistry:
    """Service API key lifecycle over an injected AuthStore."""

    def __init__(self, store: AuthStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(
        self,
        name: str,
        permissions: Iterable,
        rotate_existing: bool = False,
        expires_at: datetime | None = None,
    ) -> IssuedKey:
        """Create a new active key for name.

        Raises InvalidScope before touching the store. If an active key already
        owns name, raises DuplicateName unless rotate_existing is set, in which
        case the existing key is rotated and keeps its permissions.
        """
        scopes = parse_scopes(permissions)
        name = name.strip()
        if not name:
            raise ValueError("A key name must not be blank.")

        existing = self._store.find_api_key_by_name(name)
        if existing is not None and existing.is_active:
            if not rotate_existing:
                raise DuplicateName(f"An active key named {name!r} already exists.")
            return self.rotate(name)

        material = generate_api_key()
        record = ServiceApiKey(
            name=name,
            key_hash=hash_api_key(material),
            key_prefix=key_prefix(material),
            permissions=scopes,
            expires_at=expires_at.astimezone(timezone.utc).isoformat() if expires_at else None,
        )
        try:
            stored = self._store.upsert_api_key(record)
        except WriteConflict as exc:
            raise DuplicateName(f"An active key named {name!r} already exists.") from exc
        logger.info(
            "Issued API key name=%s prefix=%s scopes=%s",
            stored.name,
            stored.key_prefix,
            ",".join(sorted(s.value for s in stored.permissions)),
        )
        return IssuedKey(material=material, record=stored)

    def rotate(self, name: str) -> IssuedKey:
        """Replace the material of the active key for name in one atomic write.

        Name and permissions are preserved. Raises UnknownKey if no active key
        has this name and WriteConflict if a concurrent writer got there first.
        """
        existing = self._store.find_api_key_by_name(name)
        if existing is None or not existing.is_active:
            raise UnknownKey(f"No active key named {name!r}.", key_name=name)

        material = generate_api_key()
        rotated = replace(
            existing,
            key_hash=hash_api_key(material),
            key_prefix=key_prefix(material),
            rotated_at=_now().isoformat(),
        )
        stored = self._store.upsert_api_key(rotated)
        logger.info(
            "Rotated API key name=%s old_prefix=%s new_prefix=%s",
            stored.name,
            existing.key_prefix,
            stored.key_prefix,
        )
        return IssuedKey(material=material, record=stored)

    def deactivate(self, name: str) -> ServiceApiKey:
        """Deactivate the active key for name. Terminal; the row is kept."""
        existing = self._store.find_api_key_by_name(name)
        if existing is None or not existing.is_active:
            raise UnknownKey(f"No active key named {name!r}.", key_name=name)
        stored = self._store.upsert_api_key(replace(existing, is_active=False, deactivated_at=_now().isoformat()))
        logger.info("Deactivated API key name=%s prefix=%s", stored.name, stored.key_prefix)
        return stored

    def get(self, name: str) -> ServiceApiKey | None:
        return self._store.find_api_key_by_name(name)

    def list_keys(self, include_inactive: bool = False) -> list[ServiceApiKey]:
        return self._store.list_api_keys(include_inactive=include_inactive)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, material: str, required_scope: Scope | str) -> KeyContext:
        """Resolve presented material and check it carries required_scope.

        Raises (all AuthorizationDenied):
          UnknownKey        -- no record matches (includes pre-rotation material)
          InactiveKey       -- matched a deactivated record
          ExpiredKey        -- matched a record past expires_at
          InsufficientScope -- matched and usable, scope not granted
        """
        scope = Scope(required_scope)
        if not material:
            raise UnknownKey("No key presented.")

        record = self._store.find_api_key_by_hash(hash_api_key(material))
        if record is None:
            raise UnknownKey("Presented key does not match any record.")
        if not record.is_active:
            raise InactiveKey(f"Key {record.name!r} is deactivated.", key_name=record.name)
        if _is_expired(record, _now()):
            raise ExpiredKey(f"Key {record.name!r} expired at {record.expires_at}.", key_name=record.name)
        if scope not in record.permissions:
            raise InsufficientScope(
                f"Key {record.name!r} lacks scope {scope.value!r}.",
                key_name=record.name,
            )
        return KeyContext(name=record.name, permissions=record.permissions, key_id=record.id)
