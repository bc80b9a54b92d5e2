"""
auth/accounts.py -- Account provisioning and lifecycle operations.

provision_account() is an idempotent create-or-update keyed by email:
  - absent:  create with a fresh bcrypt digest, is_active=True, status="active"
  - present: rotate the digest only; role/status change only when asked

Every password write is followed by a re-fetch and verify_password() against
the stored digest. Success is reported only when the stored row verifies --
a silent persistence-layer corruption surfaces as ProvisioningMismatch instead
of a login that fails later.

All writes go through AuthStore's compare-and-swap upserts. A concurrent
writer produces WriteConflict; nothing here retries.

Soft delete sets status to "deleted". Rows are never removed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from auth.credentials import hash_password, verify_password
from auth.login_gate import LoginDecision, evaluate_login
from auth.models import Account, AccountStatus, Role
from auth.store import AuthStore, normalize_email
from core.errors import AccountNotFound, MalformedDigest, ProvisioningMismatch

logger = logging.getLogger("accessgate.accounts")


@dataclass(frozen=True)
class ProvisionResult:
    account: Account
    created: bool


def _require_account(store: AuthStore, email: str) -> Account:
    account = store.find_account_by_email(email)
    if account is None:
        raise AccountNotFound(f"No account for {normalize_email(email)}.")
    return account


def _verify_stored(store: AuthStore, email: str, password: str) -> Account:
    """Re-fetch the account and confirm the stored digest matches password."""
    stored = store.find_account_by_email(email)
    if stored is None:
        raise ProvisioningMismatch(f"Account {normalize_email(email)} vanished after write.")
    try:
        verified = verify_password(password, stored.hashed_password)
    except MalformedDigest as exc:
        raise ProvisioningMismatch(f"Stored digest for account {stored.id} is malformed.") from exc
    if not verified:
        raise ProvisioningMismatch(f"Stored digest for account {stored.id} does not verify.")
    return stored


def provision_account(
    store: AuthStore,
    email: str,
    password: str,
    role: Role | str = Role.admin,
    name: str | None = None,
    update_role: bool = False,
    status: str | None = None,
    customer_id: str | None = None,
) -> ProvisionResult:
    """Create the account for email, or rotate its password if it exists.

    role is applied on create, and on update only when update_role is True.
    status is applied on update only when given explicitly.
    """
    role = Role(role).value
    hashed = hash_password(password)
    existing = store.find_account_by_email(email)

    if existing is None:
        store.upsert_account(
            Account(
                email=email,
                role=role,
                name=name or "",
                hashed_password=hashed,
                is_active=True,
                status=status or AccountStatus.active.value,
                customer_id=customer_id,
            )
        )
        created = True
    else:
        changes: dict = {"hashed_password": hashed}
        if update_role:
            changes["role"] = role
        if status is not None:
            changes["status"] = status
        if name:
            changes["name"] = name
        store.upsert_account(replace(existing, **changes))
        created = False

    account = _verify_stored(store, email, password)
    logger.info(
        "Provisioned account %s (%s, role=%s, created=%s)",
        account.id,
        account.email,
        account.role,
        created,
    )
    return ProvisionResult(account=account, created=created)


def rotate_password(store: AuthStore, email: str, password: str) -> Account:
    """Replace the password digest of an existing account and verify the write."""
    existing = _require_account(store, email)
    store.upsert_account(replace(existing, hashed_password=hash_password(password)))
    account = _verify_stored(store, email, password)
    logger.info("Rotated password for account %s", account.id)
    return account


def _update(store: AuthStore, email: str, **changes) -> Account:
    existing = _require_account(store, email)
    account = store.upsert_account(replace(existing, **changes))
    logger.info("Updated account %s: %s", account.id, ", ".join(f"{k}={v}" for k, v in changes.items()))
    return account


def _normalize_status(status: str) -> str:
    status = status.strip().lower()
    if not status:
        raise ValueError("status must not be blank")
    return status


def update_account(
    store: AuthStore,
    email: str,
    status: str | None = None,
    is_active: bool | None = None,
    role: Role | str | None = None,
) -> Account:
    """Apply any combination of status, activation flag, and role in one write.

    Every field is validated before the store is touched, so a bad role or a
    blank status leaves the account unchanged.
    """
    changes: dict = {}
    if status is not None:
        changes["status"] = _normalize_status(status)
    if is_active is not None:
        changes["is_active"] = bool(is_active)
    if role is not None:
        changes["role"] = Role(role).value
    if not changes:
        raise ValueError("no fields to update")
    return _update(store, email, **changes)


def set_status(store: AuthStore, email: str, status: str) -> Account:
    """Set the lifecycle status. Unknown strings are stored as-is and fail the login gate."""
    return _update(store, email, status=_normalize_status(status))


def set_active(store: AuthStore, email: str, active: bool) -> Account:
    return _update(store, email, is_active=bool(active))


def change_role(store: AuthStore, email: str, role: Role | str) -> Account:
    return _update(store, email, role=Role(role).value)


def soft_delete(store: AuthStore, email: str) -> Account:
    return set_status(store, email, AccountStatus.deleted.value)


def login_status(store: AuthStore, email: str) -> tuple[Account, LoginDecision]:
    """Fresh eligibility check for email without a password."""
    account = _require_account(store, email)
    return account, evaluate_login(account)
