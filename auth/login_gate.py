"""
auth/login_gate.py -- Login eligibility decision and password login.

Two independent gates must both pass:
  1. is_active -- the administrative kill-switch. Checked first; False denies
     regardless of status, including status == "active".
  2. status    -- the business lifecycle (active/suspended/pending/deleted/...).
     Anything present and not exactly "active" denies.

A NULL or empty status passes gate 2. Legacy rows predate the column and would
otherwise be locked out. This also means a row whose status was never set is
treated as active; see DESIGN.md.

Decisions are computed fresh for every attempt and never cached -- status can
change between two requests.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from auth.credentials import verify_dummy, verify_password
from auth.models import Account, AccountStatus
from auth.store import AuthStore
from core.errors import MalformedDigest

logger = logging.getLogger("accessgate.login")


class DenyReason(str, Enum):
    INACTIVE = "INACTIVE"
    STATUS = "STATUS"


@dataclass(frozen=True)
class LoginDecision:
    allowed: bool
    reason: DenyReason | None = None
    detail: str | None = None


ALLOW = LoginDecision(allowed=True)


def evaluate_login(account: Account) -> LoginDecision:
    """Apply the activation-flag gate, then the lifecycle-status gate."""
    if not account.is_active:
        return LoginDecision(allowed=False, reason=DenyReason.INACTIVE)
    if account.status and account.status != AccountStatus.active.value:
        return LoginDecision(allowed=False, reason=DenyReason.STATUS, detail=account.status)
    return ALLOW


@dataclass(frozen=True)
class LoginOutcome:
    """Result of a password login attempt.

    authenticated is False for unknown email, wrong password, or an unusable
    stored digest -- callers must not tell these apart in responses.
    decision is only set once the password verified.
    """

    authenticated: bool
    account: Account | None = None
    decision: LoginDecision | None = None

    @property
    def allowed(self) -> bool:
        return self.authenticated and self.decision is not None and self.decision.allowed


def authenticate(store: AuthStore, email: str, password: str) -> LoginOutcome:
    """Verify a password login and apply the eligibility gate.

    Always runs bcrypt whether or not the account exists [C1]:
    - Unknown email / no local password: bcrypt runs against the dummy digest.
    - Wrong password: bcrypt runs against the real digest.

    A MalformedDigest on the stored row is a failed verification, logged for
    operators, never a crash.
    """
    account = store.find_account_by_email(email)
    if account is None or account.hashed_password is None:
        verify_dummy(password)
        return LoginOutcome(authenticated=False)

    try:
        verified = verify_password(password, account.hashed_password)
    except MalformedDigest:
        logger.warning("Account %s has a malformed password digest; treating as failed login", account.id)
        verify_dummy(password)
        return LoginOutcome(authenticated=False)
    if not verified:
        return LoginOutcome(authenticated=False)

    decision = evaluate_login(account)
    if not decision.allowed:
        logger.info(
            "Login blocked for account %s: reason=%s detail=%s",
            account.id,
            decision.reason.value,
            decision.detail,
        )
        return LoginOutcome(authenticated=True, account=account, decision=decision)

    store.touch_last_login(account.id)
    return LoginOutcome(authenticated=True, account=account, decision=decision)
