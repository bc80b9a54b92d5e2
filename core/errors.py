"""
core/errors.py -- Exception taxonomy for the credential and access-control kernel.

Every kernel failure is one of these classes. Callers branch on the class,
never on message text. Grouping:

  Fatal:            CryptoFailure -- the hash primitive or entropy source is
                    unusable. The process must refuse to start.
  Recoverable:      MalformedDigest -- the stored digest is not bcrypt (legacy
                    or plaintext data). Treat as "verification failed".
  Caller input:     WeakTokenRequest, InvalidScope, DuplicateName,
                    AccountNotFound, InvalidPassword. Raised before any
                    mutation.
  Denials:          AuthorizationDenied and its subclasses. Logged internally
                    with full detail; surfaced externally as one uniform 401.
  Persistence:      StoreUnavailable, WriteConflict. Never conflated with a
                    denial. The kernel does not retry either.
  Integrity:        ProvisioningMismatch -- the stored digest did not verify
                    after a write.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations


class AccessGateError(Exception):
    """Base class for all kernel errors."""


class CryptoFailure(AccessGateError):
    """The hashing primitive or the entropy source failed."""


class MalformedDigest(AccessGateError):
    """A stored password digest is not in a recognized format."""


class WeakTokenRequest(AccessGateError):
    """A token was requested with fewer bytes than the hard minimum."""


class InvalidScope(AccessGateError):
    """A permission set was empty or contained an unrecognized scope."""


class DuplicateName(AccessGateError):
    """An active API key already owns the requested name."""


class AccountNotFound(AccessGateError):
    """No account exists for the given email."""


class ProvisioningMismatch(AccessGateError):
    """The re-fetched password digest did not verify against the intended plaintext."""


class StoreUnavailable(AccessGateError):
    """The persistence layer could not be reached or timed out."""


class WriteConflict(AccessGateError):
    """A compare-and-swap write lost to a concurrent writer, or hit a uniqueness constraint."""


class AuthorizationDenied(AccessGateError):
    """Base class for API key denials.

    `reason` is a stable machine-readable code for internal logs. It must never
    be copied into an external response.
    """

    reason = "denied"

    def __init__(self, message: str = "", key_name: str | None = None) -> None:
        super().__init__(message or self.reason)
        self.key_name = key_name


class UnknownKey(AuthorizationDenied):
    """No key record matches the presented material."""

    reason = "unknown_key"


class InactiveKey(AuthorizationDenied):
    """The presented material matches a deactivated key."""

    reason = "inactive_key"


class ExpiredKey(AuthorizationDenied):
    """The presented material matches a key past its expires_at."""

    reason = "expired_key"


class InsufficientScope(AuthorizationDenied):
    """The key is valid but lacks the scope the endpoint requires."""

    reason = "insufficient_scope"


class InvalidPassword(AccessGateError):
    """A plaintext password was empty or longer than bcrypt's 72-byte limit."""
